"""Commerce backend: order and payment lifecycle core."""

__version__ = "0.1.0"
