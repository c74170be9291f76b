"""HTTP surface: FastAPI application, routes and request schemas."""
from .main import create_app

__all__ = ["create_app"]
