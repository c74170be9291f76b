"""Session Context Resolver: maps a session token to the calling user."""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import structlog

from commerce.core.errors import Unauthenticated

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SessionRecord:
    user_id: str
    expires_at: datetime


@dataclass(frozen=True)
class UserIdentity:
    user_id: uuid.UUID


class SessionStore(Protocol):
    async def get(self, token: str) -> Optional[SessionRecord]: ...


class SessionContextResolver:
    """
    Resolves an opaque session token to a stable user identity.

    Read-only: a failed lookup never creates, extends or destroys sessions.
    """

    def __init__(self, store: SessionStore):
        self.store = store

    async def resolve(self, token: Optional[str]) -> UserIdentity:
        """
        Resolve a session token.

        Args:
            token: Token taken from the session cookie or header

        Returns:
            UserIdentity: The authenticated caller

        Raises:
            Unauthenticated: If the token is missing, unknown, expired or malformed
        """
        if not token or not token.strip():
            raise Unauthenticated("Missing session token")

        record = await self.store.get(token)
        if record is None:
            logger.info("session_not_found")
            raise Unauthenticated("Unknown or expired session")

        expires_at = record.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= datetime.now(timezone.utc):
            logger.info("session_expired", user_id=record.user_id)
            raise Unauthenticated("Session expired")

        try:
            user_id = uuid.UUID(str(record.user_id))
        except ValueError:
            logger.warning("session_malformed_user_id")
            raise Unauthenticated("Malformed session") from None

        return UserIdentity(user_id=user_id)
