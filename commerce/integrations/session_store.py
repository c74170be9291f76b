"""Redis-backed session store: create, read and destroy sign-in sessions."""
import json
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as aioredis
import structlog

from commerce.core.sessions import SessionRecord

logger = structlog.get_logger(__name__)


class RedisSessionStore:
    """
    Stores sessions as JSON documents under ``user_sessions:{token}``.

    Redis expires the key at the same moment the record's ``expires_at``
    passes, so stale sessions disappear without a sweeper.
    """

    key_prefix = "user_sessions:"

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds

    def _key(self, token: str) -> str:
        return f"{self.key_prefix}{token}"

    async def create(self, user_id: str | uuid.UUID) -> str:
        """Create a session for a signed-in user and return its token."""
        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.ttl_seconds)
        document = {"user_id": str(user_id), "expires_at": expires_at.isoformat()}

        await self.redis_client.setex(self._key(token), self.ttl_seconds, json.dumps(document))
        logger.info("session_created", user_id=str(user_id))
        return token

    async def get(self, token: str) -> Optional[SessionRecord]:
        raw = await self.redis_client.get(self._key(token))
        if raw is None:
            return None

        try:
            document = json.loads(raw)
            return SessionRecord(
                user_id=document["user_id"],
                expires_at=datetime.fromisoformat(document["expires_at"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("session_record_unreadable", error=str(e))
            return None

    async def destroy(self, token: str) -> None:
        await self.redis_client.delete(self._key(token))
        logger.info("session_destroyed")
