"""User registration and credential checks backing the sign-in endpoints."""
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce.core.errors import InvalidCredentials, StorageConflict
from commerce.database.models import User

logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class UserDirectory:
    """Reads and registers users. Users are never modified after registration."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def register(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> User:
        """
        Register a new user.

        Raises:
            StorageConflict: If the email is already registered
        """
        user = User(
            id=uuid.uuid4(),
            email=email.strip().lower(),
            password_hash=pwd_context.hash(password),
            display_name=display_name,
            created_at=datetime.now(timezone.utc),
        )
        async with self.session_factory() as db:
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise StorageConflict(f"Email {user.email} is already registered") from None

        logger.info("user_registered", user_id=str(user.id))
        return user

    async def authenticate(self, email: str, password: str) -> User:
        """
        Check credentials.

        Raises:
            InvalidCredentials: If the email is unknown or the password does not match
        """
        stmt = select(User).where(User.email == email.strip().lower())
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            user = result.scalar_one_or_none()

        if user is None or not pwd_context.verify(password, user.password_hash):
            logger.info("user_authentication_failed")
            raise InvalidCredentials("Invalid email or password")

        return user

    async def get(self, user_id: uuid.UUID) -> Optional[User]:
        async with self.session_factory() as db:
            return await db.get(User, user_id)
