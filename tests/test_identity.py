"""
Unit tests for user registration and sign-in checks.
"""
import pytest

from commerce.core.errors import InvalidCredentials, StorageConflict
from commerce.core.identity import UserDirectory


class TestUserDirectory:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_register_and_authenticate(self, users: UserDirectory) -> None:
        user = await users.register("Buyer@Example.com", "correct-horse-battery", "Buyer")

        assert user.email == "buyer@example.com"
        assert user.password_hash != "correct-horse-battery"

        authenticated = await users.authenticate("buyer@example.com", "correct-horse-battery")
        assert authenticated.id == user.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_password(self, users: UserDirectory) -> None:
        await users.register("buyer@example.com", "correct-horse-battery")

        with pytest.raises(InvalidCredentials):
            await users.authenticate("buyer@example.com", "wrong-password")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_email(self, users: UserDirectory) -> None:
        with pytest.raises(InvalidCredentials):
            await users.authenticate("nobody@example.com", "whatever")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_email(self, users: UserDirectory) -> None:
        await users.register("buyer@example.com", "correct-horse-battery")

        with pytest.raises(StorageConflict):
            await users.register("BUYER@example.com", "another-password")
