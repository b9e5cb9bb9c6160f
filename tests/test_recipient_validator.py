"""Recipient classification: valid, not-registered, invalid."""

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import DirectoryUnavailableError
from app.services.recipient_validator import RecipientClass, normalize_email, validate_recipient
from app.services.user_directory import UserDirectory


class BrokenSession:
    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))


class TestNormalize:
    def test_strips_and_lowercases(self):
        assert normalize_email("  Bob@Example.COM ") == "bob@example.com"

    def test_none_is_empty(self):
        assert normalize_email(None) == ""


class TestValidateRecipient:
    @pytest.mark.asyncio
    async def test_registered_user_is_valid(self, db, create_user):
        alice = await create_user("alice@example.com")
        bob = await create_user("bob@example.com")

        result = await validate_recipient(UserDirectory(db), "  BOB@example.com", alice)

        assert result.classification == RecipientClass.VALID
        assert result.is_valid
        assert result.normalized == "bob@example.com"
        assert result.user.id == bob.id

    @pytest.mark.asyncio
    async def test_unknown_email_is_not_registered(self, db, create_user):
        alice = await create_user("alice@example.com")

        result = await validate_recipient(UserDirectory(db), "ghost@example.com", alice)

        assert result.classification == RecipientClass.NOT_REGISTERED
        assert result.user is None
        assert result.reason == "User not registered in the system"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["", "   ", "bob", "bob@", "bob@example", "b ob@example.com", "@example.com"])
    async def test_malformed_email_is_invalid(self, db, create_user, raw):
        alice = await create_user("alice@example.com")

        result = await validate_recipient(UserDirectory(db), raw, alice)

        assert result.classification == RecipientClass.INVALID
        assert result.reason == "Invalid email format"

    @pytest.mark.asyncio
    async def test_self_share_is_invalid(self, db, create_user):
        alice = await create_user("alice@example.com")

        result = await validate_recipient(UserDirectory(db), "Alice@Example.com", alice)

        assert result.classification == RecipientClass.INVALID
        assert result.reason == "Cannot share a file with yourself"

    @pytest.mark.asyncio
    async def test_directory_failure_is_not_reported_as_unknown(self, create_user):
        alice = await create_user("alice@example.com")

        with pytest.raises(DirectoryUnavailableError):
            await validate_recipient(UserDirectory(BrokenSession()), "bob@example.com", alice)
