"""Tests for account and refresh token records."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from intelliguard.storage.models import Account, AccountStatus, RefreshToken, Role

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_account(**overrides) -> Account:
    account = Account.new(
        "user@example.com",
        "hash",
        Role.new("viewer"),
        verification_token="verify-me",
        now=NOW,
    )
    for key, value in overrides.items():
        setattr(account, key, value)
    return account


class TestAccountNew:
    def test_new_account_defaults(self):
        account = make_account()

        assert account.status == AccountStatus.PENDING_VERIFICATION
        assert account.email_verified is False
        assert account.email_verification_token == "verify-me"
        assert account.failed_login_attempts == 0
        assert account.locked_until is None
        assert account.created_at == NOW
        assert account.updated_at == NOW
        assert account.role.name == "VIEWER"

    def test_ids_are_unique(self):
        assert make_account().id != make_account().id


class TestIsActive:
    @pytest.mark.parametrize(
        "status,verified,deleted",
        list(itertools.product(list(AccountStatus), [True, False], [None, NOW])),
    )
    def test_is_active_over_all_combinations(self, status, verified, deleted):
        """Active requires ACTIVE status, a verified e-mail and no deletion."""
        account = make_account(status=status, email_verified=verified, deleted_at=deleted)

        expected = status == AccountStatus.ACTIVE and verified and deleted is None
        assert account.is_active is expected


class TestLockState:
    def test_unlocked_without_timestamp(self):
        assert make_account().is_account_non_locked(NOW)

    def test_locked_until_boundary(self):
        """The lock still holds at exactly ``locked_until``."""
        account = make_account(locked_until=NOW + timedelta(minutes=15))

        assert not account.is_account_non_locked(NOW)
        assert not account.is_account_non_locked(NOW + timedelta(minutes=15))
        assert account.is_account_non_locked(NOW + timedelta(minutes=15, microseconds=1))

    def test_record_login_clears_lockout(self):
        account = make_account(failed_login_attempts=3, locked_until=NOW)
        later = NOW + timedelta(hours=1)

        account.record_login(later)

        assert account.failed_login_attempts == 0
        assert account.locked_until is None
        assert account.last_login_at == later
        assert account.updated_at == later


class TestEmailVerification:
    def test_pending_account_becomes_active(self):
        account = make_account()

        account.mark_email_verified(NOW)

        assert account.email_verified is True
        assert account.email_verification_token is None
        assert account.status == AccountStatus.ACTIVE
        assert account.is_active

    def test_suspended_account_stays_suspended(self):
        account = make_account(status=AccountStatus.SUSPENDED)

        account.mark_email_verified(NOW)

        assert account.email_verified is True
        assert account.status == AccountStatus.SUSPENDED
        assert not account.is_active


class TestSoftDelete:
    def test_mark_deleted_keeps_fields_consistent(self):
        """``deleted_at`` and the DELETED status always move together."""
        account = make_account(status=AccountStatus.ACTIVE, email_verified=True)

        account.mark_deleted(NOW)

        assert account.deleted_at == NOW
        assert account.status == AccountStatus.DELETED
        assert account.is_deleted
        assert not account.is_active

    def test_mark_deleted_is_idempotent(self):
        account = make_account()
        account.mark_deleted(NOW)

        account.mark_deleted(NOW + timedelta(days=1))

        assert account.deleted_at == NOW
        assert account.status == AccountStatus.DELETED

    def test_not_deleted_by_default(self):
        account = make_account()

        assert not account.is_deleted
        assert account.status != AccountStatus.DELETED


class TestRefreshToken:
    def test_new_token_expires_after_ttl(self):
        token = RefreshToken.new("acct", "value", now=NOW, ttl=timedelta(days=7))

        assert token.expires_at == NOW + timedelta(days=7)
        assert token.is_valid(NOW)
        assert not token.revoked

    def test_token_invalid_at_expiry(self):
        token = RefreshToken.new("acct", "value", now=NOW, ttl=timedelta(days=7))

        assert token.is_valid(NOW + timedelta(days=7) - timedelta(microseconds=1))
        assert not token.is_valid(NOW + timedelta(days=7))
        assert token.is_expired(NOW + timedelta(days=7))

    def test_revocation_is_monotonic(self):
        """Once revoked a token never becomes valid again."""
        token = RefreshToken.new("acct", "value", now=NOW, ttl=timedelta(days=7))

        assert token.revoke(NOW) is True
        first_revoked_at = token.revoked_at
        assert token.revoke(NOW + timedelta(minutes=1)) is False

        assert token.revoked_at == first_revoked_at
        for minutes in (0, 1, 60):
            assert not token.is_valid(NOW + timedelta(minutes=minutes))
