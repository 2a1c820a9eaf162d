from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


@dataclass
class Role:
    id: str
    name: str

    @classmethod
    def new(cls, name: str) -> "Role":
        return cls(id=str(uuid.uuid4()), name=name.strip().upper())


@dataclass
class Account:
    """An account record with its role resolved.

    ``deleted_at`` is the source of truth for soft deletion; ``status`` is
    kept in step by :meth:`mark_deleted` and never set to DELETED on its own.
    """

    id: str
    email: str
    password_hash: str
    role: Role
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: AccountStatus = AccountStatus.PENDING_VERIFICATION
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    last_password_change_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        role: Role,
        *,
        verification_token: str,
        now: datetime,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            role=role,
            first_name=first_name,
            last_name=last_name,
            status=AccountStatus.PENDING_VERIFICATION,
            email_verified=False,
            email_verification_token=verification_token,
            failed_login_attempts=0,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_active(self) -> bool:
        return (
            self.status == AccountStatus.ACTIVE
            and self.email_verified
            and self.deleted_at is None
        )

    def is_account_non_locked(self, now: datetime) -> bool:
        if self.locked_until is None:
            return True
        return now > self.locked_until

    def mark_email_verified(self, now: datetime) -> None:
        self.email_verified = True
        self.email_verification_token = None
        if self.status == AccountStatus.PENDING_VERIFICATION:
            self.status = AccountStatus.ACTIVE
        self.updated_at = now

    def mark_deleted(self, now: datetime) -> None:
        if self.deleted_at is None:
            self.deleted_at = now
        self.status = AccountStatus.DELETED
        self.updated_at = now

    def record_login(self, now: datetime) -> None:
        self.failed_login_attempts = 0
        self.locked_until = None
        self.last_login_at = now
        self.updated_at = now


@dataclass
class RefreshToken:
    id: str
    token: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls, account_id: str, token: str, *, now: datetime, ttl: timedelta
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            account_id=account_id,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at

    def revoke(self, now: datetime) -> bool:
        """Mark the token revoked; returns False if it already was."""
        if self.revoked:
            return False
        self.revoked = True
        self.revoked_at = now
        return True
