from __future__ import annotations

import contextlib
import json
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from intelliguard.logging import get_logger
from intelliguard.storage.errors import ConstraintViolation
from intelliguard.storage.models import Account, AccountStatus, RefreshToken, Role

DEFAULT_ROLES = ("ADMIN", "ANALYST", "VIEWER")


class MemoryStore:
    """In-process store for accounts, roles and refresh tokens.

    Every public method runs under one re-entrant lock. Mutations go through
    :meth:`_transaction`, which restores the previous maps if anything inside
    raises, so composite operations either fully apply or not at all. Records
    are handed out as copies; callers persist changes with the save methods.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        seed_roles: Iterable[str] = DEFAULT_ROLES,
    ) -> None:
        self.logger = get_logger(__name__)
        self.roles: Dict[str, Role] = {}
        self.accounts: Dict[str, Account] = {}
        # keyed by token value
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so composite operations can call the single-record helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None

        if not self._load_state():
            with self._transaction():
                for name in seed_roles:
                    if self._find_role(name) is None:
                        role = Role.new(name)
                        self.roles[role.id] = role

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._data_lock:
            snapshot = (dict(self.roles), dict(self.accounts), dict(self.refresh_tokens))
            try:
                yield
                self._persist_state()
            except BaseException:
                self.roles, self.accounts, self.refresh_tokens = snapshot
                raise

    @staticmethod
    def _copy_account(account: Account) -> Account:
        return replace(account, role=replace(account.role))

    # roles
    def _find_role(self, name: str) -> Optional[Role]:
        normalized = name.strip().upper()
        return next((r for r in self.roles.values() if r.name == normalized), None)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self._find_role(name)
            return replace(role) if role else None

    def create_role(self, name: str) -> Role:
        with self._transaction():
            if self._find_role(name) is not None:
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role.new(name)
            self.roles[role.id] = role
            return replace(role)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted((replace(r) for r in self.roles.values()), key=lambda r: r.name)

    # accounts
    def _resolve_role(self, account: Account) -> Account:
        # Role rows may have been re-read; always hand back the stored one
        role = self.roles.get(account.role.id)
        if role is None:
            return self._copy_account(account)
        return replace(account, role=replace(role))

    def save_account(
        self, account: Account, *, expected_version: Optional[int] = None
    ) -> Account:
        """Insert or update ``account``.

        With ``expected_version`` the write only lands if the stored row is
        still at that version; otherwise a ``version`` violation is raised.
        """
        with self._transaction():
            if account.role.id not in self.roles:
                raise ConstraintViolation(
                    "role does not exist", {"field": "role_id", "role_id": account.role.id}
                )
            if any(
                existing.email == account.email and existing.id != account.id
                for existing in self.accounts.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            current = self.accounts.get(account.id)
            if expected_version is not None and (
                current is None or current.version != expected_version
            ):
                raise ConstraintViolation(
                    "account was modified concurrently",
                    {"field": "version", "account_id": account.id},
                )
            stored = replace(
                account,
                role=replace(account.role),
                created_at=current.created_at if current else account.created_at,
                version=(current.version + 1) if current else 1,
            )
            self.accounts[stored.id] = stored
            return self._resolve_role(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._resolve_role(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            return self._resolve_role(account) if account else None

    def exists_by_email(self, email: str) -> bool:
        with self._data_lock:
            return any(a.email == email for a in self.accounts.values())

    def get_account_by_verification_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email_verification_token == token),
                None,
            )
            return self._resolve_role(account) if account else None

    def get_account_by_reset_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.password_reset_token == token),
                None,
            )
            return self._resolve_role(account) if account else None

    def list_accounts(
        self, status: Optional[AccountStatus] = None, limit: int = 100
    ) -> List[Account]:
        with self._data_lock:
            results = [
                a for a in self.accounts.values() if status is None or a.status == status
            ]
            results.sort(key=lambda a: a.created_at, reverse=True)
            return [self._resolve_role(a) for a in results[:limit]]

    def list_active_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            results = [
                a
                for a in self.accounts.values()
                if a.status == AccountStatus.ACTIVE
                and a.email_verified
                and a.deleted_at is None
            ]
            results.sort(key=lambda a: a.created_at, reverse=True)
            return [self._resolve_role(a) for a in results[:limit]]

    def list_accounts_lock_expired_before(self, now: datetime) -> List[Account]:
        with self._data_lock:
            return [
                self._resolve_role(a)
                for a in self.accounts.values()
                if a.locked_until is not None and a.locked_until < now
            ]

    def compare_and_set_lockout(
        self,
        account_id: str,
        *,
        expected_version: int,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        now: datetime,
    ) -> Optional[Account]:
        with self._transaction():
            current = self.accounts.get(account_id)
            if current is None or current.version != expected_version:
                return None
            stored = replace(
                current,
                failed_login_attempts=failed_login_attempts,
                locked_until=locked_until,
                updated_at=now,
                version=current.version + 1,
            )
            self.accounts[account_id] = stored
            return self._resolve_role(stored)

    # refresh tokens
    def _insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        if token.account_id not in self.accounts:
            raise ConstraintViolation(
                "account does not exist", {"field": "account_id", "account_id": token.account_id}
            )
        existing = self.refresh_tokens.get(token.token)
        if existing is not None and existing.id != token.id:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        if existing is not None and existing.revoked and not token.revoked:
            # revocation is one-way
            token = replace(token, revoked=True, revoked_at=existing.revoked_at)
        stored = replace(token)
        self.refresh_tokens[stored.token] = stored
        return replace(stored)

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._transaction():
            return self._insert_refresh_token(token)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def list_refresh_tokens(self, account_id: str) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [replace(t) for t in self.refresh_tokens.values() if t.account_id == account_id]
            return sorted(tokens, key=lambda t: t.created_at)

    def list_valid_refresh_tokens(self, account_id: str, now: datetime) -> List[RefreshToken]:
        return [t for t in self.list_refresh_tokens(account_id) if t.is_valid(now)]

    def _revoke_account_tokens(self, account_id: str, now: datetime) -> int:
        revoked = 0
        for value, token in list(self.refresh_tokens.items()):
            if token.account_id == account_id and token.is_valid(now):
                self.refresh_tokens[value] = replace(token, revoked=True, revoked_at=now)
                revoked += 1
        return revoked

    def revoke_account_tokens(self, account_id: str, now: datetime) -> int:
        with self._transaction():
            return self._revoke_account_tokens(account_id, now)

    def _revoke_if_valid(self, value: str, now: datetime) -> bool:
        token = self.refresh_tokens.get(value)
        if token is None or not token.is_valid(now):
            return False
        self.refresh_tokens[value] = replace(token, revoked=True, revoked_at=now)
        return True

    def revoke_token(self, value: str, now: datetime) -> bool:
        with self._transaction():
            return self._revoke_if_valid(value, now)

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._transaction():
            stale = [v for v, t in self.refresh_tokens.items() if t.expires_at < now]
            for value in stale:
                self.refresh_tokens.pop(value, None)
            return len(stale)

    def replace_account_tokens(
        self, account_id: str, new_token: RefreshToken, now: datetime
    ) -> int:
        """Revoke every valid token of the account and insert ``new_token``."""
        with self._transaction():
            revoked = self._revoke_account_tokens(account_id, now)
            self._insert_refresh_token(new_token)
            return revoked

    def rotate_token(
        self, presented: str, new_token: RefreshToken, now: datetime
    ) -> bool:
        """Revoke ``presented`` if still valid and insert ``new_token``.

        Returns False without inserting when the presented token was already
        revoked or expired, e.g. because a concurrent request rotated it.
        """
        with self._transaction():
            if not self._revoke_if_valid(presented, now):
                return False
            self._insert_refresh_token(new_token)
            return True

    def record_login(
        self,
        account_id: str,
        new_token: RefreshToken,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
    ) -> Optional[Tuple[Account, int]]:
        """Reset the lockout fields, stamp the login and start a new lineage.

        Returns None when the account is gone, soft-deleted or locked at
        ``now``; nothing is written in that case.
        """
        with self._transaction():
            current = self.accounts.get(account_id)
            if current is None or current.is_deleted or not current.is_account_non_locked(now):
                return None
            stored = self._copy_account(current)
            stored.record_login(now)
            if password_hash is not None:
                stored.password_hash = password_hash
            stored.version = current.version + 1
            self.accounts[account_id] = stored
            revoked = self._revoke_account_tokens(account_id, now)
            self._insert_refresh_token(new_token)
            return self._resolve_role(stored), revoked

    # persistence
    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> dict:
        dt = self._serialize_datetime
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "role_id": account.role.id,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "status": account.status.value,
            "email_verified": account.email_verified,
            "email_verification_token": account.email_verification_token,
            "failed_login_attempts": account.failed_login_attempts,
            "locked_until": dt(account.locked_until),
            "password_reset_token": account.password_reset_token,
            "password_reset_expires_at": dt(account.password_reset_expires_at),
            "last_password_change_at": dt(account.last_password_change_at),
            "created_at": dt(account.created_at),
            "updated_at": dt(account.updated_at),
            "last_login_at": dt(account.last_login_at),
            "deleted_at": dt(account.deleted_at),
            "version": account.version,
        }

    def _deserialize_account(self, data: dict) -> Account:
        dt = self._deserialize_datetime
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            role=self.roles[data["role_id"]],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            status=AccountStatus(data.get("status", AccountStatus.PENDING_VERIFICATION.value)),
            email_verified=bool(data.get("email_verified", False)),
            email_verification_token=data.get("email_verification_token"),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked_until=dt(data.get("locked_until")),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires_at=dt(data.get("password_reset_expires_at")),
            last_password_change_at=dt(data.get("last_password_change_at")),
            created_at=dt(data["created_at"]),
            updated_at=dt(data["updated_at"]),
            last_login_at=dt(data.get("last_login_at")),
            deleted_at=dt(data.get("deleted_at")),
            version=int(data.get("version", 1)),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "token": token.token,
            "account_id": token.account_id,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "revoked": token.revoked,
            "revoked_at": self._serialize_datetime(token.revoked_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            token=data["token"],
            account_id=str(data["account_id"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state: Dict[str, Any] = {
            "roles": [{"id": r.id, "name": r.name} for r in self.roles.values()],
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".identity_", suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.roles = {r["id"]: Role(id=r["id"], name=r["name"]) for r in data.get("roles", [])}
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.refresh_tokens = {
            t["token"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True
