from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from intelliguard.logging import get_logger
from intelliguard.storage.errors import ConstraintViolation
from intelliguard.storage.models import Account, AccountStatus, RefreshToken, Role

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role_id TEXT NOT NULL REFERENCES role(id),
        first_name TEXT,
        last_name TEXT,
        status TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verification_token TEXT,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        password_reset_token TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        last_password_change_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        last_login_at TIMESTAMPTZ,
        deleted_at TIMESTAMPTZ,
        version INTEGER NOT NULL DEFAULT 1,
        CONSTRAINT app_account_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL,
        account_id TEXT NOT NULL REFERENCES app_account(id),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        CONSTRAINT refresh_token_token_key UNIQUE (token)
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_account_idx ON refresh_token (account_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)

_ACCOUNT_SELECT = (
    "SELECT a.*, r.name AS role_name FROM app_account a JOIN role r ON r.id = a.role_id"
)


class PostgresStore:
    """Postgres-backed store for roles, accounts and refresh tokens.

    Composite operations run inside one transaction and lock the owning
    account row first, so login and refresh for the same account serialize.
    """

    def __init__(
        self,
        dsn: str,
        *,
        seed_roles: Iterable[str] = (),
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._seed_roles(seed_roles)

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=["role", "app_account", "refresh_token"])

    def _seed_roles(self, names: Iterable[str]) -> None:
        for name in names:
            if self.get_role_by_name(name) is None:
                try:
                    self.create_role(name)
                except ConstraintViolation:
                    # another process seeded it first
                    continue

    @staticmethod
    def _row_to_role(row: dict) -> Role:
        return Role(id=str(row["id"]), name=row["name"])

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(id=str(row["role_id"]), name=row["role_name"]),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            status=AccountStatus(row["status"]),
            email_verified=bool(row.get("email_verified", False)),
            email_verification_token=row.get("email_verification_token"),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            last_password_change_at=row.get("last_password_change_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login_at=row.get("last_login_at"),
            deleted_at=row.get("deleted_at"),
            version=int(row.get("version") or 1),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token=row["token"],
            account_id=str(row["account_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
        )

    # roles
    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role WHERE name = %s", (name.strip().upper(),)
            ).fetchone()
        return self._row_to_role(row) if row else None

    def create_role(self, name: str) -> Role:
        role = Role.new(name)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO role (id, name) VALUES (%s, %s)", (role.id, role.name)
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return role

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY name").fetchall()
        return [self._row_to_role(row) for row in rows]

    # accounts
    def save_account(
        self, account: Account, *, expected_version: Optional[int] = None
    ) -> Account:
        params = {
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
            "locked_until": account.locked_until,
            "password_reset_token": account.password_reset_token,
            "password_reset_expires_at": account.password_reset_expires_at,
            "last_password_change_at": account.last_password_change_at,
            "created_at": account.created_at,
            "updated_at": account.updated_at,
            "last_login_at": account.last_login_at,
            "deleted_at": account.deleted_at,
        }
        columns = list(params)
        mutable = [col for col in columns if col not in ("id", "created_at")]
        if expected_version is None:
            updates = ", ".join(f"{col} = EXCLUDED.{col}" for col in mutable)
            sql = f"""
                INSERT INTO app_account ({", ".join(columns)}, version)
                VALUES ({", ".join(f"%({col})s" for col in columns)}, 1)
                ON CONFLICT (id) DO UPDATE
                SET {updates}, version = app_account.version + 1
                RETURNING created_at, version
                """
        else:
            params["expected_version"] = expected_version
            updates = ", ".join(f"{col} = %({col})s" for col in mutable)
            sql = f"""
                UPDATE app_account
                SET {updates}, version = version + 1
                WHERE id = %(id)s AND version = %(expected_version)s
                RETURNING created_at, version
                """
        try:
            with self._connect() as conn:
                row = conn.execute(sql, params).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role does not exist", {"field": "role_id", "role_id": account.role.id}
            )
        if row is None:
            raise ConstraintViolation(
                "account was modified concurrently",
                {"field": "version", "account_id": account.id},
            )
        saved = self._clone_account(account)
        saved.created_at = row["created_at"]
        saved.version = int(row["version"])
        return saved

    @staticmethod
    def _clone_account(account: Account) -> Account:
        return replace(account, role=replace(account.role))

    def _fetch_account(self, where: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(f"{_ACCOUNT_SELECT} WHERE {where}", params).fetchone()
        return self._row_to_account(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("a.id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("a.email = %s", (email,))

    def exists_by_email(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_account WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def get_account_by_verification_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._fetch_account("a.email_verification_token = %s", (token,))

    def get_account_by_reset_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._fetch_account("a.password_reset_token = %s", (token,))

    def list_accounts(
        self, status: Optional[AccountStatus] = None, limit: int = 100
    ) -> List[Account]:
        with self._connect() as conn:
            if status is not None:
                rows = conn.execute(
                    f"{_ACCOUNT_SELECT} WHERE a.status = %s ORDER BY a.created_at DESC LIMIT %s",
                    (status.value, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"{_ACCOUNT_SELECT} ORDER BY a.created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def list_active_accounts(self, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                f"{_ACCOUNT_SELECT} WHERE a.status = %s AND a.email_verified "
                "AND a.deleted_at IS NULL ORDER BY a.created_at DESC LIMIT %s",
                (AccountStatus.ACTIVE.value, limit),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def list_accounts_lock_expired_before(self, now: datetime) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                f"{_ACCOUNT_SELECT} WHERE a.locked_until IS NOT NULL AND a.locked_until < %s",
                (now,),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def compare_and_set_lockout(
        self,
        account_id: str,
        *,
        expected_version: int,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        now: datetime,
    ) -> Optional[Account]:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_account
                SET failed_login_attempts = %s, locked_until = %s, updated_at = %s,
                    version = version + 1
                WHERE id = %s AND version = %s
                """,
                (failed_login_attempts, locked_until, now, account_id, expected_version),
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(f"{_ACCOUNT_SELECT} WHERE a.id = %s", (account_id,)).fetchone()
        return self._row_to_account(row) if row else None

    # refresh tokens
    def _insert_refresh_token(self, conn: Any, token: RefreshToken) -> None:
        try:
            conn.execute(
                """
                INSERT INTO refresh_token (id, token, account_id, created_at, expires_at, revoked, revoked_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET revoked = refresh_token.revoked OR EXCLUDED.revoked,
                    revoked_at = COALESCE(refresh_token.revoked_at, EXCLUDED.revoked_at)
                """,
                (
                    token.id,
                    token.token,
                    token.account_id,
                    token.created_at,
                    token.expires_at,
                    token.revoked,
                    token.revoked_at,
                ),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist",
                {"field": "account_id", "account_id": token.account_id},
            )

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._connect() as conn:
            self._insert_refresh_token(conn, token)
        return token

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def list_refresh_tokens(self, account_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def list_valid_refresh_tokens(self, account_id: str, now: datetime) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE account_id = %s AND revoked = FALSE AND expires_at > %s
                ORDER BY created_at
                """,
                (account_id, now),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    @staticmethod
    def _revoke_account_tokens(conn: Any, account_id: str, now: datetime) -> int:
        result = conn.execute(
            """
            UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
            WHERE account_id = %s AND revoked = FALSE AND expires_at > %s
            """,
            (now, account_id, now),
        )
        return result.rowcount

    def revoke_account_tokens(self, account_id: str, now: datetime) -> int:
        with self._connect() as conn:
            return self._revoke_account_tokens(conn, account_id, now)

    @staticmethod
    def _revoke_if_valid(conn: Any, value: str, now: datetime) -> bool:
        result = conn.execute(
            """
            UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
            WHERE token = %s AND revoked = FALSE AND expires_at > %s
            """,
            (now, value, now),
        )
        return result.rowcount > 0

    def revoke_token(self, value: str, now: datetime) -> bool:
        with self._connect() as conn:
            return self._revoke_if_valid(conn, value, now)

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    @staticmethod
    def _lock_account(conn: Any, account_id: str) -> bool:
        row = conn.execute(
            "SELECT id FROM app_account WHERE id = %s FOR UPDATE", (account_id,)
        ).fetchone()
        return row is not None

    def replace_account_tokens(
        self, account_id: str, new_token: RefreshToken, now: datetime
    ) -> int:
        """Revoke every valid token of the account and insert ``new_token``."""
        with self._connect() as conn, conn.transaction():
            if not self._lock_account(conn, account_id):
                raise ConstraintViolation(
                    "account does not exist",
                    {"field": "account_id", "account_id": account_id},
                )
            revoked = self._revoke_account_tokens(conn, account_id, now)
            self._insert_refresh_token(conn, new_token)
        return revoked

    def rotate_token(
        self, presented: str, new_token: RefreshToken, now: datetime
    ) -> bool:
        """Revoke ``presented`` if still valid and insert ``new_token``.

        Returns False without inserting when another transaction already
        revoked the presented token or it has expired.
        """
        with self._connect() as conn, conn.transaction():
            self._lock_account(conn, new_token.account_id)
            if not self._revoke_if_valid(conn, presented, now):
                return False
            self._insert_refresh_token(conn, new_token)
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

        The account update takes the row lock and re-checks deletion and the
        lock window, so a delete or lock committed after the caller's read
        wins. Returns None without writing in that case.
        """
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE app_account
                SET failed_login_attempts = 0, locked_until = NULL,
                    last_login_at = %s, updated_at = %s,
                    password_hash = COALESCE(%s, password_hash),
                    version = version + 1
                WHERE id = %s AND deleted_at IS NULL
                  AND (locked_until IS NULL OR locked_until < %s)
                RETURNING id
                """,
                (now, now, password_hash, account_id, now),
            ).fetchone()
            if row is None:
                return None
            revoked = self._revoke_account_tokens(conn, account_id, now)
            self._insert_refresh_token(conn, new_token)
            account_row = conn.execute(
                f"{_ACCOUNT_SELECT} WHERE a.id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(account_row), revoked
