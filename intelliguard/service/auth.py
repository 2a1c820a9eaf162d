from __future__ import annotations

import contextlib
import secrets
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Protocol, Tuple, TypeVar

from pydantic import ValidationError as PydanticValidationError

from intelliguard.api.schemas import LoginRequest, RegisterRequest, TokenBundle, UserProfile
from intelliguard.config import Settings
from intelliguard.logging import get_logger, sanitize_error_message
from intelliguard.service.clock import Clock, SystemClock
from intelliguard.service.errors import (
    AccountDeletedError,
    AccountLockedError,
    ConfigurationError,
    DuplicateAccountError,
    InvalidAccessTokenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidVerificationTokenError,
    NotFoundError,
    ServerError,
    ServiceError,
    ValidationError,
)
from intelliguard.service.lockout import LockoutPolicy, LockoutState
from intelliguard.service.passwords import Argon2CredentialHasher, CredentialHasher
from intelliguard.service.tokens import AccessClaims, TokenSigner
from intelliguard.storage.errors import ConstraintViolation
from intelliguard.storage.models import Account, AccountStatus, RefreshToken, Role

logger = get_logger(__name__)

# Bounded retries for optimistic account updates and refresh token collisions
_MAX_UPDATE_RETRIES = 10
_MAX_TOKEN_ATTEMPTS = 3

_T = TypeVar("_T")


class UserStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def exists_by_email(self, email: str) -> bool: ...

    def save_account(
        self, account: Account, *, expected_version: Optional[int] = None
    ) -> Account: ...

    def get_account_by_verification_token(self, token: str) -> Optional[Account]: ...

    def get_account_by_reset_token(self, token: str) -> Optional[Account]: ...

    def list_accounts(
        self, status: Optional[AccountStatus] = None, limit: int = 100
    ) -> List[Account]: ...

    def list_active_accounts(self, limit: int = 100) -> List[Account]: ...

    def list_accounts_lock_expired_before(self, now: datetime) -> List[Account]: ...

    def compare_and_set_lockout(
        self,
        account_id: str,
        *,
        expected_version: int,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        now: datetime,
    ) -> Optional[Account]: ...


class RoleStore(Protocol):
    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def create_role(self, name: str) -> Role: ...

    def list_roles(self) -> List[Role]: ...


class RefreshTokenStore(Protocol):
    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def list_refresh_tokens(self, account_id: str) -> List[RefreshToken]: ...

    def list_valid_refresh_tokens(
        self, account_id: str, now: datetime
    ) -> List[RefreshToken]: ...

    def revoke_token(self, value: str, now: datetime) -> bool: ...

    def revoke_account_tokens(self, account_id: str, now: datetime) -> int: ...

    def delete_expired_tokens(self, now: datetime) -> int: ...

    def replace_account_tokens(
        self, account_id: str, new_token: RefreshToken, now: datetime
    ) -> int: ...

    def rotate_token(
        self, presented: str, new_token: RefreshToken, now: datetime
    ) -> bool: ...


class AuthStore(UserStore, RoleStore, RefreshTokenStore, Protocol):
    """Everything the auth service needs from one backend."""

    def record_login(
        self,
        account_id: str,
        new_token: RefreshToken,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
    ) -> Optional[Tuple[Account, int]]: ...


def _invalid_fields(exc: PydanticValidationError) -> List[str]:
    # Field names only; input values may be credentials
    return sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})


class AuthService:
    """Registration, login, token rotation and the account lifecycle around them.

    Every public method either returns its result or raises a
    :class:`ServiceError`. Store, hasher and signer failures that are not
    already service errors are logged and surfaced as ``ServerError``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        signer: Optional[TokenSigner] = None,
        clock: Optional[Clock] = None,
        lockout: Optional[LockoutPolicy] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.hasher: CredentialHasher = hasher or Argon2CredentialHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )
        self.signer = signer or TokenSigner(
            settings.jwt_secret or "",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_token_ttl,
            clock=self.clock,
        )
        self.lockout = lockout or LockoutPolicy(
            max_attempts=settings.lockout_max_attempts,
            lock_duration=settings.lockout_duration,
        )
        # Verified against on the unknown-email path so it costs the same as a wrong password
        self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))

    @contextlib.contextmanager
    def _internal_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except ServiceError:
            raise
        except Exception as exc:
            logger.error(
                "auth_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise ServerError("internal error") from exc

    def _bundle(self, account: Account, refresh_token: RefreshToken) -> TokenBundle:
        access_token = self.signer.sign_access_token(
            subject=account.email, role=account.role.name, account_id=account.id
        )
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token.token,
            token_type="Bearer",
            expires_in=self.signer.access_ttl_seconds,
            user=UserProfile.from_account(account),
        )

    def _new_refresh_token(self, account_id: str, now: datetime) -> RefreshToken:
        return RefreshToken.new(
            account_id,
            self.signer.generate_opaque_token(),
            now=now,
            ttl=self.settings.refresh_token_ttl,
        )

    def _with_new_refresh_token(
        self, account_id: str, now: datetime, issue: Callable[[RefreshToken], _T]
    ) -> Tuple[RefreshToken, _T]:
        """Run ``issue`` with a fresh refresh token, retrying on value collisions."""
        for attempt in range(1, _MAX_TOKEN_ATTEMPTS + 1):
            refresh_token = self._new_refresh_token(account_id, now)
            try:
                return refresh_token, issue(refresh_token)
            except ConstraintViolation as exc:
                if exc.field != "token":
                    raise
                logger.warning("refresh_token_collision", account_id=account_id, attempt=attempt)
        raise ServerError("could not issue refresh token")

    def _start_session(self, account: Account, now: datetime) -> TokenBundle:
        """Revoke every live refresh token of ``account`` and issue a fresh pair."""
        refresh_token, revoked = self._with_new_refresh_token(
            account.id,
            now,
            lambda token: self.store.replace_account_tokens(account.id, token, now),
        )
        if revoked:
            logger.info("refresh_tokens_revoked", account_id=account.id, count=revoked)
        return self._bundle(account, refresh_token)

    def _update_account(
        self, account: Account, apply: Callable[[Account], None]
    ) -> Account:
        """Apply ``apply`` and save, re-reading whenever another write got there first."""
        current = account
        for _ in range(_MAX_UPDATE_RETRIES):
            apply(current)
            try:
                return self.store.save_account(current, expected_version=current.version)
            except ConstraintViolation as exc:
                if exc.field != "version":
                    raise
            fresh = self.store.get_account(account.id)
            if fresh is None:
                raise NotFoundError("account not found", detail={"account_id": account.id})
            current = fresh
        logger.error("account_update_contended", account_id=account.id)
        raise ServerError("account update contended")

    @staticmethod
    def _reject_unusable(account: Account, now: datetime) -> None:
        if not account.is_account_non_locked(now):
            logger.info(
                "login_rejected_locked",
                account_id=account.id,
                locked_until=account.locked_until.isoformat(),
            )
            raise AccountLockedError(account.locked_until)
        if account.is_deleted:
            logger.info("login_rejected_deleted", account_id=account.id)
            raise AccountDeletedError()

    def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> TokenBundle:
        try:
            request = RegisterRequest(
                email=email, password=password, first_name=first_name, last_name=last_name
            )
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid registration request", detail={"fields": _invalid_fields(exc)}
            ) from None

        with self._internal_errors("register"):
            # Advisory only; the store's unique constraint is the real guard
            if self.store.exists_by_email(request.email):
                logger.info("registration_rejected", reason="duplicate_email")
                raise DuplicateAccountError()

            role = self.store.get_role_by_name(self.settings.default_role)
            if role is None:
                logger.error("default_role_missing", role=self.settings.default_role)
                raise ConfigurationError(
                    f"default role {self.settings.default_role} is not configured"
                )

            now = self.clock.now()
            account = Account.new(
                request.email,
                self.hasher.hash(request.password),
                role,
                verification_token=self.signer.generate_opaque_token(),
                now=now,
                first_name=request.first_name,
                last_name=request.last_name,
            )
            try:
                account = self.store.save_account(account)
            except ConstraintViolation as exc:
                if exc.field == "email":
                    logger.info("registration_rejected", reason="duplicate_email")
                    raise DuplicateAccountError() from exc
                raise

            bundle = self._start_session(account, now)
            logger.info("account_registered", account_id=account.id, role=role.name)
            return bundle

    def login(self, email: str, password: str) -> TokenBundle:
        try:
            request = LoginRequest(email=email, password=password)
        except PydanticValidationError:
            # A malformed address cannot belong to an account
            self.hasher.verify(password if isinstance(password, str) else "", self._dummy_hash)
            raise InvalidCredentialsError() from None

        with self._internal_errors("login"):
            account = self.store.get_account_by_email(request.email)
            if account is None:
                self.hasher.verify(request.password, self._dummy_hash)
                logger.info("login_failed", reason="unknown_account")
                raise InvalidCredentialsError()

            now = self.clock.now()
            self._reject_unusable(account, now)

            if not self.hasher.verify(request.password, account.password_hash):
                self._record_failed_login(account, now)
                raise InvalidCredentialsError()

            new_hash = None
            if self.hasher.needs_rehash(account.password_hash):
                new_hash = self.hasher.hash(request.password)

            account_id = account.id
            refresh_token, result = self._with_new_refresh_token(
                account_id,
                now,
                lambda token: self.store.record_login(
                    account_id, token, now, password_hash=new_hash
                ),
            )
            if result is None:
                # Deleted or locked between the read and the write
                current = self.store.get_account(account_id)
                if current is not None:
                    self._reject_unusable(current, now)
                logger.info("login_failed", reason="account_changed", account_id=account_id)
                raise InvalidCredentialsError()

            account, revoked = result
            if new_hash is not None:
                logger.info("password_rehashed", account_id=account.id)
            if revoked:
                logger.info("refresh_tokens_revoked", account_id=account.id, count=revoked)
            logger.info("login_succeeded", account_id=account.id)
            return self._bundle(account, refresh_token)

    def _record_failed_login(self, account: Account, now: datetime) -> None:
        current: Optional[Account] = account
        for _ in range(_MAX_UPDATE_RETRIES):
            if current is None:
                return
            state = self.lockout.register_failure(
                LockoutState(current.failed_login_attempts, current.locked_until), now
            )
            updated = self.store.compare_and_set_lockout(
                current.id,
                expected_version=current.version,
                failed_login_attempts=state.failed_login_attempts,
                locked_until=state.locked_until,
                now=now,
            )
            if updated is not None:
                if state.locked_until is not None:
                    logger.warning(
                        "account_locked",
                        account_id=current.id,
                        failed_login_attempts=state.failed_login_attempts,
                        locked_until=state.locked_until.isoformat(),
                    )
                else:
                    logger.info(
                        "login_failed",
                        reason="bad_password",
                        account_id=current.id,
                        failed_login_attempts=state.failed_login_attempts,
                    )
                return
            # Lost the race; re-read and apply the failure on top of the winner
            current = self.store.get_account(account.id)
            if current is not None and not current.is_account_non_locked(now):
                return
        logger.error("lockout_update_contended", account_id=account.id)

    def refresh(self, refresh_token: str) -> TokenBundle:
        if not isinstance(refresh_token, str) or not refresh_token:
            raise InvalidRefreshTokenError()

        with self._internal_errors("refresh"):
            now = self.clock.now()
            record = self.store.get_refresh_token(refresh_token)
            if record is None:
                logger.info("refresh_rejected", reason="unknown")
                raise InvalidRefreshTokenError()
            if record.revoked:
                logger.warning(
                    "refresh_token_reuse_rejected",
                    account_id=record.account_id,
                    refresh_id=record.id,
                )
                raise InvalidRefreshTokenError()
            if record.is_expired(now):
                logger.info("refresh_rejected", reason="expired", refresh_id=record.id)
                raise InvalidRefreshTokenError()

            account = self.store.get_account(record.account_id)
            if account is None:
                logger.error(
                    "refresh_token_orphaned",
                    refresh_id=record.id,
                    account_id=record.account_id,
                )
                raise InvalidRefreshTokenError()
            if account.is_deleted:
                logger.info("refresh_rejected", reason="account_deleted", account_id=account.id)
                raise InvalidRefreshTokenError()

            replacement, rotated = self._with_new_refresh_token(
                account.id,
                now,
                lambda token: self.store.rotate_token(refresh_token, token, now),
            )
            if not rotated:
                # Another request rotated or revoked it between the read and now
                logger.warning(
                    "refresh_token_reuse_rejected",
                    account_id=account.id,
                    refresh_id=record.id,
                    reason="lost_race",
                )
                raise InvalidRefreshTokenError()
            logger.info(
                "refresh_token_rotated",
                account_id=account.id,
                previous_refresh_id=record.id,
                refresh_id=replacement.id,
            )
            return self._bundle(account, replacement)

    def logout(self, refresh_token: str) -> bool:
        """Revoke one refresh token; False when it was unknown or already dead."""
        if not isinstance(refresh_token, str) or not refresh_token:
            return False
        with self._internal_errors("logout"):
            revoked = self.store.revoke_token(refresh_token, self.clock.now())
            if revoked:
                logger.info("logout", scope="token")
            return revoked

    def logout_all(self, account_id: str) -> int:
        with self._internal_errors("logout_all"):
            revoked = self.store.revoke_account_tokens(account_id, self.clock.now())
            logger.info("logout", scope="account", account_id=account_id, count=revoked)
            return revoked

    def verify_email(self, token: str) -> UserProfile:
        if not isinstance(token, str) or not token:
            raise InvalidVerificationTokenError()
        with self._internal_errors("verify_email"):
            account = self.store.get_account_by_verification_token(token)
            if account is None:
                logger.info("email_verification_rejected")
                raise InvalidVerificationTokenError()
            now = self.clock.now()
            account = self._update_account(
                account, lambda current: current.mark_email_verified(now)
            )
            logger.info("email_verified", account_id=account.id, status=account.status.value)
            return UserProfile.from_account(account)

    def delete_account(self, account_id: str) -> UserProfile:
        with self._internal_errors("delete_account"):
            account = self.store.get_account(account_id)
            if account is None:
                raise NotFoundError("account not found", detail={"account_id": account_id})
            now = self.clock.now()
            if not account.is_deleted:
                account = self._update_account(
                    account, lambda current: current.mark_deleted(now)
                )
                logger.info("account_deleted", account_id=account.id)
            revoked = self.store.revoke_account_tokens(account.id, now)
            if revoked:
                logger.info("refresh_tokens_revoked", account_id=account.id, count=revoked)
            return UserProfile.from_account(account)

    def authenticate(self, access_token: str) -> AccessClaims:
        claims = self.signer.verify_access_token(access_token)
        if claims is None:
            raise InvalidAccessTokenError()
        return claims

    def sweep_expired_tokens(self) -> int:
        with self._internal_errors("sweep_expired_tokens"):
            removed = self.store.delete_expired_tokens(self.clock.now())
            logger.info("expired_tokens_swept", count=removed)
            return removed

    def clear_expired_lockouts(self) -> int:
        """Clear ``locked_until`` on accounts whose lock already ran out.

        The failure counter is kept, so the next miss re-locks just as it
        would have with the stale timestamp in place.
        """
        with self._internal_errors("clear_expired_lockouts"):
            now = self.clock.now()
            cleared = 0
            for account in self.store.list_accounts_lock_expired_before(now):
                updated = self.store.compare_and_set_lockout(
                    account.id,
                    expected_version=account.version,
                    failed_login_attempts=account.failed_login_attempts,
                    locked_until=None,
                    now=now,
                )
                if updated is not None:
                    cleared += 1
            logger.info("expired_lockouts_cleared", count=cleared)
            return cleared
