"""Thread-based races against the memory store.

Each test releases its workers together through a barrier so the interesting
windows (read-then-rotate, read-then-count, check-then-insert) overlap.
"""

import threading
from typing import Callable, List, Optional

import pytest

from intelliguard.service.auth import AuthService
from intelliguard.service.errors import (
    AccountDeletedError,
    DuplicateAccountError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
)
from intelliguard.service.passwords import Argon2CredentialHasher
from intelliguard.storage.memory import MemoryStore


@pytest.fixture
def service(settings, clock):
    return AuthService(MemoryStore(), settings, clock=clock)


def run_concurrently(count: int, target: Callable[[int], object]) -> tuple:
    barrier = threading.Barrier(count)
    results: List[object] = []
    errors: List[BaseException] = []
    lock = threading.Lock()

    def worker(index: int) -> None:
        barrier.wait()
        try:
            outcome = target(index)
        except Exception as exc:
            with lock:
                errors.append(exc)
        else:
            with lock:
                results.append(outcome)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results, errors


class TestConcurrentRefresh:
    def test_exactly_one_rotation_wins(self, service):
        bundle = service.register("a@x.com", "pw1")

        results, errors = run_concurrently(8, lambda _: service.refresh(bundle.refresh_token))

        assert len(results) == 1
        assert len(errors) == 7
        assert all(isinstance(exc, InvalidRefreshTokenError) for exc in errors)
        valid = service.store.list_valid_refresh_tokens(bundle.user.id, service.clock.now())
        assert [t.token for t in valid] == [results[0].refresh_token]


class TestConcurrentLogin:
    def test_failed_logins_do_not_lose_increments(self, service):
        service.register("a@x.com", "pw1")

        results, errors = run_concurrently(4, lambda _: service.login("a@x.com", "wrong"))

        assert results == []
        assert len(errors) == 4
        assert all(isinstance(exc, InvalidCredentialsError) for exc in errors)
        assert service.store.get_account_by_email("a@x.com").failed_login_attempts == 4

    def test_parallel_logins_leave_one_live_session(self, service):
        service.register("a@x.com", "pw1")

        results, errors = run_concurrently(6, lambda _: service.login("a@x.com", "pw1"))

        assert errors == []
        account = service.store.get_account_by_email("a@x.com")
        valid = service.store.list_valid_refresh_tokens(account.id, service.clock.now())
        assert len(valid) == 1
        assert valid[0].token in {bundle.refresh_token for bundle in results}


class TestConcurrentRegistration:
    def test_same_email_registers_once(self, service):
        results, errors = run_concurrently(
            8, lambda i: service.register("race@x.com", f"pw{i}")
        )

        assert len(results) == 1
        assert len(errors) == 7
        assert all(isinstance(exc, DuplicateAccountError) for exc in errors)
        emails = [a.email for a in service.store.list_accounts()]
        assert emails == ["race@x.com"]


class InterleavingHasher:
    """Real argon2 hasher that runs ``on_match`` once, right after a password matches."""

    def __init__(self, settings):
        self.inner = Argon2CredentialHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )
        self.on_match: Optional[Callable[[], None]] = None

    def hash(self, plaintext):
        return self.inner.hash(plaintext)

    def needs_rehash(self, password_hash):
        return self.inner.needs_rehash(password_hash)

    def verify(self, plaintext, password_hash):
        matched = self.inner.verify(plaintext, password_hash)
        hook, self.on_match = self.on_match, None
        if matched and hook is not None:
            hook()
        return matched


class TestInterleavedAccountWrites:
    @pytest.fixture
    def hasher(self, settings):
        return InterleavingHasher(settings)

    @pytest.fixture
    def service(self, settings, clock, hasher):
        return AuthService(MemoryStore(), settings, clock=clock, hasher=hasher)

    def _verified(self, service, email="a@x.com"):
        bundle = service.register(email, "pw1")
        token = service.store.get_account(bundle.user.id).email_verification_token
        service.verify_email(token)
        return bundle.user.id

    def test_delete_during_login_is_not_undone(self, service, hasher):
        account_id = self._verified(service)
        hasher.on_match = lambda: service.delete_account(account_id)

        with pytest.raises(AccountDeletedError):
            service.login("a@x.com", "pw1")

        account = service.store.get_account(account_id)
        assert account.deleted_at is not None
        assert account.status.value == "DELETED"
        assert service.store.list_valid_refresh_tokens(account_id, service.clock.now()) == []

    def test_verify_during_login_is_kept(self, service, hasher):
        bundle = service.register("a@x.com", "pw1")
        token = service.store.get_account(bundle.user.id).email_verification_token
        hasher.on_match = lambda: service.verify_email(token)

        result = service.login("a@x.com", "pw1")

        account = service.store.get_account(bundle.user.id)
        assert account.email_verified
        assert account.status.value == "ACTIVE"
        assert result.user.status == "ACTIVE"
        assert account.last_login_at == service.clock.now()

    def test_verify_keeps_concurrent_failed_login(self, service, monkeypatch):
        bundle = service.register("a@x.com", "pw1")
        token = service.store.get_account(bundle.user.id).email_verification_token
        original = service.store.get_account_by_verification_token

        def read_then_fail_login(value):
            account = original(value)
            with pytest.raises(InvalidCredentialsError):
                service.login("a@x.com", "wrong")
            return account

        monkeypatch.setattr(
            service.store, "get_account_by_verification_token", read_then_fail_login
        )

        service.verify_email(token)

        account = service.store.get_account(bundle.user.id)
        assert account.email_verified
        assert account.failed_login_attempts == 1

    def test_delete_revokes_session_from_concurrent_login(self, service, monkeypatch):
        account_id = self._verified(service)
        original = service.store.get_account
        logged_in = []

        def read_then_login(value):
            account = original(value)
            if not logged_in:
                logged_in.append(service.login("a@x.com", "pw1"))
            return account

        monkeypatch.setattr(service.store, "get_account", read_then_login)

        service.delete_account(account_id)

        account = original(account_id)
        assert account.deleted_at is not None
        assert account.last_login_at is not None
        assert service.store.get_refresh_token(logged_in[0].refresh_token).revoked
