"""
tests/test_credentials.py -- Unit tests for auth/credentials.py (CredentialValidator).

Covers:
  - success path bookkeeping (failed count, lock, last_login_at, previous_login_at)
  - unknown email is counted like a wrong password
  - lockout after five failures, rejection while locked, recovery afterwards
  - inactive accounts
"""

from __future__ import annotations

import pytest
from conftest import PASSWORD, FrozenClock, RecordingActivitySink, make_account

from auth.errors import AccountInactive, AccountLocked, InvalidCredentials
from auth.models import AccountStatus, ActivityType
from auth.service import AuthService

IP = "10.0.0.1"


class TestValidateSuccess:
    def test_returns_account_and_stamps_login(self, service: AuthService, clock: FrozenClock) -> None:
        created = make_account(service)
        account = service.validator.validate("a@x.com", PASSWORD, IP, "ua")
        assert account.id == created.id
        assert account.last_login_at == clock.now
        assert account.previous_login_at is None
        assert service.store.get_account(created.id).last_login_at == clock.now

    def test_previous_login_is_carried(self, service: AuthService, clock: FrozenClock) -> None:
        make_account(service)
        first = clock.now
        service.validator.validate("a@x.com", PASSWORD, IP, "ua")
        clock.advance(60)
        account = service.validator.validate("a@x.com", PASSWORD, IP, "ua")
        assert account.previous_login_at == first

    def test_email_is_case_insensitive(self, service: AuthService) -> None:
        make_account(service)
        assert service.validator.validate("  A@X.COM ", PASSWORD, IP, "ua").email == "a@x.com"


class TestValidateFailures:
    def test_unknown_email_is_counted(self, service: AuthService, activity: RecordingActivitySink) -> None:
        with pytest.raises(InvalidCredentials):
            service.validator.validate("nobody@x.com", PASSWORD, IP, "ua")
        assert service.monitor.get_login_attempts("nobody@x.com", IP) == 1
        assert len(activity.of_type(ActivityType.LOGIN_FAILED)) == 1

    def test_unknown_email_and_wrong_password_look_alike(self, service: AuthService) -> None:
        make_account(service)
        with pytest.raises(InvalidCredentials) as unknown:
            service.validator.validate("nobody@x.com", PASSWORD, IP, "ua")
        with pytest.raises(InvalidCredentials) as wrong:
            service.validator.validate("a@x.com", "Wrong1!pass", IP, "ua")
        assert unknown.value.code == wrong.value.code
        assert unknown.value.message == wrong.value.message

    def test_wrong_password_records_failure(
        self, service: AuthService, activity: RecordingActivitySink
    ) -> None:
        account = make_account(service)
        with pytest.raises(InvalidCredentials):
            service.validator.validate("a@x.com", "Wrong1!pass", IP, "ua")
        assert service.store.get_account(account.id).failed_attempt_count == 1
        events = activity.of_type(ActivityType.LOGIN_FAILED)
        assert events and events[-1].account_id == account.id

    def test_inactive_account(self, service: AuthService) -> None:
        make_account(service, status=AccountStatus.pending_verification)
        make_account(service, email="s@x.com", status=AccountStatus.suspended)
        with pytest.raises(AccountInactive):
            service.validator.validate("a@x.com", PASSWORD, IP, "ua")
        with pytest.raises(AccountInactive):
            service.validator.validate("s@x.com", PASSWORD, IP, "ua")


class TestLockout:
    def test_fifth_failure_locks_even_correct_password(
        self, service: AuthService, clock: FrozenClock, activity: RecordingActivitySink
    ) -> None:
        account = make_account(service)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.validator.validate("a@x.com", "Wrong1!pass", IP, "ua")
        stored = service.store.get_account(account.id)
        assert stored.lock_until is not None
        assert stored.lock_until > clock.now
        assert len(activity.of_type(ActivityType.ACCOUNT_LOCKED)) == 1

        with pytest.raises(AccountLocked):
            service.validator.validate("a@x.com", PASSWORD, IP, "ua")

    def test_locked_attempts_are_not_counted(self, service: AuthService) -> None:
        account = make_account(service)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.validator.validate("a@x.com", "Wrong1!pass", IP, "ua")
        for _ in range(3):
            with pytest.raises(AccountLocked):
                service.validator.validate("a@x.com", "Wrong1!pass", IP, "ua")
        assert service.store.get_account(account.id).failed_attempt_count == 5
        assert service.monitor.get_login_attempts("a@x.com", IP) == 5

    def test_lock_elapses(self, service: AuthService, clock: FrozenClock) -> None:
        account = make_account(service)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.validator.validate("a@x.com", "Wrong1!pass", IP, "ua")
        clock.advance(15 * 60 - 1)
        with pytest.raises(AccountLocked):
            service.validator.validate("a@x.com", PASSWORD, IP, "ua")
        clock.advance(2)
        service.validator.validate("a@x.com", PASSWORD, IP, "ua")
        stored = service.store.get_account(account.id)
        assert stored.failed_attempt_count == 0
        assert stored.lock_until is None

    def test_lock_is_checked_before_status(self, service: AuthService, clock: FrozenClock) -> None:
        account = make_account(service)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.validator.validate("a@x.com", "Wrong1!pass", IP, "ua")
        service.store.set_status(account.id, AccountStatus.suspended)
        with pytest.raises(AccountLocked):
            service.validator.validate("a@x.com", PASSWORD, IP, "ua")
