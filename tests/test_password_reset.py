"""
tests/test_password_reset.py -- Unit tests for auth/password_reset.py.

Covers:
  - request_reset: one live token per account, nothing for unknown emails,
    only hashes at rest, new token once the old one expired
  - reset_password: single use, expiry, weak password keeps the token,
    session and sibling-token revocation, confirmation email
  - validate_reset_token is read-only
  - cleanup_expired_tokens
"""

from __future__ import annotations

import pytest
from conftest import PASSWORD, FrozenClock, RecordingEmailSender, make_account

from auth.errors import InvalidCredentials, InvalidOrExpiredResetToken, InvalidRefreshToken, WeakPassword
from auth.models import ActivityType
from auth.service import AuthService
from auth.tokens import lookup_digest

NEW_PASSWORD = "N3w-Password!"
DAY = 24 * 60 * 60


class FailingEmailSender(RecordingEmailSender):
    def send_password_reset(self, email: str, name: str, raw_token: str) -> None:
        raise RuntimeError("smtp down")


class TestRequestReset:
    def test_sends_one_email_with_raw_token(self, service: AuthService, mailer: RecordingEmailSender) -> None:
        account = make_account(service, first_name="Ada")
        service.resets.request_reset("a@x.com", "10.0.0.1", "ua")
        sent = mailer.of_kind("reset")
        assert len(sent) == 1
        assert sent[0].email == "a@x.com"
        assert sent[0].name == "Ada"
        raw = sent[0].token
        tokens = service.store.list_reset_tokens(account.id)
        assert len(tokens) == 1
        assert tokens[0].token_lookup == lookup_digest(raw)
        assert tokens[0].token_hash.startswith("$2")
        assert raw not in (tokens[0].token_lookup, tokens[0].token_hash)
        assert tokens[0].ip == "10.0.0.1"

    def test_second_request_is_a_noop(self, service: AuthService, mailer: RecordingEmailSender) -> None:
        account = make_account(service)
        service.resets.request_reset("a@x.com")
        service.resets.request_reset("A@x.com")
        assert len(mailer.of_kind("reset")) == 1
        assert len(service.store.list_reset_tokens(account.id)) == 1

    def test_unknown_email_sends_nothing(self, service: AuthService, mailer: RecordingEmailSender) -> None:
        service.resets.request_reset("nobody@x.com")
        assert mailer.sent == []

    def test_new_token_after_expiry(
        self, service: AuthService, mailer: RecordingEmailSender, clock: FrozenClock
    ) -> None:
        account = make_account(service)
        service.resets.request_reset("a@x.com")
        clock.advance(DAY + 1)
        service.resets.request_reset("a@x.com")
        assert len(mailer.of_kind("reset")) == 2
        tokens = service.store.list_reset_tokens(account.id)
        assert len(tokens) == 1
        assert tokens[0].token_lookup == lookup_digest(mailer.last_token("reset"))

    def test_sender_failure_is_not_raised(self, store, counters, activity, clock) -> None:
        service = AuthService(store, counters, email_sender=FailingEmailSender(), activity=activity, clock=clock)
        make_account(service)
        service.resets.request_reset("a@x.com")
        assert len(activity.of_type(ActivityType.PASSWORD_RESET_REQUEST)) == 1


class TestResetPassword:
    def _token(self, service: AuthService, mailer: RecordingEmailSender) -> str:
        service.resets.request_reset("a@x.com")
        return mailer.last_token("reset")

    def test_success_changes_password(self, service: AuthService, mailer: RecordingEmailSender) -> None:
        account = make_account(service)
        token = self._token(service, mailer)
        service.resets.reset_password(token, NEW_PASSWORD, "10.0.0.7")

        assert service.validator.validate("a@x.com", NEW_PASSWORD, "10.0.0.1").id == account.id
        with pytest.raises(InvalidCredentials):
            service.validator.validate("a@x.com", PASSWORD, "10.0.0.1")
        confirmations = mailer.of_kind("password_changed")
        assert len(confirmations) == 1
        assert confirmations[0].ip == "10.0.0.7"
        assert service.store.list_reset_tokens(account.id)[0].used_at is not None

    def test_token_is_single_use(self, service: AuthService, mailer: RecordingEmailSender) -> None:
        make_account(service)
        token = self._token(service, mailer)
        service.resets.reset_password(token, NEW_PASSWORD)
        with pytest.raises(InvalidOrExpiredResetToken):
            service.resets.reset_password(token, "An0ther-Password!")

    def test_expired_token(self, service: AuthService, mailer: RecordingEmailSender, clock: FrozenClock) -> None:
        account = make_account(service)
        token = self._token(service, mailer)
        clock.advance(DAY)
        with pytest.raises(InvalidOrExpiredResetToken):
            service.resets.reset_password(token, NEW_PASSWORD)
        assert service.store.list_reset_tokens(account.id)[0].attempts == 1

    def test_unknown_token(self, service: AuthService) -> None:
        with pytest.raises(InvalidOrExpiredResetToken):
            service.resets.reset_password("0" * 64, NEW_PASSWORD)
        with pytest.raises(InvalidOrExpiredResetToken):
            service.resets.reset_password("", NEW_PASSWORD)

    def test_weak_password_keeps_token(self, service: AuthService, mailer: RecordingEmailSender) -> None:
        make_account(service)
        token = self._token(service, mailer)
        with pytest.raises(WeakPassword):
            service.resets.reset_password(token, "Password1")
        assert service.resets.validate_reset_token(token) is True
        service.resets.reset_password(token, NEW_PASSWORD)

    def test_reset_revokes_sessions(self, service: AuthService, mailer: RecordingEmailSender) -> None:
        account = make_account(service)
        result = service.login("a@x.com", PASSWORD, "10.0.0.1", "ua")
        token = self._token(service, mailer)
        service.resets.reset_password(token, NEW_PASSWORD)
        assert service.list_sessions(account.id) == []
        assert service.validate_token(result.tokens.access_token) is None
        with pytest.raises(InvalidRefreshToken):
            service.refresh(result.tokens.refresh_token)

    def test_reset_clears_lockout(self, service: AuthService, mailer: RecordingEmailSender) -> None:
        account = make_account(service)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login("a@x.com", "Wrong1!pass", "10.0.0.1")
        token = self._token(service, mailer)
        service.resets.reset_password(token, NEW_PASSWORD)
        stored = service.store.get_account(account.id)
        assert stored.lock_until is None
        assert stored.failed_attempt_count == 0


class TestValidateResetToken:
    def test_lifecycle(self, service: AuthService, mailer: RecordingEmailSender, clock: FrozenClock) -> None:
        make_account(service)
        service.resets.request_reset("a@x.com")
        token = mailer.last_token("reset")
        assert service.resets.validate_reset_token(token) is True
        assert service.resets.validate_reset_token(token) is True
        assert service.resets.validate_reset_token("f" * 64) is False
        clock.advance(DAY)
        assert service.resets.validate_reset_token(token) is False

    def test_false_after_use(self, service: AuthService, mailer: RecordingEmailSender) -> None:
        make_account(service)
        service.resets.request_reset("a@x.com")
        token = mailer.last_token("reset")
        service.resets.reset_password(token, NEW_PASSWORD)
        assert service.resets.validate_reset_token(token) is False


def test_cleanup_expired_tokens(service: AuthService, mailer: RecordingEmailSender, clock: FrozenClock) -> None:
    make_account(service)
    make_account(service, email="b@x.com")
    service.resets.request_reset("a@x.com")
    clock.advance(DAY / 2)
    service.resets.request_reset("b@x.com")
    clock.advance(DAY / 2 + 1)
    assert service.resets.cleanup_expired_tokens() == 1
    assert service.resets.cleanup_expired_tokens() == 0
