"""Unit tests for auth/verification.py -- EmailVerificationFlow."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from auth.errors import AlreadyVerified, DependencyError, InvalidOrExpired, NotFound
from auth.verification import EmailVerificationFlow
from conftest import TEST_SECRET


class _BrokenMailer:
    is_configured = True

    def send_verification_email(self, to_email: str, link: str) -> None:
        raise DependencyError("Verification email could not be sent.")


@pytest.fixture
def flow(store, mailer) -> EmailVerificationFlow:
    return EmailVerificationFlow(store, mailer, secret_key=TEST_SECRET, app_base_url="https://app.example.com/")


def _token_from(link: str) -> str:
    return parse_qs(urlparse(link).query)["token"][0]


def test_request_sends_link_with_token_and_email(flow, mailer, make_identity):
    make_identity("alice", email="a@x.com")
    flow.request_verification("a@x.com")

    assert len(mailer.sent) == 1
    to, link = mailer.sent[0]
    assert to == "a@x.com"
    parsed = urlparse(link)
    assert link.startswith("https://app.example.com/verify-email?")
    query = parse_qs(parsed.query)
    assert query["email"] == ["a@x.com"]
    assert len(query["token"][0]) == 64


def test_raw_token_is_not_stored(flow, store, mailer, make_identity):
    alice = make_identity("alice", email="a@x.com")
    flow.request_verification("a@x.com")
    raw = _token_from(mailer.last_link_for("a@x.com"))
    assert not store.confirm_email_verification(alice.id, raw)
    assert flow.confirm_verification("a@x.com", raw).email_verified is True


def test_confirm_marks_verified_and_second_confirm_fails(flow, mailer, make_identity):
    make_identity("alice", email="a@x.com")
    flow.request_verification("a@x.com")
    token = _token_from(mailer.last_link_for("a@x.com"))

    verified = flow.confirm_verification("a@x.com", token)
    assert verified.email_verified is True

    with pytest.raises(InvalidOrExpired):
        flow.confirm_verification("a@x.com", token)


def test_new_request_invalidates_previous_token(flow, mailer, make_identity):
    make_identity("alice", email="a@x.com")
    flow.request_verification("a@x.com")
    first = _token_from(mailer.last_link_for("a@x.com"))
    flow.request_verification("a@x.com")
    second = _token_from(mailer.last_link_for("a@x.com"))

    with pytest.raises(InvalidOrExpired):
        flow.confirm_verification("a@x.com", first)
    assert flow.confirm_verification("a@x.com", second).email_verified


def test_expired_token_is_rejected(store, mailer, make_identity):
    make_identity("alice", email="a@x.com")
    flow = EmailVerificationFlow(store, mailer, TEST_SECRET, "http://localhost:3000", ttl_seconds=-1)
    flow.request_verification("a@x.com")
    with pytest.raises(InvalidOrExpired):
        flow.confirm_verification("a@x.com", _token_from(mailer.last_link_for("a@x.com")))


def test_wrong_token_is_rejected(flow, make_identity):
    make_identity("alice", email="a@x.com")
    flow.request_verification("a@x.com")
    with pytest.raises(InvalidOrExpired):
        flow.confirm_verification("a@x.com", "0" * 64)


def test_unknown_email(flow):
    with pytest.raises(NotFound):
        flow.request_verification("nobody@x.com")
    with pytest.raises(NotFound):
        flow.confirm_verification("nobody@x.com", "0" * 64)


def test_already_verified(flow, mailer, make_identity):
    make_identity("alice", email="a@x.com", email_verified=True)
    with pytest.raises(AlreadyVerified):
        flow.request_verification("a@x.com")
    assert mailer.sent == []


def test_mail_failure_surfaces_as_dependency_error(store, make_identity):
    make_identity("alice", email="a@x.com")
    flow = EmailVerificationFlow(store, _BrokenMailer(), TEST_SECRET, "http://localhost:3000")
    with pytest.raises(DependencyError):
        flow.request_verification("a@x.com")
