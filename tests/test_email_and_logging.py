"""Tests for SMTP delivery and log redaction."""

import smtplib

import pytest

from gatekeep.logging import _redact_pii, hash_identifier, sanitize_error_message
from gatekeep.service.email import EmailService


class _FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, sender, recipient, message):
        self.sent.append((sender, recipient, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    _FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)
    return _FakeSMTP


class TestEmailService:
    def test_dev_mode_delivers_without_smtp(self):
        service = EmailService()

        assert service.is_configured is False
        assert service.deliver("alice@x.com", "subject", "Your reset code is: 123456") is True

    def test_sends_over_starttls(self, fake_smtp):
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="noreply@example.com",
        )

        assert service.deliver("alice@x.com", "Your code", "body") is True

        server = fake_smtp.instances[0]
        assert server.tls is True
        assert server.logged_in == ("mailer", "pw")
        sender, recipient, message = server.sent[0]
        assert sender == "noreply@example.com"
        assert recipient == "alice@x.com"
        assert "Subject: Your code" in message

    def test_smtp_failure_returns_false(self, monkeypatch):
        class _Refusing(_FakeSMTP):
            def sendmail(self, sender, recipient, message):
                raise smtplib.SMTPRecipientsRefused({recipient: (550, b"no such user")})

        monkeypatch.setattr(smtplib, "SMTP", _Refusing)
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

        assert service.deliver("alice@x.com", "subject", "body") is False

    def test_connection_error_returns_false(self, monkeypatch):
        def _unreachable(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(smtplib, "SMTP", _unreachable)
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

        assert service.deliver("alice@x.com", "subject", "body") is False


class TestLogRedaction:
    def test_sensitive_keys_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "x",
                "password": "hunter22",
                "reset_code": "123456",
                "email": "alice@x.com",
                "email_hash": "abc123",
                "error_code": "unauthorized",
            },
        )

        assert event["password"] == "hu***22"
        assert "123456" not in event["reset_code"]
        assert event["email"] != "alice@x.com"
        assert event["email_hash"] == "abc123"
        assert event["error_code"] == "unauthorized"

    def test_hash_identifier_is_stable_and_case_insensitive(self):
        assert hash_identifier("Alice@X.com ") == hash_identifier("alice@x.com")
        assert len(hash_identifier("alice@x.com")) == 16

    def test_sanitize_error_message_strips_secrets(self):
        message = sanitize_error_message(
            "cannot reach redis://:hunter2@cache:6379/0 from /srv/gatekeep/state password=abc"
        )

        assert "hunter2" not in message
        assert "/srv/gatekeep" not in message
        assert "password=abc" not in message
        assert sanitize_error_message("") == "An error occurred"
