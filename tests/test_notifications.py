"""Background notification delivery and the SMTP email service."""

import email
import smtplib

import pytest

from archivum.service.email import EmailService
from archivum.service.errors import EmailDeliveryError
from archivum.service.notifications import NotificationDispatcher
from archivum.service.totp import TOTPProvisioner


class Flaky:
    def __init__(self, failures: int, exc: Exception = None):
        self.failures = failures
        self.exc = exc or EmailDeliveryError("smtp down")
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        if len(self.calls) <= self.failures:
            raise self.exc


@pytest.fixture
def dispatcher():
    return NotificationDispatcher(max_attempts=3, initial_delay=0.01, max_delay=0.02)


class TestDispatcher:
    def test_sync_delivery_retries_transient_failures(self, dispatcher):
        send = Flaky(failures=2)
        dispatcher.dispatch("password_reset", send, "a@example.com", "tok")
        assert send.calls == [("a@example.com", "tok")] * 3

    def test_sync_delivery_gives_up_without_raising(self, dispatcher):
        send = Flaky(failures=10)
        dispatcher.dispatch("password_reset", send, "a@example.com")
        assert len(send.calls) == 3

    def test_non_transient_errors_not_retried(self, dispatcher):
        send = Flaky(failures=10, exc=ValueError("bad template"))
        dispatcher.dispatch("two_factor_setup", send)
        assert len(send.calls) == 1

    async def test_async_dispatch_returns_before_delivery(self, dispatcher):
        send = Flaky(failures=1)
        dispatcher.dispatch("password_reset", send, "b@example.com")
        assert dispatcher.pending == 1
        assert send.calls == []

        await dispatcher.drain()
        assert dispatcher.pending == 0
        assert len(send.calls) == 2

    async def test_async_failure_is_contained(self, dispatcher):
        send = Flaky(failures=10, exc=ConnectionError("refused"))
        dispatcher.dispatch("password_reset", send)
        await dispatcher.drain()
        assert len(send.calls) == 3


class FakeSMTP:
    sent = []
    fail_with = None

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, from_addr, to_addr, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        FakeSMTP.sent.append((from_addr, to_addr, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def configured_email():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="no-reply@example.com",
        frontend_url="https://archive.example.com/",
    )


def _text_parts(raw: str) -> str:
    parsed = email.message_from_string(raw)
    return "\n".join(
        part.get_payload(decode=True).decode("utf-8")
        for part in parsed.walk()
        if part.get_content_maintype() == "text"
    )


class TestEmailService:
    def test_unconfigured_service_logs_instead_of_sending(self, fake_smtp):
        service = EmailService()
        assert service.is_configured is False
        service.send_password_reset_email("user@example.com", "abc")
        assert fake_smtp.sent == []

    def test_reset_email_links_to_frontend(self, fake_smtp, configured_email):
        configured_email.send_password_reset_email("user@example.com", "tok123")
        [(sender, recipient, message)] = fake_smtp.sent
        assert sender == "no-reply@example.com"
        assert recipient == "user@example.com"
        assert "https://archive.example.com/reset-password?token=tok123" in _text_parts(message)

    def test_setup_email_embeds_qr_inline(self, fake_smtp, configured_email):
        provisioning = TOTPProvisioner("Archive").provision("curator@example.com")
        configured_email.send_two_factor_setup_email(
            "curator@example.com", provisioning.secret, provisioning.qr_code
        )
        [(_, _, message)] = fake_smtp.sent
        assert "multipart/related" in message
        assert "Content-ID: <qr-code>" in message
        assert "cid:qr-code" in _text_parts(message)

    def test_smtp_failure_raises_delivery_error(self, fake_smtp, configured_email):
        fake_smtp.fail_with = smtplib.SMTPServerDisconnected("gone")
        with pytest.raises(EmailDeliveryError):
            configured_email.send_password_reset_email("user@example.com", "tok")

    def test_redacts_addresses_for_logs(self, configured_email):
        assert configured_email._redact_email("someone@example.com") == "so***@example.com"
        assert configured_email._redact_email("broken") == "redacted"
