import asyncio
import smtplib

import pytest

from catchup.services import email_service as es
from catchup.services.email_service import EmailConfig, EmailService, EmailServiceError


class FakeSMTP:
    instances = []
    fail_send = False
    fail_login = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent = []
        self.calls = []
        FakeSMTP.instances.append(self)

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user, password))
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    def noop(self):
        self.calls.append("noop")

    def send_message(self, message):
        if FakeSMTP.fail_send:
            raise smtplib.SMTPRecipientsRefused({message["To"]: (550, b"no such user")})
        self.sent.append(message)

    def quit(self):
        self.calls.append("quit")


def _config(**overrides):
    values = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer@usecatchup.xyz",
        smtp_password="secret",
        from_email="noreply@usecatchup.xyz",
    )
    values.update(overrides)
    return EmailConfig(**values)


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_send = False
    FakeSMTP.fail_login = False
    monkeypatch.setattr(es.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def test_send_email_builds_multipart_message():
    service = EmailService(_config(reply_to="hello@usecatchup.xyz"))

    message_id = asyncio.run(
        service.send_email("reader@example.com", "catchup on your topics", "<p>hi</p>", "hi")
    )

    server = FakeSMTP.instances[0]
    assert server.calls[0] == "starttls"
    assert server.calls[1] == ("login", "mailer@usecatchup.xyz", "secret")
    assert server.calls[-1] == "quit"
    message = server.sent[0]
    assert message["To"] == "reader@example.com"
    assert message["From"] == "noreply@usecatchup.xyz"
    assert message["Reply-To"] == "hello@usecatchup.xyz"
    assert message["Message-ID"] == message_id
    assert message_id.endswith("@usecatchup.xyz>")
    assert [part.get_content_type() for part in message.get_payload()] == ["text/plain", "text/html"]


def test_send_failure_raises_email_service_error():
    FakeSMTP.fail_send = True
    service = EmailService(_config())

    with pytest.raises(EmailServiceError):
        asyncio.run(service.send_email("bad@example.com", "s", "<p>x</p>", "x"))
    assert FakeSMTP.instances[0].calls[-1] == "quit"


def test_test_connection():
    assert asyncio.run(EmailService(_config(use_tls=False)).test_connection()) is True
    assert "starttls" not in FakeSMTP.instances[0].calls
    assert "noop" in FakeSMTP.instances[0].calls


def test_missing_password_rejected():
    with pytest.raises(ValueError):
        EmailService(_config(smtp_password=""))


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("SMTP_HOST", "smtp.resend.com")
    monkeypatch.setenv("SMTP_PORT", "2587")
    monkeypatch.setenv("SMTP_USER", "resend")
    monkeypatch.setenv("SMTP_PASSWORD", "key")
    monkeypatch.delenv("SENDER_EMAIL", raising=False)

    service = EmailService()

    assert service.config.smtp_host == "smtp.resend.com"
    assert service.config.smtp_port == 2587
    assert service.config.from_email == "noreply@usecatchup.xyz"


def test_failed_login_closes_the_connection():
    FakeSMTP.fail_login = True
    service = EmailService(_config())

    with pytest.raises(EmailServiceError):
        asyncio.run(service.send_email("reader@example.com", "subject", "<p>hi</p>", "hi"))

    server = FakeSMTP.instances[0]
    assert server.sent == []
    assert server.calls[-1] == "quit"
