import smtplib

import pytest

from credvault.service import email as email_module
from credvault.service.email import EmailService, redact_address


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.sent.append(msg)


class RefusingSMTP(FakeSMTP):
    def send_message(self, msg):
        raise smtplib.SMTPRecipientsRefused({msg["To"]: (550, b"no such user")})


@pytest.fixture(autouse=True)
def _reset_instances():
    FakeSMTP.instances = []


def _service(**overrides):
    values = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="no-reply@example.com",
        base_url="https://app.example/",
    )
    values.update(overrides)
    return EmailService(**values)


def test_verification_mail_carries_link(monkeypatch):
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    assert _service().send_email_verification("ana@example.com", "a" * 64, name="ana") is True

    server = FakeSMTP.instances[0]
    assert server.started_tls is True
    assert server.logged_in == ("mailer", "pw")
    msg = server.sent[0]
    assert msg["To"] == "ana@example.com"
    assert msg["Subject"] == "Verify your Credvault email"
    text = msg.get_body(preferencelist=("plain",)).get_content()
    assert "https://app.example/verify-email/" + "a" * 64 in text
    assert "20 minutes" in text


def test_reset_mail_uses_reset_path(monkeypatch):
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    _service(link_ttl_minutes=15).send_password_reset("ana@example.com", "b" * 64)
    html = FakeSMTP.instances[0].sent[0].get_body(preferencelist=("html",)).get_content()
    assert "https://app.example/reset-password/" + "b" * 64 in html
    assert "15 minutes" in html


def test_delivery_failure_returns_false(monkeypatch):
    monkeypatch.setattr(email_module.smtplib, "SMTP", RefusingSMTP)
    assert _service().send_password_reset("ghost@example.com", "c" * 64) is False


def test_unconfigured_service_does_not_connect(monkeypatch):
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    service = EmailService()
    assert service.is_configured is False
    assert service.send_email_verification("ana@example.com", "d" * 64) is True
    assert FakeSMTP.instances == []


def test_redact_address():
    assert redact_address("jane@example.com") == "ja***@example.com"
    assert redact_address("nonsense") == "redacted"
