from __future__ import annotations

import emails
from emails import (
    auto_renewal_notification_email,
    plan_activated_email,
    send_auto_renewal_notification_email,
    send_email,
    send_verification_email,
    verification_email,
)


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host, port):
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

    def starttls(self):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, message):
        self.sent.append(message)


def _configure_smtp(monkeypatch, port="587"):
    FakeSMTP.instances = []
    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("SMTP_PORT", port)
    monkeypatch.setenv("SMTP_USER", "mailer")
    monkeypatch.setenv("SMTP_PASS", "pw")
    monkeypatch.setattr(emails.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(emails.smtplib, "SMTP_SSL", FakeSMTP)


def test_verification_email_escapes_user_values():
    content = verification_email(
        email="<b>x</b>@example.com",
        verification_url="https://app.test/verify?token=a&b=1",
        expires_in_hours=1,
    )
    assert "<b>x</b>" not in content.html
    assert "&lt;b&gt;x&lt;/b&gt;" in content.html
    assert "expires in 1 hour." in content.text
    assert "https://app.test/verify?token=a&b=1" in content.text


def test_plan_activated_subjects():
    assert plan_activated_email(email="a@b.co", plan_name="Pro").subject == "Welcome to Pro"
    renewed = plan_activated_email(email="a@b.co", plan_name="Pro", is_renewal=True, amount="NGN 650.00")
    assert renewed.subject == "Your plan renewed successfully"
    assert "Amount charged: NGN 650.00." in renewed.text


def test_auto_renewal_subject_names_customer():
    content = auto_renewal_notification_email(customer_email="c@d.co", plan_name="Pro")
    assert content.subject == "Auto-renewal succeeded for c@d.co"


def test_send_email_skips_without_smtp(monkeypatch):
    monkeypatch.delenv("SMTP_HOST", raising=False)
    assert send_email("a@b.co", "Hi", "<p>Hi</p>", "Hi") is False


def test_send_email_uses_starttls(monkeypatch):
    _configure_smtp(monkeypatch)
    assert send_verification_email(
        email="a@b.co",
        verification_url="https://app.test/verify",
        expires_in_hours=24,
    )
    smtp = FakeSMTP.instances[0]
    assert (smtp.host, smtp.port) == ("smtp.example.com", 587)
    assert smtp.started_tls
    assert smtp.logged_in == ("mailer", "pw")
    message = smtp.sent[0]
    assert message["To"] == "a@b.co"
    assert message["Subject"] == "Verify your Textopsy email"
    assert message.is_multipart()


def test_send_email_uses_ssl_on_465(monkeypatch):
    _configure_smtp(monkeypatch, port="465")
    assert send_email("a@b.co", "Hi", "<p>Hi</p>", "Hi")
    assert not FakeSMTP.instances[0].started_tls


def test_auto_renewal_alert_requires_billing_address(monkeypatch):
    _configure_smtp(monkeypatch)
    monkeypatch.delenv("BILLING_ALERT_EMAIL", raising=False)
    assert send_auto_renewal_notification_email(customer_email="c@d.co", plan_name="Pro") is False

    monkeypatch.setenv("BILLING_ALERT_EMAIL", "billing@textopsy.test")
    assert send_auto_renewal_notification_email(customer_email="c@d.co", plan_name="Pro")
    assert FakeSMTP.instances[-1].sent[0]["To"] == "billing@textopsy.test"
