from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape
from typing import Any

from config import bool_env, env

logger = logging.getLogger("textopsy.email")

DEFAULT_FROM = "Textopsy <notifications@textopsy.com>"
DEFAULT_FOOTER = (
    "You received this email because you have a Textopsy account. "
    "If this was unexpected, please ignore it."
)

_PARAGRAPH = '<p style="margin:0 0 8px;font-size:15px;color:#475569;">{}</p>'
_BUTTON = (
    '<p style="margin:12px 0 0;">'
    '<a href="{href}" style="display:inline-block;padding:12px 24px;background-color:#4f46e5;'
    'color:#ffffff;border-radius:8px;font-weight:600;text-decoration:none;">{label}</a>'
    "</p>"
)


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html: str
    text: str


def _layout(
    headline: str,
    body: str,
    intro: str | None = None,
    footer_note: str | None = None,
    preview_text: str | None = None,
) -> str:
    preview = f'<span style="display:none !important;">{preview_text}</span>' if preview_text else ""
    intro_html = (
        f'<p style="font-size:16px;margin:0 0 20px;color:#475569;">{intro}</p>' if intro else ""
    )
    return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>{headline}</title>
  </head>
  <body style="margin:0;padding:24px;background-color:#f4f6fb;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;color:#0f172a;">
    {preview}
    <table width="100%" cellpadding="0" cellspacing="0">
      <tr>
        <td align="center">
          <table width="520" cellpadding="0" cellspacing="0" style="background-color:#ffffff;border:1px solid #e2e8f0;border-radius:12px;padding:32px;">
            <tr>
              <td>
                <p style="font-size:22px;font-weight:600;margin:0 0 16px;">{headline}</p>
                {intro_html}
                {body}
                <hr style="border:none;border-top:1px solid #e2e8f0;margin:32px 0;" />
                <p style="font-size:12px;color:#94a3b8;margin:0;">{footer_note or DEFAULT_FOOTER}</p>
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>"""


def _text(lines: list[str | None]) -> str:
    return "\n\n".join(line for line in lines if line)


def _hours_label(hours: int) -> str:
    return f"{hours} hour{'' if hours == 1 else 's'}"


def verification_email(*, email: str, verification_url: str, expires_in_hours: int) -> EmailContent:
    safe_email = escape(email)
    safe_url = escape(verification_url, quote=True)
    expires = _hours_label(expires_in_hours)
    body = (
        '<p style="margin:0 0 12px;font-size:15px;color:#475569;">'
        f"Please confirm that {safe_email} belongs to you. This link expires in {expires}.</p>"
        + _BUTTON.format(href=safe_url, label="Verify email")
        + f'<p style="margin:16px 0 0;font-size:13px;color:#94a3b8;">Manual link: {safe_url}</p>'
    )
    html = _layout(
        "Verify your email",
        body,
        intro=f"Hi {safe_email}, thanks for creating a Textopsy account.",
        preview_text="Confirm your email to activate your Textopsy account.",
    )
    text = _text(
        [
            f"Hi {email}, thanks for creating a Textopsy account.",
            f"Please confirm that this email belongs to you. This link expires in {expires}.",
            f"Verify: {verification_url}",
        ]
    )
    return EmailContent("Verify your Textopsy email", html, text)


def plan_activated_email(
    *,
    email: str,
    plan_name: str,
    amount: str | None = None,
    reference: str | None = None,
    expires_at: str | None = None,
    manage_url: str | None = None,
    is_renewal: bool = False,
) -> EmailContent:
    subject = "Your plan renewed successfully" if is_renewal else f"Welcome to {plan_name}"
    if is_renewal:
        intro = f"Hi {email}, your {plan_name} plan renewed successfully."
    else:
        intro = f"Hi {email}, welcome to {plan_name}."

    details = [
        f"Your billing cycle now ends on {escape(expires_at)}." if expires_at else None,
        f"Amount charged: {escape(amount)}." if amount else None,
        f"Reference: {escape(reference)}." if reference else None,
    ]
    body = "".join(_PARAGRAPH.format(line) for line in details if line)
    if not body:
        body = _PARAGRAPH.format("Your plan is active.")
    if manage_url:
        body += _BUTTON.format(href=escape(manage_url, quote=True), label="Manage billing")

    html = _layout(
        "Plan renewed" if is_renewal else "Plan activated",
        body,
        intro=escape(intro),
        preview_text=escape(
            f"Your {plan_name} plan renewed successfully" if is_renewal else f"You're now on {plan_name}"
        ),
    )
    text = _text(
        [
            intro,
            f"Cycle ends on {expires_at}." if expires_at else None,
            f"Amount charged: {amount}." if amount else None,
            f"Reference: {reference}." if reference else None,
            f"Manage billing: {manage_url}" if manage_url else None,
        ]
    )
    return EmailContent(subject, html, text)


def plan_renewal_reminder_email(
    *,
    email: str,
    plan_name: str,
    expires_at: str,
    renewal_url: str | None = None,
) -> EmailContent:
    intro = f"Hi {email}, your {plan_name} plan renews on {expires_at}."
    body = (
        '<p style="margin:0 0 12px;font-size:15px;color:#475569;">'
        f"We will attempt to renew automatically on {escape(expires_at)}. "
        "Update your billing method or cancel before then if needed.</p>"
    )
    if renewal_url:
        body += _BUTTON.format(href=escape(renewal_url, quote=True), label="Manage renewal")
    html = _layout(
        "Your plan renews soon",
        body,
        intro=escape(intro),
        preview_text=escape(f"Your {plan_name} plan renews soon"),
    )
    text = _text(
        [
            intro,
            "We'll attempt to renew automatically using your saved authorization.",
            f"Manage renewal: {renewal_url}" if renewal_url else None,
        ]
    )
    return EmailContent("Your plan renews soon", html, text)


def auto_renewal_notification_email(
    *,
    customer_email: str,
    plan_name: str,
    amount: str | None = None,
    reference: str | None = None,
    paid_at: str | None = None,
) -> EmailContent:
    intro = f"{customer_email} renewed {plan_name}."
    details = [
        f"{escape(customer_email)} just renewed {escape(plan_name)}.",
        f"Paid at: {escape(paid_at)}" if paid_at else None,
        f"Amount: {escape(amount)}" if amount else None,
        f"Reference: {escape(reference)}" if reference else None,
    ]
    html = _layout(
        "Auto-renewal processed",
        "".join(_PARAGRAPH.format(line) for line in details if line),
        intro=escape(intro),
        footer_note="Internal alert from Textopsy billing.",
        preview_text=escape(f"{plan_name} auto-renewal succeeded"),
    )
    text = _text(
        [
            intro,
            f"Paid at: {paid_at}" if paid_at else None,
            f"Amount: {amount}" if amount else None,
            f"Reference: {reference}" if reference else None,
        ]
    )
    return EmailContent(f"Auto-renewal succeeded for {customer_email}", html, text)


def _smtp_settings() -> dict[str, Any] | None:
    host = env("SMTP_HOST")
    user = env("SMTP_USER")
    password = env("SMTP_PASSWORD") or env("SMTP_PASS")
    try:
        port = int(env("SMTP_PORT", "587") or 587)
    except ValueError:
        port = 0
    if not host or not port or not user or not password:
        return None
    return {
        "host": host,
        "port": port,
        "user": user,
        "password": password,
        "ssl": bool_env("SMTP_SSL") or bool_env("SMTP_SECURE") or port == 465,
        "use_tls": bool_env("SMTP_USE_TLS", "true"),
    }


def send_email(
    to_address: str,
    subject: str,
    html: str,
    text: str,
    reply_to: str | None = None,
) -> bool:
    """Deliver a multipart message; returns False when SMTP is not configured."""
    settings = _smtp_settings()
    if settings is None:
        logger.warning("SMTP configuration incomplete. Skipping email send.")
        return False

    message = EmailMessage()
    message["From"] = env("EMAIL_FROM_ADDRESS", DEFAULT_FROM)
    message["To"] = to_address
    message["Subject"] = subject
    reply_to = reply_to or env("EMAIL_REPLY_TO")
    if reply_to:
        message["Reply-To"] = reply_to
    message.set_content(text)
    message.add_alternative(html, subtype="html")

    if settings["ssl"]:
        with smtplib.SMTP_SSL(settings["host"], settings["port"]) as smtp:
            smtp.login(settings["user"], settings["password"])
            smtp.send_message(message)
        return True

    with smtplib.SMTP(settings["host"], settings["port"]) as smtp:
        if settings["use_tls"]:
            smtp.starttls()
        smtp.login(settings["user"], settings["password"])
        smtp.send_message(message)
    return True


def _deliver(to_address: str, content: EmailContent) -> bool:
    return send_email(to_address, content.subject, content.html, content.text)


def send_verification_email(*, email: str, verification_url: str, expires_in_hours: int) -> bool:
    return _deliver(
        email,
        verification_email(
            email=email,
            verification_url=verification_url,
            expires_in_hours=expires_in_hours,
        ),
    )


def send_plan_activated_email(*, email: str, **kwargs: Any) -> bool:
    return _deliver(email, plan_activated_email(email=email, **kwargs))


def send_plan_renewal_reminder_email(*, email: str, **kwargs: Any) -> bool:
    return _deliver(email, plan_renewal_reminder_email(email=email, **kwargs))


def send_auto_renewal_notification_email(*, customer_email: str, **kwargs: Any) -> bool:
    to_address = env("BILLING_ALERT_EMAIL")
    if not to_address:
        logger.warning("No BILLING_ALERT_EMAIL configured. Skipping auto-renewal alert.")
        return False
    return _deliver(
        to_address,
        auto_renewal_notification_email(customer_email=customer_email, **kwargs),
    )
