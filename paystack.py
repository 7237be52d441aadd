from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import string
import time
from typing import Any

import requests

from config import app_url, env

logger = logging.getLogger("textopsy.paystack")

PAYSTACK_BASE_URL = "https://api.paystack.co"
DEFAULT_PRO_AMOUNT_MINOR = 65000
REQUEST_TIMEOUT_SECONDS = 15

_REFERENCE_ALPHABET = string.ascii_lowercase + string.digits
_CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


class PaystackError(RuntimeError):
    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _secret_key() -> str:
    secret = env("PAYSTACK_SECRET_KEY")
    if not secret:
        raise PaystackError("PAYSTACK_SECRET_KEY is not set.", status_code=500)
    return secret


def paystack_configured() -> bool:
    return bool(env("PAYSTACK_SECRET_KEY"))


def pro_amount_minor() -> int:
    raw = env("PAYSTACK_PRO_AMOUNT_MINOR") or env("PAYSTACK_PRO_AMOUNT_KOBO")
    if raw is None:
        return DEFAULT_PRO_AMOUNT_MINOR
    try:
        amount = int(float(raw))
    except ValueError:
        return DEFAULT_PRO_AMOUNT_MINOR
    return amount if amount > 0 else DEFAULT_PRO_AMOUNT_MINOR


def pro_currency() -> str:
    fallback = "NGN" if env("PAYSTACK_PRO_AMOUNT_KOBO") else "USD"
    currency = (env("PAYSTACK_CURRENCY", fallback) or fallback).strip().upper()
    if not _CURRENCY_PATTERN.match(currency):
        return fallback
    return currency


def callback_url() -> str | None:
    configured = env("PAYSTACK_CALLBACK_URL")
    if configured:
        return configured
    base = app_url()
    return f"{base}/paystack/callback" if base else None


def plan_code() -> str | None:
    return env("PAYSTACK_PLAN_CODE")


def generate_reference() -> str:
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"TXT-{millis}-{suffix}".upper()


def format_amount(minor_units: int | None, currency: str | None) -> str:
    amount = (minor_units or 0) / 100
    return f"{(currency or 'NGN').upper()} {amount:,.2f}"


def _headers() -> dict[str, str]:
    return {
        "Authorization": f"Bearer {_secret_key()}",
        "Content-Type": "application/json",
    }


def _parse_response(resp: requests.Response, action: str) -> dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError as exc:
        logger.error("Paystack %s returned a non-JSON body: %s", action, resp.text[:500])
        raise PaystackError(f"Paystack {action} failed.") from exc
    if resp.status_code >= 400 or not isinstance(payload, dict) or not payload.get("status"):
        message = payload.get("message") if isinstance(payload, dict) else None
        logger.error("Paystack %s error (%s): %s", action, resp.status_code, message)
        raise PaystackError(message or f"Paystack {action} failed.")
    return payload.get("data") or {}


def initialize_transaction(
    *,
    email: str,
    amount: int,
    reference: str,
    callback_url: str | None,
    metadata: dict[str, Any],
    plan_code: str | None = None,
    currency: str | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "email": email,
        "amount": amount,
        "reference": reference,
        "metadata": metadata,
    }
    if callback_url:
        body["callback_url"] = callback_url
    if plan_code:
        body["plan"] = plan_code
    if currency:
        body["currency"] = currency

    try:
        resp = requests.post(
            f"{PAYSTACK_BASE_URL}/transaction/initialize",
            headers=_headers(),
            json=body,
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        logger.exception("Failed to reach Paystack.")
        raise PaystackError("Payment provider unavailable.") from exc

    data = _parse_response(resp, "initialize")
    return {
        "authorization_url": data.get("authorization_url"),
        "access_code": data.get("access_code"),
        "reference": data.get("reference") or reference,
    }


def verify_transaction(reference: str) -> dict[str, Any]:
    try:
        resp = requests.get(
            f"{PAYSTACK_BASE_URL}/transaction/verify/{reference}",
            headers=_headers(),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        logger.exception("Failed to reach Paystack.")
        raise PaystackError("Payment provider unavailable.") from exc

    data = _parse_response(resp, "verify")
    customer = data.get("customer") or {}
    authorization = data.get("authorization") or {}
    return {
        "status": data.get("status"),
        "amount": data.get("amount"),
        "currency": data.get("currency"),
        "customer_code": customer.get("customer_code"),
        "authorization_code": authorization.get("authorization_code"),
        "paid_at": data.get("paid_at") or data.get("paidAt"),
        "channel": data.get("channel"),
        "metadata": data.get("metadata") or {},
    }


def verify_webhook_signature(raw_body: bytes, signature: str | None) -> bool:
    """Check the x-paystack-signature header: hex HMAC-SHA512 of the raw body."""
    if not signature:
        return False
    expected = hmac.new(_secret_key().encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(signature.strip().encode("utf-8"), expected.encode("utf-8"))
