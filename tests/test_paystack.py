from __future__ import annotations

import hashlib
import hmac

import pytest
import requests

import paystack
from paystack import (
    DEFAULT_PRO_AMOUNT_MINOR,
    PaystackError,
    format_amount,
    generate_reference,
    initialize_transaction,
    pro_amount_minor,
    pro_currency,
    verify_transaction,
    verify_webhook_signature,
)


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def test_reference_format():
    reference = generate_reference()
    assert reference.startswith("TXT-")
    assert reference == reference.upper()
    assert generate_reference() != reference


def test_format_amount():
    assert format_amount(65000, "ngn") == "NGN 650.00"
    assert format_amount(None, None) == "NGN 0.00"
    assert format_amount(123456789, "USD") == "USD 1,234,567.89"


def test_amount_and_currency_settings(monkeypatch):
    assert pro_amount_minor() == DEFAULT_PRO_AMOUNT_MINOR
    assert pro_currency() == "USD"

    monkeypatch.setenv("PAYSTACK_PRO_AMOUNT_KOBO", "500000")
    assert pro_amount_minor() == 500000
    assert pro_currency() == "NGN"

    monkeypatch.setenv("PAYSTACK_PRO_AMOUNT_MINOR", "-5")
    assert pro_amount_minor() == DEFAULT_PRO_AMOUNT_MINOR

    monkeypatch.setenv("PAYSTACK_CURRENCY", "kes")
    assert pro_currency() == "KES"
    monkeypatch.setenv("PAYSTACK_CURRENCY", "naira")
    assert pro_currency() == "NGN"


def test_webhook_signature():
    body = b'{"event":"charge.success"}'
    signature = hmac.new(b"sk_test_textopsy", body, hashlib.sha512).hexdigest()
    assert verify_webhook_signature(body, signature)
    assert not verify_webhook_signature(body + b" ", signature)
    assert not verify_webhook_signature(body, None)
    assert not verify_webhook_signature(body, "\u00e9")


def test_initialize_transaction_sends_expected_body(monkeypatch):
    sent = {}

    def fake_post(url, headers, json, timeout):
        sent.update(url=url, headers=headers, json=json, timeout=timeout)
        return FakeResponse(
            200,
            {
                "status": True,
                "data": {"authorization_url": "https://checkout.paystack.com/x", "access_code": "ac"},
            },
        )

    monkeypatch.setattr(paystack.requests, "post", fake_post)
    result = initialize_transaction(
        email="a@b.co",
        amount=65000,
        reference="TXT-1",
        callback_url="https://app.test/paystack/callback",
        metadata={"userId": "user-1"},
        plan_code="PLN_x",
        currency="NGN",
    )

    assert result == {
        "authorization_url": "https://checkout.paystack.com/x",
        "access_code": "ac",
        "reference": "TXT-1",
    }
    assert sent["url"].endswith("/transaction/initialize")
    assert sent["headers"]["Authorization"] == "Bearer sk_test_textopsy"
    assert sent["json"]["plan"] == "PLN_x"
    assert sent["json"]["callback_url"] == "https://app.test/paystack/callback"
    assert sent["timeout"] == paystack.REQUEST_TIMEOUT_SECONDS


def test_provider_error_message_is_surfaced(monkeypatch):
    monkeypatch.setattr(
        paystack.requests,
        "get",
        lambda url, headers, timeout: FakeResponse(400, {"status": False, "message": "Invalid key"}),
    )
    with pytest.raises(PaystackError) as excinfo:
        verify_transaction("TXT-1")
    assert excinfo.value.message == "Invalid key"
    assert excinfo.value.status_code == 502


def test_network_failure(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(paystack.requests, "get", boom)
    with pytest.raises(PaystackError, match="unavailable"):
        verify_transaction("TXT-1")


def test_verify_transaction_flattens_data(monkeypatch):
    monkeypatch.setattr(
        paystack.requests,
        "get",
        lambda url, headers, timeout: FakeResponse(
            200,
            {
                "status": True,
                "data": {
                    "status": "success",
                    "amount": 65000,
                    "currency": "NGN",
                    "channel": "card",
                    "customer": {"customer_code": "CUS_1"},
                    "authorization": {"authorization_code": "AUTH_1"},
                    "metadata": None,
                },
            },
        ),
    )
    result = verify_transaction("TXT-1")
    assert result["customer_code"] == "CUS_1"
    assert result["authorization_code"] == "AUTH_1"
    assert result["metadata"] == {}


def test_missing_secret(monkeypatch):
    monkeypatch.delenv("PAYSTACK_SECRET_KEY")
    with pytest.raises(PaystackError) as excinfo:
        verify_transaction("TXT-1")
    assert excinfo.value.status_code == 500
