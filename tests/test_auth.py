from __future__ import annotations

import base64
import hashlib
import hmac

import pytest
from starlette.requests import Request

from auth import (
    TOKEN_TYPE_ACCESS,
    create_access_token,
    create_email_verification_token,
    create_token,
    decode_email_verification_token,
    hash_password,
    read_bearer_token,
    read_session_id,
    verify_password,
    verify_token,
)

SECRET = "unit-secret-value-for-token-tests-1234"


def _request(headers: dict[str, str] | None = None, query: str = "") -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "query_string": query.encode(),
    }
    return Request(scope)


def test_password_hash_round_trip():
    stored = hash_password("hunter22")
    assert stored != hash_password("hunter22")
    assert verify_password("hunter22", stored)
    assert not verify_password("hunter23", stored)


def test_access_token_carries_identity():
    token = create_access_token("user-1", "a@b.co", SECRET, 60)
    payload = verify_token(token, SECRET)
    assert payload["sub"] == "user-1"
    assert payload["email"] == "a@b.co"
    assert payload["typ"] == TOKEN_TYPE_ACCESS


def test_token_with_wrong_secret_is_rejected():
    token = create_access_token("user-1", "a@b.co", SECRET, 60)
    with pytest.raises(ValueError):
        verify_token(token, "another-secret")


def test_expired_token_is_rejected():
    token = create_token({"sub": "user-1"}, SECRET, -10)
    with pytest.raises(ValueError, match="expired"):
        verify_token(token, SECRET)


def test_malformed_token_is_rejected():
    with pytest.raises(ValueError):
        verify_token("not-a-token", SECRET)


def test_verification_token_is_not_an_access_token():
    token = create_email_verification_token("user-1", "a@b.co", SECRET, 24)
    assert decode_email_verification_token(token, SECRET)["sub"] == "user-1"

    access = create_access_token("user-1", "a@b.co", SECRET, 60)
    with pytest.raises(ValueError):
        decode_email_verification_token(access, SECRET)


def test_read_bearer_token():
    assert read_bearer_token(_request({"Authorization": "Bearer abc.def"})) == "abc.def"
    assert read_bearer_token(_request({"Authorization": "Basic xyz"})) is None
    assert read_bearer_token(_request()) is None


def test_read_session_id_prefers_header():
    request = _request({"x-session-id": " s-header "}, "sessionId=s-query")
    assert read_session_id(request) == "s-header"
    assert read_session_id(_request(query="sessionId=s-query")) == "s-query"
    assert read_session_id(_request()) is None


@pytest.mark.parametrize("token", ["abc.é", "é.é"])
def test_verify_token_rejects_non_ascii_signature(token):
    with pytest.raises(ValueError, match="signature"):
        verify_token(token, SECRET)


def test_verify_token_rejects_non_object_payload():
    body = base64.urlsafe_b64encode(b"[1, 2]").rstrip(b"=").decode()
    signature = hmac.new(SECRET.encode(), body.encode(), hashlib.sha256).digest()
    forged = f"{body}.{base64.urlsafe_b64encode(signature).rstrip(b'=').decode()}"
    with pytest.raises(ValueError, match="payload"):
        verify_token(forged, SECRET)
