from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from typing import Any

from fastapi import Request

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_VERIFY_EMAIL = "verify-email"


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def hash_password(password: str) -> str:
    """Hash a password with a per-user salt using PBKDF2-HMAC-SHA256."""
    salt = secrets.token_bytes(16)
    hashed = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 120_000)
    return base64.b64encode(salt + hashed).decode("utf-8")


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify a plaintext password against a stored PBKDF2-HMAC-SHA256 hash."""
    raw = base64.b64decode(stored_hash.encode("utf-8"))
    salt = raw[:16]
    expected = raw[16:]
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 120_000)
    return hmac.compare_digest(expected, candidate)


def create_token(payload: dict[str, Any], secret: str, ttl_seconds: int) -> str:
    """Create a signed, expiring token payload using HMAC-SHA256."""
    data = dict(payload)
    data["exp"] = int(time.time()) + ttl_seconds
    body = _b64encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))
    signature = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    return f"{body}.{_b64encode(signature)}"


def verify_token(token: str, secret: str) -> dict[str, Any]:
    """Verify token signature and expiry, returning the payload if valid."""
    try:
        body, signature = token.split(".", 1)
    except ValueError as exc:
        raise ValueError("Invalid token format.") from exc

    expected = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    if not hmac.compare_digest(_b64encode(expected).encode("utf-8"), signature.encode("utf-8")):
        raise ValueError("Invalid token signature.")

    try:
        payload = json.loads(_b64decode(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("Invalid token payload.") from exc
    if not isinstance(payload, dict):
        raise ValueError("Invalid token payload.")
    exp = payload.get("exp")
    if exp is None or int(exp) < int(time.time()):
        raise ValueError("Token expired.")

    return payload


def create_access_token(user_id: str, email: str, secret: str, ttl_seconds: int) -> str:
    return create_token(
        {"sub": user_id, "email": email, "typ": TOKEN_TYPE_ACCESS},
        secret,
        ttl_seconds,
    )


def create_email_verification_token(user_id: str, email: str, secret: str, ttl_hours: int) -> str:
    return create_token(
        {"sub": user_id, "email": email, "typ": TOKEN_TYPE_VERIFY_EMAIL},
        secret,
        max(1, ttl_hours) * 3600,
    )


def decode_email_verification_token(token: str, secret: str) -> dict[str, Any]:
    payload = verify_token(token, secret)
    if payload.get("typ") != TOKEN_TYPE_VERIFY_EMAIL or not payload.get("sub"):
        raise ValueError("Invalid verification token.")
    return payload


def generate_id() -> str:
    return str(uuid.uuid4())


def read_bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        token = header.split(" ", 1)[1].strip()
        return token or None
    return None


def read_session_id(request: Request) -> str | None:
    """Client browser session id, from the x-session-id header or the sessionId query."""
    header = (request.headers.get("x-session-id") or "").strip()
    if header:
        return header
    param = (request.query_params.get("sessionId") or "").strip()
    return param or None
