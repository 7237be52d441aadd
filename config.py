from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value


def bool_env(name: str, default: str | None = None) -> bool:
    raw = env(name, default)
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes"}


def positive_int_env(name: str, fallback: int) -> int:
    """Read an integer setting, falling back when unset, malformed or not positive."""
    raw = env(name)
    if raw is None:
        return fallback
    try:
        parsed = int(float(raw))
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def environment() -> str:
    return (env("ENVIRONMENT", "development") or "development").strip().lower()


def strict_env() -> bool:
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        return bool_env("STRICT_ENV_VALIDATION", "true")
    return environment() in {"production", "prod"}


def app_url() -> str | None:
    url = env("APP_URL")
    return url.rstrip("/") if url else None


def auth_secret() -> str:
    """Load the shared secret used for signing access and verification tokens."""
    secret = env("AUTH_SECRET")
    if not secret:
        raise RuntimeError("AUTH_SECRET is not set.")
    return secret
