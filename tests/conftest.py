from __future__ import annotations

import os
from datetime import datetime, timezone
from types import SimpleNamespace

os.environ["AUTH_SECRET"] = "test-auth-secret-0123456789abcdef0123"
os.environ["APP_URL"] = "https://app.textopsy.test/"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_textopsy"
os.environ["ADMIN_EMAILS"] = "admin@textopsy.test, Ops@Textopsy.test"
os.environ["ADMIN_DASHBOARD_TOKEN"] = "dashboard-token"
os.environ["CRON_SECRET"] = "cron-secret"
os.environ["ENVIRONMENT"] = "test"
for _name in (
    "DATABASE_URL",
    "OPENROUTER_API_KEY",
    "SMTP_HOST",
    "SMTP_USER",
    "SMTP_PASSWORD",
    "SMTP_PASS",
    "BILLING_ALERT_EMAIL",
    "EMAIL_VERIFICATION_REQUIRED",
    "EMAIL_VERIFICATION_SUCCESS_REDIRECT",
    "EMAIL_VERIFICATION_ERROR_REDIRECT",
    "PAYSTACK_CURRENCY",
    "PAYSTACK_PRO_AMOUNT_MINOR",
    "PAYSTACK_PRO_AMOUNT_KOBO",
    "PAYSTACK_CALLBACK_URL",
    "PAYSTACK_PLAN_CODE",
    "STRICT_ENV_VALIDATION",
    "CORS_ORIGINS",
):
    os.environ.pop(_name, None)

import pytest
from fastapi.testclient import TestClient

import analysis
import main
from auth import create_access_token
from billing import UserPlanInfo


class FakeLLM:
    """Stands in for the chat model; returns queued responses in order."""

    def __init__(self) -> None:
        self.responses: list[str] = []
        self.calls: list[list] = []

    def queue(self, *responses: str) -> None:
        self.responses.extend(responses)

    def invoke(self, messages: list) -> SimpleNamespace:
        self.calls.append(messages)
        if not self.responses:
            raise RuntimeError("no response queued")
        return SimpleNamespace(content=self.responses.pop(0))


def make_user(
    user_id: str = "user-1",
    email: str = "user@example.com",
    is_pro: bool = False,
    verified: bool = True,
    plan_expires_at: datetime | None = None,
) -> UserPlanInfo:
    return UserPlanInfo(
        id=user_id,
        email=email,
        plan="pro" if is_pro else "free",
        is_pro=is_pro,
        plan_expires_at=plan_expires_at,
        paystack_customer_code=None,
        paystack_authorization_code=None,
        email_verified_at=datetime(2026, 1, 1, tzinfo=timezone.utc) if verified else None,
        gender=None,
    )


def bearer(info: UserPlanInfo) -> dict[str, str]:
    token = create_access_token(info.id, info.email, os.environ["AUTH_SECRET"], 3600)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, "increment_rate_limit", lambda key, window_start: 1)
    return TestClient(main.app)


@pytest.fixture
def login_as(monkeypatch):
    """Make get_user_plan_info resolve the given users and return auth headers."""
    users: dict[str, UserPlanInfo] = {}

    monkeypatch.setattr(main, "get_user_plan_info", lambda user_id: users.get(user_id))

    def _login(info: UserPlanInfo) -> dict[str, str]:
        users[info.id] = info
        return bearer(info)

    return _login


@pytest.fixture
def fake_llm(monkeypatch):
    llm = FakeLLM()
    monkeypatch.setattr(analysis, "_get_llm", lambda temperature, max_tokens=None: llm)
    return llm


@pytest.fixture
def recorder():
    """Collects calls made to patched functions."""

    class Recorder:
        def __init__(self) -> None:
            self.calls: dict[str, list] = {}

        def record(self, name: str, result=None):
            def _fn(*args, **kwargs):
                self.calls.setdefault(name, []).append((args, kwargs))
                return result(*args, **kwargs) if callable(result) else result

            return _fn

    return Recorder()
