from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

from config import app_url, positive_int_env
from db import (
    count_user_conversations,
    downgrade_expired_plan,
    fetch_renewal_candidates,
    get_daily_usage,
    get_monthly_credits,
    get_user_by_id,
    increment_daily_usage,
    increment_monthly_credits,
    mark_renewal_reminder_sent as _mark_renewal_reminder_sent,
)

logger = logging.getLogger("textopsy.billing")

PLAN_FREE = "free"
PLAN_PRO = "pro"
PLANS = (PLAN_FREE, PLAN_PRO)

FREE_MAX_CONVERSATIONS = positive_int_env("FREE_PLAN_MAX_CONVERSATIONS", 5)
FREE_MAX_SUBMISSIONS_PER_DAY = positive_int_env("FREE_PLAN_MAX_SUBMISSIONS_PER_DAY", 3)
PRO_DURATION_IN_DAYS = positive_int_env("PAYSTACK_PRO_DURATION_DAYS", 30)
PRO_MAX_CREDITS_PER_MONTH = positive_int_env("PRO_MAX_CREDITS_PER_MONTH", 200)

CONVERSATION_LIMIT = "CONVERSATION_LIMIT"
SUBMISSION_LIMIT = "SUBMISSION_LIMIT"
CREDIT_LIMIT = "CREDIT_LIMIT"


class FreemiumLimitError(Exception):
    """Raised when a plan's usage allowance is exhausted."""

    status = 402

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}


@dataclass(frozen=True)
class PlanStatus:
    plan: str
    is_pro: bool
    plan_expires_at: datetime | None


@dataclass(frozen=True)
class UserPlanInfo:
    id: str
    email: str
    plan: str
    is_pro: bool
    plan_expires_at: datetime | None
    paystack_customer_code: str | None
    paystack_authorization_code: str | None
    email_verified_at: datetime | None
    gender: str | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if isinstance(value, datetime) else None


def normalize_plan(
    plan: str | None,
    plan_expires_at: datetime | None,
    now: datetime | None = None,
) -> PlanStatus:
    """Resolve the effective plan; an expired Pro plan reads as free."""
    if now is None:
        now = _now_utc()
    if plan == PLAN_PRO and plan_expires_at is not None:
        if plan_expires_at <= now:
            return PlanStatus(PLAN_FREE, False, None)
        return PlanStatus(PLAN_PRO, True, plan_expires_at)
    if plan == PLAN_PRO:
        return PlanStatus(PLAN_PRO, True, None)
    return PlanStatus(PLAN_FREE, False, None)


def plan_info_from_row(row: dict[str, Any], now: datetime | None = None) -> UserPlanInfo:
    status = normalize_plan(row.get("plan"), row.get("plan_expires_at"), now)
    return UserPlanInfo(
        id=row["id"],
        email=row["email"],
        plan=status.plan,
        is_pro=status.is_pro,
        plan_expires_at=status.plan_expires_at,
        paystack_customer_code=row.get("paystack_customer_code"),
        paystack_authorization_code=row.get("paystack_authorization_code"),
        email_verified_at=row.get("email_verified_at"),
        gender=row.get("gender"),
    )


def get_user_plan_info(user_id: str) -> UserPlanInfo | None:
    row = get_user_by_id(user_id)
    if not row:
        return None
    info = plan_info_from_row(row)
    if row.get("plan") == PLAN_PRO and not info.is_pro:
        downgrade_expired_plan(user_id)
        logger.info("Pro plan expired; user downgraded to free: %s", user_id)
    return info


def serialize_user(info: UserPlanInfo) -> dict[str, Any]:
    return {
        "id": info.id,
        "email": info.email,
        "plan": info.plan,
        "plan_expires_at": _isoformat(info.plan_expires_at),
        "is_pro": info.is_pro,
        "email_verified_at": _isoformat(info.email_verified_at),
        "is_email_verified": info.email_verified_at is not None,
        "gender": info.gender,
    }


def usage_date_key(now: datetime | None = None) -> date:
    if now is None:
        now = _now_utc()
    now = now.astimezone(timezone.utc)
    return date(now.year, now.month, now.day)


def next_daily_reset(now: datetime | None = None) -> datetime:
    day = usage_date_key(now)
    return datetime.combine(day, datetime.min.time(), tzinfo=timezone.utc) + timedelta(days=1)


def usage_month_key(now: datetime | None = None) -> str:
    if now is None:
        now = _now_utc()
    now = now.astimezone(timezone.utc)
    return f"{now.year:04d}-{now.month:02d}"


def next_monthly_reset(now: datetime | None = None) -> datetime:
    if now is None:
        now = _now_utc()
    now = now.astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def ensure_conversation_allowance(user_id: str, is_pro: bool) -> int | None:
    """Check a free account may open another conversation; returns the remaining slots."""
    if is_pro:
        return None
    used = count_user_conversations(user_id)
    if used >= FREE_MAX_CONVERSATIONS:
        raise FreemiumLimitError(
            CONVERSATION_LIMIT,
            f"Free plan allows up to {FREE_MAX_CONVERSATIONS} stored conversations. "
            "Upgrade to Pro for unlimited threads.",
            {"limit": FREE_MAX_CONVERSATIONS, "used": used},
        )
    return FREE_MAX_CONVERSATIONS - used


def consume_submission(user_id: str, is_pro: bool, now: datetime | None = None) -> int:
    """Spend one daily submission (free) or one monthly credit (Pro).

    Returns the new usage count. Raises FreemiumLimitError when the allowance
    for the current window is exhausted.
    """
    if now is None:
        now = _now_utc()
    if is_pro:
        month = usage_month_key(now)
        used = increment_monthly_credits(user_id, month, PRO_MAX_CREDITS_PER_MONTH)
        if used is None:
            raise FreemiumLimitError(
                CREDIT_LIMIT,
                "You reached this month's Pro credit limit. Contact support to increase it.",
                {
                    "limit": PRO_MAX_CREDITS_PER_MONTH,
                    "used": get_monthly_credits(user_id, month),
                    "resetsAt": next_monthly_reset(now).isoformat(),
                },
            )
        return used

    day = usage_date_key(now)
    used = increment_daily_usage(user_id, day, FREE_MAX_SUBMISSIONS_PER_DAY)
    if used is None:
        raise FreemiumLimitError(
            SUBMISSION_LIMIT,
            f"You reached today's free limit ({FREE_MAX_SUBMISSIONS_PER_DAY} submissions). "
            "Upgrade to keep going.",
            {
                "limit": FREE_MAX_SUBMISSIONS_PER_DAY,
                "used": get_daily_usage(user_id, day),
                "resetsAt": next_daily_reset(now).isoformat(),
            },
        )
    return used


def get_usage_snapshot(user_id: str, is_pro: bool, now: datetime | None = None) -> dict[str, Any]:
    if now is None:
        now = _now_utc()
    if is_pro:
        return {
            "conversation_limit": None,
            "conversations_used": 0,
            "submissions_limit": None,
            "submissions_used": 0,
            "resets_at": None,
            "credit_limit": PRO_MAX_CREDITS_PER_MONTH,
            "credits_used": get_monthly_credits(user_id, usage_month_key(now)),
            "credit_resets_at": next_monthly_reset(now).isoformat(),
        }
    return {
        "conversation_limit": FREE_MAX_CONVERSATIONS,
        "conversations_used": count_user_conversations(user_id),
        "submissions_limit": FREE_MAX_SUBMISSIONS_PER_DAY,
        "submissions_used": get_daily_usage(user_id, usage_date_key(now)),
        "resets_at": next_daily_reset(now).isoformat(),
        "credit_limit": None,
        "credits_used": 0,
        "credit_resets_at": None,
    }


def calculate_pro_expiry(base: datetime | None = None) -> datetime:
    if base is None:
        base = _now_utc()
    return base + timedelta(days=PRO_DURATION_IN_DAYS)


def get_users_due_for_renewal_reminder(
    days_before_expiry: int = 3,
    limit: int = 50,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    if now is None:
        now = _now_utc()
    window_end = now + timedelta(days=max(1, days_before_expiry))
    return fetch_renewal_candidates(now, window_end, max(1, limit))


def mark_renewal_reminder_sent(user_id: str) -> None:
    _mark_renewal_reminder_sent(user_id, _now_utc())


def plan_management_url() -> str | None:
    base = app_url()
    if not base:
        return None
    return f"{base}/plan"
