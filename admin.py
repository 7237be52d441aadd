from __future__ import annotations

import math
from collections import OrderedDict
from datetime import date, datetime, timezone
from typing import Any

from billing import PLAN_PRO, PRO_MAX_CREDITS_PER_MONTH, normalize_plan
from config import env


def admin_emails() -> set[str]:
    raw = env("ADMIN_EMAILS", "") or ""
    return {email.strip().lower() for email in raw.split(",") if email.strip()}


def is_admin_email(email: str | None) -> bool:
    if not email:
        return False
    return email.strip().lower() in admin_emails()


def _isoformat(value: Any) -> str | None:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value) if value is not None else None


def _round2(value: float) -> float:
    return round(value, 2)


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit > 0 else 0


def pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "total_pages": total_pages(total, limit)}


def summarize_plans(rows: list[dict[str, Any]], now: datetime | None = None) -> dict[str, int]:
    """Count active and lapsed Pro users among rows carrying plan and plan_expires_at."""
    active_pro = 0
    expired_pro = 0
    for row in rows:
        status = normalize_plan(row.get("plan"), row.get("plan_expires_at"), now)
        if status.is_pro:
            active_pro += 1
        elif row.get("plan") == PLAN_PRO:
            expired_pro += 1
    return {
        "total": len(rows),
        "active_pro": active_pro,
        "expired_pro": expired_pro,
        "free": len(rows) - active_pro - expired_pro,
    }


def format_user_row(row: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    status = normalize_plan(row.get("plan"), row.get("plan_expires_at"), now)
    credits_used = int(row.get("credits_used") or 0)
    return {
        "id": row["id"],
        "email": row["email"],
        "plan": status.plan,
        "is_pro": status.is_pro,
        "plan_expires_at": _isoformat(status.plan_expires_at),
        "credits_used": credits_used if status.is_pro else 0,
        "credits_remaining": (
            max(PRO_MAX_CREDITS_PER_MONTH - credits_used, 0) if status.is_pro else None
        ),
        "conversations": int(row.get("conversations_count") or 0),
        "created_at": _isoformat(row.get("created_at")),
        "email_verified_at": _isoformat(row.get("email_verified_at")),
        "last_credit_update": _isoformat(row.get("credits_updated_at")),
    }


def format_conversation_row(row: dict[str, Any]) -> dict[str, Any]:
    avg_cringe = row.get("avg_cringe_score")
    avg_interest = row.get("avg_interest_level")
    return {
        "id": row["id"],
        "session_id": row.get("session_id"),
        "title": row.get("title"),
        "user_id": row.get("user_id"),
        "user_email": row.get("user_email"),
        "analysis_count": int(row.get("analysis_count") or 0),
        "avg_cringe_score": _round2(float(avg_cringe)) if avg_cringe is not None else None,
        "avg_interest_level": _round2(float(avg_interest)) if avg_interest is not None else None,
        "created_at": _isoformat(row.get("created_at")),
        "updated_at": _isoformat(row.get("updated_at")),
    }


def _date_counts(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{"date": _isoformat(row.get("date")), "count": int(row.get("count") or 0)} for row in rows]


def summarize_analytics(
    source: dict[str, list[dict[str, Any]]],
    *,
    days: int,
    start: datetime,
    end: datetime,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the analytics dashboard payload from the raw rows of fetch_analytics_source."""
    if now is None:
        now = datetime.now(timezone.utc)

    plans = summarize_plans(source.get("users", []), now)
    transactions = source.get("transactions", [])

    total_revenue = sum(int(tx.get("amount") or 0) for tx in transactions)
    revenue_by_date: OrderedDict[str, int] = OrderedDict()
    mrr = 0
    for tx in transactions:
        created_at = tx.get("created_at")
        if not isinstance(created_at, datetime):
            continue
        created_at = created_at.astimezone(timezone.utc)
        key = created_at.date().isoformat()
        revenue_by_date[key] = revenue_by_date.get(key, 0) + int(tx.get("amount") or 0)
        if created_at.year == now.year and created_at.month == now.month:
            mrr += int(tx.get("amount") or 0)

    paying_users = {tx.get("user_id") for tx in transactions if tx.get("user_id")}
    arpu = total_revenue / len(paying_users) if paying_users else 0.0

    recent = [
        {
            "amount": int(tx.get("amount") or 0),
            "currency": tx.get("currency") or "NGN",
            "date": _isoformat(tx.get("created_at")),
        }
        for tx in reversed(transactions[-10:])
    ]

    credits_by_month: dict[str, dict[str, int]] = {}
    for row in source.get("credits", []):
        month = row.get("usage_month")
        if not month:
            continue
        bucket = credits_by_month.setdefault(month, {"total_credits": 0, "user_count": 0})
        bucket["total_credits"] += int(row.get("credits_used") or 0)
        bucket["user_count"] += 1

    conversion_rate = plans["active_pro"] / plans["total"] * 100 if plans["total"] else 0.0

    return {
        "period": {"days": days, "start_date": start.isoformat(), "end_date": end.isoformat()},
        "users": {
            **plans,
            "growth": _date_counts(source.get("user_growth", [])),
            "conversion_rate": _round2(conversion_rate),
        },
        "finances": {
            "total_revenue": total_revenue,
            "mrr": mrr,
            "arpu": _round2(arpu),
            "transaction_count": len(transactions),
            "revenue_by_date": [
                {"date": key, "amount": amount} for key, amount in revenue_by_date.items()
            ],
            "recent_transactions": recent,
        },
        "usage": {
            "conversations": _date_counts(source.get("conversation_trends", [])),
            "credits": [
                {"month": month, **credits_by_month[month]} for month in sorted(credits_by_month)
            ],
        },
    }
