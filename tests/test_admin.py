from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from admin import (
    format_conversation_row,
    format_user_row,
    is_admin_email,
    pagination,
    summarize_analytics,
    summarize_plans,
)
from billing import PRO_MAX_CREDITS_PER_MONTH

NOW = datetime(2026, 5, 20, 12, 0, tzinfo=timezone.utc)


def test_admin_emails_are_case_insensitive():
    assert is_admin_email("ADMIN@textopsy.test")
    assert is_admin_email("ops@textopsy.test")
    assert not is_admin_email("user@example.com")
    assert not is_admin_email(None)


def test_pagination():
    assert pagination(2, 50, 101) == {"page": 2, "limit": 50, "total": 101, "total_pages": 3}
    assert pagination(1, 50, 0)["total_pages"] == 0


def test_summarize_plans():
    rows = [
        {"plan": "pro", "plan_expires_at": NOW + timedelta(days=3)},
        {"plan": "pro", "plan_expires_at": None},
        {"plan": "pro", "plan_expires_at": NOW - timedelta(days=1)},
        {"plan": "free", "plan_expires_at": None},
    ]
    assert summarize_plans(rows, NOW) == {"total": 4, "active_pro": 2, "expired_pro": 1, "free": 1}


def test_format_user_row_reports_credits_for_pro_only():
    pro = format_user_row(
        {
            "id": "u1",
            "email": "p@x.co",
            "plan": "pro",
            "plan_expires_at": NOW + timedelta(days=10),
            "credits_used": 12,
            "conversations_count": 4,
            "created_at": NOW,
        },
        NOW,
    )
    assert pro["is_pro"] is True
    assert pro["credits_remaining"] == PRO_MAX_CREDITS_PER_MONTH - 12
    assert pro["conversations"] == 4

    lapsed = format_user_row(
        {"id": "u2", "email": "f@x.co", "plan": "pro", "plan_expires_at": NOW - timedelta(days=1), "credits_used": 7},
        NOW,
    )
    assert lapsed["plan"] == "free"
    assert lapsed["credits_used"] == 0
    assert lapsed["credits_remaining"] is None


def test_format_conversation_row_rounds_averages():
    row = format_conversation_row(
        {"id": "c1", "analysis_count": 3, "avg_cringe_score": 33.3333, "avg_interest_level": None}
    )
    assert row["avg_cringe_score"] == 33.33
    assert row["avg_interest_level"] is None
    assert row["analysis_count"] == 3


def test_summarize_analytics():
    source = {
        "users": [
            {"plan": "pro", "plan_expires_at": NOW + timedelta(days=5)},
            {"plan": "free", "plan_expires_at": None},
            {"plan": "free", "plan_expires_at": None},
            {"plan": "free", "plan_expires_at": None},
        ],
        "transactions": [
            {"user_id": "u1", "amount": 65000, "currency": "NGN", "created_at": datetime(2026, 4, 30, 9, tzinfo=timezone.utc)},
            {"user_id": "u1", "amount": 65000, "currency": "NGN", "created_at": datetime(2026, 5, 2, 9, tzinfo=timezone.utc)},
            {"user_id": "u2", "amount": 30000, "currency": "NGN", "created_at": datetime(2026, 5, 2, 18, tzinfo=timezone.utc)},
        ],
        "user_growth": [{"date": date(2026, 5, 1), "count": 2}],
        "conversation_trends": [{"date": date(2026, 5, 2), "count": 5}],
        "credits": [
            {"usage_month": "2026-05", "credits_used": 10},
            {"usage_month": "2026-04", "credits_used": 3},
            {"usage_month": "2026-05", "credits_used": 4},
        ],
    }
    start = NOW - timedelta(days=30)
    summary = summarize_analytics(source, days=30, start=start, end=NOW, now=NOW)

    assert summary["period"]["days"] == 30
    assert summary["users"]["conversion_rate"] == 25.0
    assert summary["users"]["growth"] == [{"date": "2026-05-01", "count": 2}]

    finances = summary["finances"]
    assert finances["total_revenue"] == 160000
    assert finances["mrr"] == 95000
    assert finances["arpu"] == 80000.0
    assert finances["transaction_count"] == 3
    assert finances["revenue_by_date"] == [
        {"date": "2026-04-30", "amount": 65000},
        {"date": "2026-05-02", "amount": 95000},
    ]
    assert finances["recent_transactions"][0]["amount"] == 30000

    assert summary["usage"]["credits"] == [
        {"month": "2026-04", "total_credits": 3, "user_count": 1},
        {"month": "2026-05", "total_credits": 14, "user_count": 2},
    ]
