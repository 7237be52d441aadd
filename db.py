from __future__ import annotations

import os
import uuid
from datetime import date, datetime
from functools import lru_cache
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return url


def get_connection():
    return psycopg.connect(_database_url(), row_factory=dict_row)


def _new_id() -> str:
    return str(uuid.uuid4())


def _jsonb(value: Any) -> Jsonb | None:
    return Jsonb(value) if value is not None else None


@lru_cache(maxsize=1)
def ensure_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    gender TEXT,
                    plan TEXT NOT NULL DEFAULT 'free',
                    plan_expires_at TIMESTAMPTZ,
                    paystack_customer_code TEXT,
                    paystack_authorization_code TEXT,
                    email_verified_at TIMESTAMPTZ,
                    last_renewal_reminder_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
                    title TEXT,
                    context JSONB,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS conversations_session_idx
                ON conversations (session_id, updated_at DESC);
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS conversations_user_idx
                ON conversations (user_id);
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_inputs (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                    input_type TEXT NOT NULL,
                    input_text TEXT,
                    input_image_base64 TEXT,
                    input_image_mime_type TEXT,
                    position INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS analyses (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT REFERENCES conversations(id) ON DELETE CASCADE,
                    input_type TEXT NOT NULL,
                    input_text TEXT,
                    input_image_base64 TEXT,
                    input_image_mime_type TEXT,
                    persona TEXT NOT NULL,
                    cringe_score INTEGER NOT NULL,
                    interest_level INTEGER NOT NULL,
                    response_speed_rating TEXT NOT NULL,
                    red_flags TEXT[] NOT NULL DEFAULT '{}',
                    green_flags TEXT[] NOT NULL DEFAULT '{}',
                    diagnosis TEXT NOT NULL,
                    detailed_analysis TEXT NOT NULL,
                    suggested_replies JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS analyses_conversation_idx
                ON analyses (conversation_id, created_at DESC);
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    persona TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS user_daily_usage (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    usage_date DATE NOT NULL,
                    submission_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    UNIQUE (user_id, usage_date)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS user_monthly_credits (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    usage_month TEXT NOT NULL,
                    credits_used INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    UNIQUE (user_id, usage_month)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS paystack_transactions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    reference TEXT NOT NULL UNIQUE,
                    authorization_url TEXT,
                    access_code TEXT,
                    amount INTEGER NOT NULL,
                    currency TEXT NOT NULL DEFAULT 'NGN',
                    status TEXT NOT NULL DEFAULT 'pending',
                    channel TEXT,
                    metadata JSONB,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limits (
                    key TEXT NOT NULL,
                    window_start TIMESTAMPTZ NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (key, window_start)
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS rate_limits_window_idx
                ON rate_limits (window_start);
                """
            )


# Users


def create_user(*, user_id: str, email: str, password_hash: str, gender: str | None) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (id, email, password_hash, gender, plan)
                VALUES (%s, %s, %s, %s, 'free')
                """,
                (user_id, email, password_hash, gender),
            )


def get_user_by_email(email: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM users WHERE email = %s", (email,))
            row = cur.fetchone()
            return dict(row) if row else None


def get_user_by_id(user_id: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
            return dict(row) if row else None


def update_user_plan(user_id: str, plan: str, expires_at: datetime | None) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE users
                SET plan = %s,
                    plan_expires_at = %s,
                    last_renewal_reminder_at = NULL,
                    updated_at = now()
                WHERE id = %s
                RETURNING id, email, plan, plan_expires_at
                """,
                (plan, expires_at, user_id),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def downgrade_expired_plan(user_id: str) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE users
                SET plan = 'free',
                    plan_expires_at = NULL,
                    last_renewal_reminder_at = NULL,
                    updated_at = now()
                WHERE id = %s AND plan = 'pro'
                """,
                (user_id,),
            )


def update_user_gender(user_id: str, gender: str | None) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE users SET gender = %s, updated_at = now() WHERE id = %s",
                (gender, user_id),
            )


def mark_email_verified(user_id: str, verified_at: datetime) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE users
                SET email_verified_at = %s, updated_at = now()
                WHERE id = %s AND email_verified_at IS NULL
                """,
                (verified_at, user_id),
            )


def fetch_renewal_candidates(now: datetime, window_end: datetime, limit: int) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, email, plan_expires_at
                FROM users
                WHERE plan = 'pro'
                  AND plan_expires_at IS NOT NULL
                  AND plan_expires_at > %s
                  AND plan_expires_at <= %s
                  AND last_renewal_reminder_at IS NULL
                ORDER BY plan_expires_at ASC
                LIMIT %s
                """,
                (now, window_end, limit),
            )
            return [dict(row) for row in cur.fetchall()]


def mark_renewal_reminder_sent(user_id: str, sent_at: datetime) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE users
                SET last_renewal_reminder_at = %s, updated_at = now()
                WHERE id = %s
                """,
                (sent_at, user_id),
            )


# Conversations


def get_conversation(conversation_id: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM conversations WHERE id = %s", (conversation_id,))
            row = cur.fetchone()
            return dict(row) if row else None


def count_user_conversations(user_id: str) -> int:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) AS total FROM conversations WHERE user_id = %s",
                (user_id,),
            )
            row = cur.fetchone()
            return int(row["total"]) if row else 0


def list_session_conversations(session_id: str) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                    c.*,
                    (SELECT COUNT(*) FROM analyses a WHERE a.conversation_id = c.id) AS analysis_count,
                    (SELECT COUNT(*) FROM conversation_inputs i WHERE i.conversation_id = c.id) AS input_count,
                    latest.id AS latest_analysis_id,
                    latest.diagnosis AS latest_diagnosis,
                    latest.persona AS latest_persona,
                    latest.created_at AS latest_created_at
                FROM conversations c
                LEFT JOIN LATERAL (
                    SELECT id, diagnosis, persona, created_at
                    FROM analyses
                    WHERE conversation_id = c.id
                    ORDER BY created_at DESC
                    LIMIT 1
                ) latest ON TRUE
                WHERE c.session_id = %s
                ORDER BY c.updated_at DESC
                """,
                (session_id,),
            )
            return [dict(row) for row in cur.fetchall()]


def assign_conversation_user(conversation_id: str, user_id: str) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE conversations SET user_id = %s WHERE id = %s AND user_id IS NULL",
                (user_id, conversation_id),
            )


def update_conversation_context(conversation_id: str, context: dict[str, Any] | None) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE conversations SET context = %s, updated_at = now() WHERE id = %s",
                (_jsonb(context), conversation_id),
            )


def touch_conversation(conversation_id: str) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE conversations SET updated_at = now() WHERE id = %s",
                (conversation_id,),
            )


def delete_conversation(conversation_id: str) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM analyses WHERE conversation_id = %s", (conversation_id,))
            cur.execute(
                "DELETE FROM conversation_inputs WHERE conversation_id = %s", (conversation_id,)
            )
            cur.execute("DELETE FROM chat_messages WHERE conversation_id = %s", (conversation_id,))
            cur.execute("DELETE FROM conversations WHERE id = %s", (conversation_id,))


def fetch_conversation_inputs(conversation_id: str) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM conversation_inputs
                WHERE conversation_id = %s
                ORDER BY position ASC, created_at ASC
                """,
                (conversation_id,),
            )
            return [dict(row) for row in cur.fetchall()]


def _insert_input(cur: psycopg.Cursor, conversation_id: str, input_row: dict[str, Any]) -> None:
    cur.execute(
        """
        INSERT INTO conversation_inputs (
            id,
            conversation_id,
            input_type,
            input_text,
            input_image_base64,
            input_image_mime_type,
            position
        )
        SELECT %s, %s, %s, %s, %s, %s, COALESCE(MAX(position) + 1, 0)
        FROM conversation_inputs
        WHERE conversation_id = %s
        """,
        (
            _new_id(),
            conversation_id,
            input_row["input_type"],
            input_row.get("input_text"),
            input_row.get("input_image_base64"),
            input_row.get("input_image_mime_type"),
            conversation_id,
        ),
    )


# Analyses


def get_analysis(analysis_id: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM analyses WHERE id = %s", (analysis_id,))
            row = cur.fetchone()
            return dict(row) if row else None


def fetch_analyses(conversation_id: str) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM analyses
                WHERE conversation_id = %s
                ORDER BY created_at DESC
                """,
                (conversation_id,),
            )
            return [dict(row) for row in cur.fetchall()]


def record_analysis(
    *,
    conversation_id: str,
    session_id: str,
    user_id: str,
    create_conversation: bool,
    title: str,
    context: dict[str, Any] | None,
    input_row: dict[str, Any],
    add_input: bool,
    persona: str,
    result: dict[str, Any],
    update_analysis_id: str | None = None,
) -> str:
    """Persist one analysis run: the conversation, its new input and the analysis row."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            if create_conversation:
                cur.execute(
                    """
                    INSERT INTO conversations (id, session_id, user_id, title, context)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (conversation_id, session_id, user_id, title, _jsonb(context)),
                )
            elif context is not None:
                cur.execute(
                    "UPDATE conversations SET context = %s, updated_at = now() WHERE id = %s",
                    (Jsonb(context), conversation_id),
                )
            else:
                cur.execute(
                    "UPDATE conversations SET updated_at = now() WHERE id = %s",
                    (conversation_id,),
                )

            if add_input:
                _insert_input(cur, conversation_id, input_row)

            if update_analysis_id:
                cur.execute(
                    """
                    UPDATE analyses
                    SET persona = %s,
                        cringe_score = %s,
                        interest_level = %s,
                        response_speed_rating = %s,
                        red_flags = %s,
                        green_flags = %s,
                        diagnosis = %s,
                        detailed_analysis = %s,
                        suggested_replies = %s,
                        updated_at = now()
                    WHERE id = %s AND conversation_id = %s
                    """,
                    (
                        persona,
                        result["cringe_score"],
                        result["interest_level"],
                        result["response_speed_rating"],
                        result["red_flags"],
                        result["green_flags"],
                        result["diagnosis"],
                        result["detailed_analysis"],
                        Jsonb(result["suggested_replies"]),
                        update_analysis_id,
                        conversation_id,
                    ),
                )
                return update_analysis_id

            analysis_id = _new_id()
            cur.execute(
                """
                INSERT INTO analyses (
                    id,
                    conversation_id,
                    input_type,
                    input_text,
                    input_image_base64,
                    input_image_mime_type,
                    persona,
                    cringe_score,
                    interest_level,
                    response_speed_rating,
                    red_flags,
                    green_flags,
                    diagnosis,
                    detailed_analysis,
                    suggested_replies
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    analysis_id,
                    conversation_id,
                    input_row["input_type"],
                    input_row.get("input_text"),
                    input_row.get("input_image_base64"),
                    input_row.get("input_image_mime_type"),
                    persona,
                    result["cringe_score"],
                    result["interest_level"],
                    result["response_speed_rating"],
                    result["red_flags"],
                    result["green_flags"],
                    result["diagnosis"],
                    result["detailed_analysis"],
                    Jsonb(result["suggested_replies"]),
                ),
            )
            return analysis_id


def delete_analysis(analysis: dict[str, Any]) -> None:
    """Delete an analysis together with the conversation input it was produced from."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM analyses WHERE id = %s", (analysis["id"],))
            if not analysis.get("conversation_id"):
                return
            if analysis.get("input_type") == "text":
                cur.execute(
                    """
                    DELETE FROM conversation_inputs
                    WHERE conversation_id = %s AND input_type = 'text' AND input_text = %s
                    """,
                    (analysis["conversation_id"], analysis.get("input_text")),
                )
            elif analysis.get("input_type") == "image":
                cur.execute(
                    """
                    DELETE FROM conversation_inputs
                    WHERE conversation_id = %s AND input_type = 'image' AND input_image_base64 = %s
                    """,
                    (analysis["conversation_id"], analysis.get("input_image_base64")),
                )


# Chat


def insert_chat_message(
    *,
    message_id: str,
    conversation_id: str,
    role: str,
    content: str,
    persona: str | None,
) -> dict[str, Any]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO chat_messages (id, conversation_id, role, content, persona)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (message_id, conversation_id, role, content, persona),
            )
            row = cur.fetchone()
            return dict(row) if row else {}


def fetch_chat_messages(conversation_id: str, limit: int | None = None) -> list[dict[str, Any]]:
    """Chat messages oldest first; with a limit, only the most recent ones."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            if limit is None:
                cur.execute(
                    """
                    SELECT *
                    FROM chat_messages
                    WHERE conversation_id = %s
                    ORDER BY created_at ASC
                    """,
                    (conversation_id,),
                )
                return [dict(row) for row in cur.fetchall()]
            cur.execute(
                """
                SELECT *
                FROM chat_messages
                WHERE conversation_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (conversation_id, limit),
            )
            rows = [dict(row) for row in cur.fetchall()]
            rows.reverse()
            return rows


def get_chat_message(message_id: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM chat_messages WHERE id = %s", (message_id,))
            row = cur.fetchone()
            return dict(row) if row else None


def delete_chat_message(message_id: str) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM chat_messages WHERE id = %s", (message_id,))


# Usage


def increment_daily_usage(user_id: str, usage_date: date, limit: int) -> int | None:
    """Add one submission for the day unless the count already reached the limit.

    Returns the new count, or None when the limit was already reached.
    """
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO user_daily_usage (id, user_id, usage_date, submission_count)
                VALUES (%s, %s, %s, 1)
                ON CONFLICT (user_id, usage_date)
                DO UPDATE SET
                    submission_count = user_daily_usage.submission_count + 1,
                    updated_at = now()
                WHERE user_daily_usage.submission_count < %s
                RETURNING submission_count
                """,
                (_new_id(), user_id, usage_date, limit),
            )
            row = cur.fetchone()
            return int(row["submission_count"]) if row else None


def get_daily_usage(user_id: str, usage_date: date) -> int:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT submission_count
                FROM user_daily_usage
                WHERE user_id = %s AND usage_date = %s
                """,
                (user_id, usage_date),
            )
            row = cur.fetchone()
            return int(row["submission_count"]) if row else 0


def increment_monthly_credits(user_id: str, usage_month: str, limit: int) -> int | None:
    """Spend one credit for the month unless the ceiling was already reached."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO user_monthly_credits (id, user_id, usage_month, credits_used)
                VALUES (%s, %s, %s, 1)
                ON CONFLICT (user_id, usage_month)
                DO UPDATE SET
                    credits_used = user_monthly_credits.credits_used + 1,
                    updated_at = now()
                WHERE user_monthly_credits.credits_used < %s
                RETURNING credits_used
                """,
                (_new_id(), user_id, usage_month, limit),
            )
            row = cur.fetchone()
            return int(row["credits_used"]) if row else None


def get_monthly_credits(user_id: str, usage_month: str) -> int:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT credits_used
                FROM user_monthly_credits
                WHERE user_id = %s AND usage_month = %s
                """,
                (user_id, usage_month),
            )
            row = cur.fetchone()
            return int(row["credits_used"]) if row else 0


def increment_rate_limit(key: str, window_start: datetime) -> int:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO rate_limits (key, window_start, count)
                VALUES (%s, %s, 1)
                ON CONFLICT (key, window_start)
                DO UPDATE SET count = rate_limits.count + 1
                RETURNING count
                """,
                (key, window_start),
            )
            row = cur.fetchone()
            return int(row["count"]) if row else 1


# Paystack


def insert_paystack_transaction(
    *,
    user_id: str,
    reference: str,
    authorization_url: str | None,
    access_code: str | None,
    amount: int,
    currency: str,
    metadata: dict[str, Any] | None,
) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO paystack_transactions (
                    id,
                    user_id,
                    reference,
                    authorization_url,
                    access_code,
                    amount,
                    currency,
                    status,
                    metadata
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, 'pending', %s)
                """,
                (
                    _new_id(),
                    user_id,
                    reference,
                    authorization_url,
                    access_code,
                    amount,
                    currency,
                    _jsonb(metadata),
                ),
            )


def get_paystack_transaction(reference: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM paystack_transactions WHERE reference = %s",
                (reference,),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def update_paystack_transaction(
    reference: str,
    *,
    status: str,
    channel: str | None,
    metadata: dict[str, Any] | None,
) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE paystack_transactions
                SET status = %s,
                    channel = COALESCE(%s, channel),
                    metadata = COALESCE(%s, metadata),
                    updated_at = now()
                WHERE reference = %s
                """,
                (status, channel, _jsonb(metadata), reference),
            )


def apply_paystack_payment(
    *,
    user_id: str,
    reference: str,
    expires_at: datetime,
    amount: int,
    currency: str,
    channel: str | None,
    metadata: dict[str, Any] | None,
    customer_code: str | None,
    authorization_code: str | None,
) -> bool:
    """Mark a transaction successful and activate Pro for its user in one transaction.

    Returns False when the reference was already recorded as successful, in
    which case the user row is left untouched.
    """
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO paystack_transactions (
                    id,
                    user_id,
                    reference,
                    amount,
                    currency,
                    status,
                    channel,
                    metadata
                )
                VALUES (%s, %s, %s, %s, %s, 'success', %s, %s)
                ON CONFLICT (reference)
                DO UPDATE SET
                    status = 'success',
                    amount = EXCLUDED.amount,
                    currency = EXCLUDED.currency,
                    channel = COALESCE(EXCLUDED.channel, paystack_transactions.channel),
                    metadata = COALESCE(EXCLUDED.metadata, paystack_transactions.metadata),
                    updated_at = now()
                WHERE paystack_transactions.status <> 'success'
                  AND paystack_transactions.user_id = EXCLUDED.user_id
                RETURNING id
                """,
                (_new_id(), user_id, reference, amount, currency, channel, _jsonb(metadata)),
            )
            if cur.fetchone() is None:
                return False
            cur.execute(
                """
                UPDATE users
                SET plan = 'pro',
                    plan_expires_at = %s,
                    paystack_customer_code = COALESCE(%s, paystack_customer_code),
                    paystack_authorization_code = COALESCE(%s, paystack_authorization_code),
                    last_renewal_reminder_at = NULL,
                    updated_at = now()
                WHERE id = %s
                """,
                (expires_at, customer_code, authorization_code, user_id),
            )
            return True


# Admin reporting


def fetch_admin_overview(usage_month: str, since: datetime) -> dict[str, Any]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM users) AS total_users,
                    (SELECT COUNT(*) FROM conversations) AS total_conversations,
                    (SELECT COUNT(*) FROM users WHERE created_at >= %s) AS recent_users,
                    (
                        SELECT COALESCE(SUM(credits_used), 0)
                        FROM user_monthly_credits
                        WHERE usage_month = %s
                    ) AS total_credits_used
                """,
                (since, usage_month),
            )
            overview = dict(cur.fetchone() or {})
            cur.execute("SELECT id, plan, plan_expires_at FROM users WHERE plan = 'pro'")
            overview["pro_rows"] = [dict(row) for row in cur.fetchall()]
            return overview


def fetch_admin_users(
    *,
    usage_month: str,
    search: str | None,
    plan_filter: str | None,
    limit: int | None,
    offset: int,
) -> tuple[list[dict[str, Any]], int]:
    ensure_schema()
    conditions: list[str] = []
    params: list[Any] = []
    if search:
        conditions.append("u.email ILIKE %s")
        params.append(f"%{search}%")
    if plan_filter == "pro":
        conditions.append("u.plan = 'pro'")
    elif plan_filter == "free":
        conditions.append("(u.plan = 'free' OR u.plan IS NULL)")
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    paging = "LIMIT %s OFFSET %s" if limit is not None else ""
    paging_params: list[Any] = [limit, offset] if limit is not None else []

    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT
                    u.id,
                    u.email,
                    u.plan,
                    u.plan_expires_at,
                    u.created_at,
                    u.email_verified_at,
                    m.credits_used,
                    m.updated_at AS credits_updated_at,
                    COUNT(DISTINCT c.id) AS conversations_count
                FROM users u
                LEFT JOIN user_monthly_credits m
                    ON m.user_id = u.id AND m.usage_month = %s
                LEFT JOIN conversations c ON c.user_id = u.id
                {where}
                GROUP BY u.id, m.credits_used, m.updated_at
                ORDER BY u.created_at DESC
                {paging}
                """,
                [usage_month, *params, *paging_params],
            )
            rows = [dict(row) for row in cur.fetchall()]
            cur.execute(f"SELECT COUNT(*) AS total FROM users u {where}", params)
            total_row = cur.fetchone()
            return rows, int(total_row["total"]) if total_row else 0


def fetch_admin_conversations(
    *,
    since: datetime,
    limit: int,
    offset: int,
) -> tuple[list[dict[str, Any]], int]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                    c.id,
                    c.session_id,
                    c.title,
                    c.created_at,
                    c.updated_at,
                    c.user_id,
                    u.email AS user_email,
                    COUNT(a.id) AS analysis_count,
                    AVG(a.cringe_score) AS avg_cringe_score,
                    AVG(a.interest_level) AS avg_interest_level
                FROM conversations c
                LEFT JOIN users u ON u.id = c.user_id
                LEFT JOIN analyses a ON a.conversation_id = c.id
                WHERE c.created_at >= %s
                GROUP BY c.id, u.email
                ORDER BY c.created_at DESC
                LIMIT %s OFFSET %s
                """,
                (since, limit, offset),
            )
            rows = [dict(row) for row in cur.fetchall()]
            cur.execute(
                "SELECT COUNT(*) AS total FROM conversations WHERE created_at >= %s",
                (since,),
            )
            total_row = cur.fetchone()
            return rows, int(total_row["total"]) if total_row else 0


def fetch_analytics_source(since: datetime) -> dict[str, list[dict[str, Any]]]:
    """Raw rows behind the admin analytics dashboard."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT DATE(created_at) AS date, COUNT(*) AS count
                FROM users
                WHERE created_at >= %s
                GROUP BY DATE(created_at)
                ORDER BY DATE(created_at)
                """,
                (since,),
            )
            user_growth = [dict(row) for row in cur.fetchall()]
            cur.execute("SELECT id, plan, plan_expires_at FROM users")
            users = [dict(row) for row in cur.fetchall()]
            cur.execute(
                """
                SELECT user_id, amount, currency, created_at
                FROM paystack_transactions
                WHERE status = 'success' AND created_at >= %s
                ORDER BY created_at ASC
                """,
                (since,),
            )
            transactions = [dict(row) for row in cur.fetchall()]
            cur.execute(
                """
                SELECT DATE(created_at) AS date, COUNT(*) AS count
                FROM conversations
                WHERE created_at >= %s
                GROUP BY DATE(created_at)
                ORDER BY DATE(created_at)
                """,
                (since,),
            )
            conversation_trends = [dict(row) for row in cur.fetchall()]
            cur.execute("SELECT usage_month, credits_used FROM user_monthly_credits")
            credits = [dict(row) for row in cur.fetchall()]
    return {
        "user_growth": user_growth,
        "users": users,
        "transactions": transactions,
        "conversation_trends": conversation_trends,
        "credits": credits,
    }
