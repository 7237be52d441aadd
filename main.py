from __future__ import annotations

import hmac
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import psycopg
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from admin import (
    format_conversation_row,
    format_user_row,
    is_admin_email,
    pagination,
    summarize_analytics,
    summarize_plans,
)
from analysis import (
    LATEST_ADDITION,
    ORIGINAL_INPUT,
    AnalysisError,
    accumulate_inputs,
    analyze_conversation,
    assess_clarification_needs,
    build_full_context,
    build_past_evidence,
    combine_with_latest,
    generate_conversational_response,
    is_valid_persona,
)
from auth import (
    TOKEN_TYPE_ACCESS,
    create_access_token,
    create_email_verification_token,
    decode_email_verification_token,
    generate_id,
    hash_password,
    read_bearer_token,
    read_session_id,
    verify_password,
    verify_token,
)
from billing import (
    PLAN_FREE,
    PLAN_PRO,
    PLANS,
    PRO_MAX_CREDITS_PER_MONTH,
    FreemiumLimitError,
    UserPlanInfo,
    calculate_pro_expiry,
    consume_submission,
    ensure_conversation_allowance,
    get_usage_snapshot,
    get_user_plan_info,
    get_users_due_for_renewal_reminder,
    mark_renewal_reminder_sent,
    plan_management_url,
    serialize_user,
    usage_month_key,
)
from config import app_url, auth_secret, bool_env, env, positive_int_env, strict_env
from context_utils import (
    GENDER_OPTIONS,
    GENDERS,
    MESSAGE_PERSPECTIVE_DESCRIPTION,
    MESSAGE_PERSPECTIVE_TITLE,
    PERSPECTIVE_OPTIONS,
    RELATIONSHIP_OPTIONS,
    ROLE_SUGGESTIONS,
    apply_clarification_answers,
)
from db import (
    apply_paystack_payment,
    assign_conversation_user,
    create_user,
    delete_analysis,
    delete_chat_message,
    delete_conversation,
    fetch_admin_conversations,
    fetch_admin_overview,
    fetch_admin_users,
    fetch_analyses,
    fetch_analytics_source,
    fetch_chat_messages,
    fetch_conversation_inputs,
    get_analysis,
    get_chat_message,
    get_conversation,
    get_paystack_transaction,
    get_user_by_email,
    get_user_by_id,
    increment_rate_limit,
    insert_chat_message,
    insert_paystack_transaction,
    list_session_conversations,
    mark_email_verified,
    record_analysis,
    touch_conversation,
    update_conversation_context,
    update_paystack_transaction,
    update_user_gender,
    update_user_plan,
)
from emails import (
    send_auto_renewal_notification_email,
    send_plan_activated_email,
    send_plan_renewal_reminder_email,
    send_verification_email,
)
from paystack import (
    PaystackError,
    callback_url,
    format_amount,
    generate_reference,
    initialize_transaction,
    paystack_configured,
    plan_code,
    pro_amount_minor,
    pro_currency,
    verify_transaction,
    verify_webhook_signature,
)
from schemas import (
    AdminPlanUpdateRequest,
    AnalyzeRequest,
    AnalyzeResponse,
    AuthResponse,
    ChatRequest,
    ClarificationCheckResult,
    ClarifyRequest,
    ContextUpdateRequest,
    GenderUpdateRequest,
    ImageInput,
    LoginRequest,
    PaystackVerifyRequest,
    RegisterRequest,
    RenewalReminderRequest,
    TextInput,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("textopsy")

app = FastAPI(title="Textopsy Backend")

RATE_LIMIT_AUTH = positive_int_env("RATE_LIMIT_AUTH_PER_MINUTE", 20)
CHAT_HISTORY_LIMIT = 20
PAYMENT_SUCCESS_EVENTS = {"charge.success", "invoice.payment_success"}


def _parse_origins(value: str | None) -> list[str]:
    if not value:
        return []
    origins: list[str] = []
    for origin in value.split(","):
        origin = origin.strip()
        if not origin or origin == "*":
            continue
        origins.append(origin.rstrip("/"))
    return origins


def _cors_origins() -> list[str]:
    origins = [app_url()] if app_url() else []
    for origin in _parse_origins(env("CORS_ORIGINS")):
        if origin not in origins:
            origins.append(origin)
    return origins


def _validate_env() -> None:
    errors: list[str] = []
    warnings: list[str] = []
    strict = strict_env()

    secret = env("AUTH_SECRET")
    if not secret:
        errors.append("AUTH_SECRET is required.")
    elif strict and len(secret) < 32:
        errors.append("AUTH_SECRET must be at least 32 characters.")
    if not app_url():
        errors.append("APP_URL is required.")

    if not env("DATABASE_URL"):
        if strict:
            errors.append("DATABASE_URL is required.")
        else:
            warnings.append("DATABASE_URL is not set; database calls will fail.")
    if not env("OPENROUTER_API_KEY"):
        warnings.append("OPENROUTER_API_KEY is not set; analysis endpoints disabled.")
    if not paystack_configured():
        warnings.append("PAYSTACK_SECRET_KEY is not set; payments disabled.")
    if not env("SMTP_HOST"):
        warnings.append("SMTP_HOST is not set; emails will be skipped.")
    if not env("ADMIN_EMAILS") and not env("ADMIN_DASHBOARD_TOKEN"):
        warnings.append("ADMIN_EMAILS and ADMIN_DASHBOARD_TOKEN are not set; admin endpoints disabled.")

    currency = env("PAYSTACK_CURRENCY")
    if currency and not re.fullmatch(r"[A-Za-z]{3}", currency.strip()):
        errors.append("PAYSTACK_CURRENCY must be a 3-letter ISO currency code (e.g. USD, NGN, KES).")
    for name in ("PAYSTACK_PRO_AMOUNT_MINOR", "PAYSTACK_PRO_AMOUNT_KOBO"):
        raw = env(name)
        if raw is None:
            continue
        try:
            if float(raw) <= 0:
                raise ValueError(raw)
        except ValueError:
            errors.append(f"{name} must be a positive integer in the currency's minor units.")

    if errors:
        raise RuntimeError("Config errors: " + "; ".join(errors))
    for warning in warnings:
        logger.warning(warning)


_validate_env()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if isinstance(value, datetime) else None


def _email_date(value: datetime) -> str:
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def _token_ttl_seconds() -> int:
    return positive_int_env("AUTH_TOKEN_TTL_SECONDS", 7 * 24 * 3600)


def _verification_ttl_hours() -> int:
    return positive_int_env("EMAIL_VERIFICATION_TOKEN_TTL_HOURS", 24)


def _verification_required() -> bool:
    return bool_env("EMAIL_VERIFICATION_REQUIRED")


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def _rate_limit_auth(request: Request) -> None:
    window_start = _now_utc().replace(second=0, microsecond=0)
    ip = _get_client_ip(request)
    if not ip:
        return
    ip_count = increment_rate_limit(f"auth:{ip}", window_start)
    if ip_count > RATE_LIMIT_AUTH:
        raise HTTPException(
            status_code=429,
            detail="Too many authentication attempts. Please try again shortly.",
        )


def _decode_access_token(request: Request) -> dict[str, Any] | None:
    token = read_bearer_token(request)
    if not token:
        return None
    try:
        payload = verify_token(token, auth_secret())
    except ValueError:
        return None
    if payload.get("typ") != TOKEN_TYPE_ACCESS or not payload.get("sub"):
        return None
    return payload


def _require_user(request: Request, require_verified: bool = False) -> UserPlanInfo:
    if not read_bearer_token(request):
        raise HTTPException(status_code=401, detail="Authentication required.")
    payload = _decode_access_token(request)
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")
    info = get_user_plan_info(payload["sub"])
    if info is None:
        raise HTTPException(status_code=401, detail="User account not found.")
    if require_verified and info.email_verified_at is None:
        raise HTTPException(status_code=403, detail="Email verification required.")
    return info


def _require_session(request: Request) -> str:
    session_id = read_session_id(request)
    if not session_id:
        raise HTTPException(status_code=401, detail="Session ID required")
    return session_id


def _secrets_match(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _require_admin(request: Request, allow_dashboard_token: bool = True) -> dict[str, Any]:
    if allow_dashboard_token:
        provided = request.headers.get("x-admin-token")
        expected = env("ADMIN_DASHBOARD_TOKEN")
        if provided and expected and _secrets_match(provided, expected):
            return {"via": "token"}
    payload = _decode_access_token(request)
    if payload and is_admin_email(payload.get("email")):
        return {"via": "email", "sub": payload["sub"], "email": payload.get("email")}
    raise HTTPException(status_code=401, detail="Unauthorized. Admin access required.")


def _limit_exception(exc: FreemiumLimitError) -> HTTPException:
    return HTTPException(
        status_code=exc.status,
        detail={"message": exc.message, "code": exc.code, "details": exc.details},
    )


def _paystack_exception(exc: PaystackError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _load_session_conversation(conversation_id: str, session_id: str) -> dict[str, Any]:
    conversation = get_conversation(conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if conversation["session_id"] != session_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return conversation


def _claim_conversation(conversation: dict[str, Any], user_id: str) -> None:
    owner = conversation.get("user_id")
    if owner and owner != user_id:
        raise HTTPException(
            status_code=403,
            detail="This conversation belongs to another account.",
        )
    if not owner:
        assign_conversation_user(conversation["id"], user_id)


def _with_query(url: str, **params: str) -> str:
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


def _verification_link(token: str) -> str:
    return f"{app_url()}/api/auth/verify-email?{urlencode({'token': token})}"


def _send_verification(user_id: str, email: str) -> bool:
    token = create_email_verification_token(user_id, email, auth_secret(), _verification_ttl_hours())
    try:
        return send_verification_email(
            email=email,
            verification_url=_verification_link(token),
            expires_in_hours=_verification_ttl_hours(),
        )
    except Exception:
        logger.exception("Failed to send verification email.")
        return False


def _notify(send: Any, description: str, **kwargs: Any) -> None:
    try:
        send(**kwargs)
    except Exception:
        logger.exception("Failed to send %s email.", description)


def _input_row(analysis_input: TextInput | ImageInput) -> dict[str, Any]:
    if isinstance(analysis_input, TextInput):
        return {"input_type": "text", "input_text": analysis_input.content}
    return {
        "input_type": "image",
        "input_image_base64": analysis_input.base64,
        "input_image_mime_type": analysis_input.mime_type,
    }


def _input_from_analysis(row: dict[str, Any]) -> TextInput | ImageInput:
    if row.get("input_type") == "image":
        return ImageInput(
            type="image",
            base64=row.get("input_image_base64") or "",
            mime_type=row.get("input_image_mime_type") or "image/png",
        )
    return TextInput(type="text", content=row.get("input_text") or "")


def _validate_analysis_input(persona: str, analysis_input: TextInput | ImageInput) -> None:
    if not is_valid_persona(persona):
        raise HTTPException(status_code=400, detail="Invalid persona provided.")
    if isinstance(analysis_input, TextInput) and not analysis_input.content.strip():
        raise HTTPException(status_code=400, detail="Conversation text is empty.")
    if isinstance(analysis_input, ImageInput) and (
        not analysis_input.base64 or not analysis_input.mime_type
    ):
        raise HTTPException(status_code=400, detail="Image input is incomplete.")


def _conversation_summary(row: dict[str, Any]) -> dict[str, Any]:
    summary = {
        key: row.get(key)
        for key in ("id", "session_id", "user_id", "title", "context", "created_at", "updated_at")
    }
    latest: list[dict[str, Any]] = []
    if row.get("latest_analysis_id"):
        latest.append(
            {
                "id": row["latest_analysis_id"],
                "diagnosis": row.get("latest_diagnosis"),
                "persona": row.get("latest_persona"),
                "created_at": row.get("latest_created_at"),
            }
        )
    summary["analyses"] = latest
    summary["counts"] = {
        "analyses": int(row.get("analysis_count") or 0),
        "inputs": int(row.get("input_count") or 0),
    }
    return summary


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


# Auth


@app.post("/api/auth/register", response_model=AuthResponse)
def register(payload: RegisterRequest, raw_request: Request) -> AuthResponse:
    _rate_limit_auth(raw_request)
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    if len(payload.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
    gender = payload.gender or None
    if gender and gender not in GENDERS:
        raise HTTPException(status_code=400, detail="Invalid gender value")
    if get_user_by_email(email):
        raise HTTPException(status_code=409, detail="User with this email already exists")

    user_id = generate_id()
    try:
        create_user(
            user_id=user_id,
            email=email,
            password_hash=hash_password(payload.password),
            gender=gender,
        )
    except psycopg.errors.UniqueViolation as exc:
        raise HTTPException(status_code=409, detail="User with this email already exists") from exc

    _send_verification(user_id, email)

    info = UserPlanInfo(
        id=user_id,
        email=email,
        plan=PLAN_FREE,
        is_pro=False,
        plan_expires_at=None,
        paystack_customer_code=None,
        paystack_authorization_code=None,
        email_verified_at=None,
        gender=gender,
    )
    token = create_access_token(user_id, email, auth_secret(), _token_ttl_seconds())
    return AuthResponse(token=token, user=serialize_user(info))


@app.post("/api/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, raw_request: Request) -> AuthResponse:
    _rate_limit_auth(raw_request)
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    user = get_user_by_email(email)
    if not user or not verify_password(payload.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    info = get_user_plan_info(user["id"])
    if info is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    token = create_access_token(info.id, info.email, auth_secret(), _token_ttl_seconds())
    return AuthResponse(token=token, user=serialize_user(info))


@app.get("/api/auth/check")
def check_auth(raw_request: Request) -> Any:
    payload = _decode_access_token(raw_request)
    info = get_user_plan_info(payload["sub"]) if payload else None
    if info is None:
        return JSONResponse(status_code=401, content={"authenticated": False})
    return {"authenticated": True, "user": serialize_user(info)}


@app.get("/api/auth/verify-email")
def verify_email(token: str | None = None) -> RedirectResponse:
    def respond(success: bool, message: str) -> RedirectResponse:
        status = "success" if success else "error"
        target = env(f"EMAIL_VERIFICATION_{status.upper()}_REDIRECT")
        if not target:
            target = f"{app_url()}/verify-email?status={status}"
        return RedirectResponse(_with_query(target, message=message), status_code=302)

    if not token:
        return respond(False, "Verification token is required.")
    try:
        decoded = decode_email_verification_token(token, auth_secret())
    except ValueError:
        return respond(False, "Invalid or expired verification token.")
    user = get_user_by_id(decoded["sub"])
    if not user:
        return respond(False, "Account not found.")
    if user.get("email_verified_at") is None:
        mark_email_verified(user["id"], _now_utc())
        logger.info("Email verified for user %s", user["id"])
    return respond(True, "Email verified.")


@app.post("/api/auth/resend-verification")
def resend_verification(raw_request: Request) -> dict[str, bool]:
    _rate_limit_auth(raw_request)
    info = _require_user(raw_request)
    if info.email_verified_at is not None:
        return {"sent": False, "already_verified": True}
    return {"sent": _send_verification(info.id, info.email), "already_verified": False}


@app.patch("/api/user/gender")
def update_gender(payload: GenderUpdateRequest, raw_request: Request) -> dict[str, Any]:
    info = _require_user(raw_request)
    gender = payload.gender or None
    if gender and gender not in GENDERS:
        raise HTTPException(status_code=400, detail="Invalid gender value")
    update_user_gender(info.id, gender)
    return {"success": True, "gender": gender}


# Settings


@app.get("/api/settings/message-perspective")
def message_perspective() -> dict[str, str]:
    return {
        "title": env("MESSAGE_PERSPECTIVE_TITLE", MESSAGE_PERSPECTIVE_TITLE),
        "description": env("MESSAGE_PERSPECTIVE_DESCRIPTION", MESSAGE_PERSPECTIVE_DESCRIPTION),
    }


@app.get("/api/settings/context-options")
def context_options() -> dict[str, Any]:
    return {
        "perspectives": PERSPECTIVE_OPTIONS,
        "relationship_types": RELATIONSHIP_OPTIONS,
        "genders": GENDER_OPTIONS,
        "role_suggestions": ROLE_SUGGESTIONS,
    }


# Analysis


@app.post("/api/analyze", response_model=AnalyzeResponse)
def analyze(payload: AnalyzeRequest, raw_request: Request) -> AnalyzeResponse:
    info = _require_user(raw_request, require_verified=_verification_required())
    _validate_analysis_input(payload.persona, payload.input)

    context = payload.context.to_dict() if payload.context else None
    if payload.clarification_questions and payload.clarification_answers is not None:
        context = apply_clarification_answers(
            context,
            [question.model_dump() for question in payload.clarification_questions],
            payload.clarification_answers,
        )

    session_id = payload.session_id or read_session_id(raw_request)
    conversation: dict[str, Any] | None = None
    if payload.conversation_id:
        conversation = get_conversation(payload.conversation_id)
        if not conversation:
            raise HTTPException(status_code=404, detail="Conversation not found.")
        if session_id and conversation["session_id"] != session_id:
            raise HTTPException(status_code=403, detail="Access denied for this conversation.")
        session_id = session_id or conversation["session_id"]
        if conversation.get("user_id") and conversation["user_id"] != info.id:
            raise HTTPException(
                status_code=403,
                detail="This conversation belongs to another account.",
            )

    updated_analysis: dict[str, Any] | None = None
    if payload.update_analysis_id:
        if conversation is None:
            raise HTTPException(
                status_code=400,
                detail="conversation_id is required to update an analysis.",
            )
        updated_analysis = get_analysis(payload.update_analysis_id)
        if not updated_analysis or updated_analysis["conversation_id"] != conversation["id"]:
            raise HTTPException(status_code=404, detail="Analysis not found.")

    try:
        if conversation is None:
            ensure_conversation_allowance(info.id, info.is_pro)
        consume_submission(info.id, info.is_pro)
    except FreemiumLimitError as exc:
        raise _limit_exception(exc) from exc

    if conversation is not None and not conversation.get("user_id"):
        assign_conversation_user(conversation["id"], info.id)

    analysis_input: TextInput | ImageInput = payload.input
    context_text: str | None = None
    if conversation is not None:
        evidence = build_past_evidence(
            fetch_analyses(conversation["id"]),
            exclude_id=payload.update_analysis_id,
        )
        full_context = build_full_context(
            evidence,
            accumulate_inputs(fetch_conversation_inputs(conversation["id"])),
        )
        label = LATEST_ADDITION
        if updated_analysis is not None:
            analysis_input = _input_from_analysis(updated_analysis)
            label = ORIGINAL_INPUT
        if isinstance(analysis_input, TextInput):
            analysis_input = TextInput(
                type="text",
                content=combine_with_latest(full_context, analysis_input.content, label),
            )
        else:
            context_text = full_context

    try:
        result = analyze_conversation(
            analysis_input,
            payload.persona,
            context or (conversation or {}).get("context"),
            context_text,
        )
    except AnalysisError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    conversation_id = conversation["id"] if conversation else generate_id()
    session_id = session_id or generate_id()
    analysis_id = record_analysis(
        conversation_id=conversation_id,
        session_id=session_id,
        user_id=info.id,
        create_conversation=conversation is None,
        title=result.diagnosis[:100],
        context=context,
        input_row=_input_row(payload.input),
        add_input=updated_analysis is None,
        persona=payload.persona,
        result=result.model_dump(),
        update_analysis_id=payload.update_analysis_id,
    )
    logger.info("Analysis %s stored for conversation %s", analysis_id, conversation_id)
    return AnalyzeResponse(
        **result.model_dump(),
        analysis_id=analysis_id,
        conversation_id=conversation_id,
        session_id=session_id,
    )


@app.post("/api/analyze/clarify", response_model=ClarificationCheckResult)
def clarify(payload: ClarifyRequest, raw_request: Request) -> ClarificationCheckResult:
    _require_user(raw_request)
    _validate_analysis_input(payload.persona, payload.input)
    context = payload.context.to_dict() if payload.context else None
    try:
        return assess_clarification_needs(payload.input, context)
    except AnalysisError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


# Conversations


@app.get("/api/conversations")
def list_conversations(raw_request: Request) -> dict[str, Any]:
    rows = list_session_conversations(_require_session(raw_request))
    return {"conversations": [_conversation_summary(row) for row in rows]}


@app.get("/api/conversations/{conversation_id}")
def get_conversation_detail(conversation_id: str, raw_request: Request) -> dict[str, Any]:
    conversation = _load_session_conversation(conversation_id, _require_session(raw_request))
    return {
        "conversation": {
            **conversation,
            "analyses": fetch_analyses(conversation_id),
            "inputs": fetch_conversation_inputs(conversation_id),
            "chat_messages": fetch_chat_messages(conversation_id),
        }
    }


@app.patch("/api/conversations/{conversation_id}")
def update_conversation(
    conversation_id: str,
    payload: ContextUpdateRequest,
    raw_request: Request,
) -> dict[str, bool]:
    _load_session_conversation(conversation_id, _require_session(raw_request))
    update_conversation_context(
        conversation_id,
        payload.context.to_dict() if payload.context else None,
    )
    return {"success": True}


@app.delete("/api/conversations/{conversation_id}")
def remove_conversation(conversation_id: str, raw_request: Request) -> dict[str, bool]:
    _load_session_conversation(conversation_id, _require_session(raw_request))
    delete_conversation(conversation_id)
    return {"success": True}


@app.post("/api/conversations/{conversation_id}/chat")
def chat(conversation_id: str, payload: ChatRequest, raw_request: Request) -> dict[str, Any]:
    session_id = _require_session(raw_request)
    info = _require_user(raw_request, require_verified=_verification_required())
    message = payload.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required.")
    if not is_valid_persona(payload.persona):
        raise HTTPException(status_code=400, detail="Invalid persona provided.")

    conversation = _load_session_conversation(conversation_id, session_id)
    _claim_conversation(conversation, info.id)

    history = fetch_chat_messages(conversation_id, limit=CHAT_HISTORY_LIMIT)
    previous = fetch_analyses(conversation_id)
    evidence = accumulate_inputs(fetch_conversation_inputs(conversation_id))

    try:
        consume_submission(info.id, info.is_pro)
    except FreemiumLimitError as exc:
        raise _limit_exception(exc) from exc

    context = (
        payload.conversation_context.to_dict()
        if payload.conversation_context
        else conversation.get("context")
    )
    try:
        reply = generate_conversational_response(
            message,
            payload.persona,
            context,
            history,
            previous,
            evidence,
        )
    except AnalysisError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    user_message = insert_chat_message(
        message_id=generate_id(),
        conversation_id=conversation_id,
        role="user",
        content=message,
        persona=None,
    )
    assistant_message = insert_chat_message(
        message_id=generate_id(),
        conversation_id=conversation_id,
        role="assistant",
        content=reply,
        persona=payload.persona,
    )
    touch_conversation(conversation_id)
    return {"user_message": user_message, "assistant_message": assistant_message}


@app.delete("/api/conversations/{conversation_id}/chat/{message_id}")
def remove_chat_message(conversation_id: str, message_id: str, raw_request: Request) -> dict[str, bool]:
    session_id = _require_session(raw_request)
    _require_user(raw_request)
    _load_session_conversation(conversation_id, session_id)
    message = get_chat_message(message_id)
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    if message["conversation_id"] != conversation_id:
        raise HTTPException(status_code=403, detail="Message does not belong to this conversation")
    delete_chat_message(message_id)
    return {"success": True}


@app.delete("/api/analyses/{analysis_id}")
def remove_analysis(analysis_id: str, raw_request: Request) -> dict[str, str]:
    info = _require_user(raw_request)
    analysis = get_analysis(analysis_id)
    if not analysis:
        raise HTTPException(status_code=404, detail="Analysis not found")
    conversation = get_conversation(analysis["conversation_id"]) if analysis.get("conversation_id") else None
    if conversation is not None:
        session_id = read_session_id(raw_request)
        owns_session = bool(session_id) and conversation["session_id"] == session_id
        owns_account = conversation.get("user_id") == info.id
        if not owns_session and not owns_account:
            raise HTTPException(status_code=403, detail="Access denied")
    delete_analysis(analysis)
    return {"message": "Analysis deleted successfully"}


# Billing


@app.get("/api/billing/limits")
def billing_limits(raw_request: Request) -> dict[str, Any]:
    info = _require_user(raw_request)
    return {
        "plan": info.plan,
        "is_pro": info.is_pro,
        "plan_expires_at": _isoformat(info.plan_expires_at),
        **get_usage_snapshot(info.id, info.is_pro),
    }


@app.post("/api/billing/renewals/reminders")
def send_renewal_reminders(
    raw_request: Request,
    payload: RenewalReminderRequest | None = None,
) -> dict[str, int]:
    cron_secret = env("CRON_SECRET")
    if cron_secret:
        provided = raw_request.headers.get("authorization") or ""
        if not _secrets_match(provided, f"Bearer {cron_secret}"):
            raise HTTPException(status_code=401, detail="Unauthorized")

    options = payload or RenewalReminderRequest()
    candidates = get_users_due_for_renewal_reminder(options.days_before_expiry, options.limit)
    sent = 0
    for candidate in candidates:
        try:
            delivered = send_plan_renewal_reminder_email(
                email=candidate["email"],
                plan_name="Pro",
                expires_at=_email_date(candidate["plan_expires_at"]),
                renewal_url=plan_management_url(),
            )
        except Exception:
            logger.exception("Failed to send renewal reminder to user %s", candidate["id"])
            continue
        if not delivered:
            continue
        mark_renewal_reminder_sent(candidate["id"])
        sent += 1
    return {"reminders_sent": sent, "attempted": len(candidates)}


# Paystack


@app.post("/api/paystack/initialize")
def paystack_initialize(raw_request: Request) -> dict[str, Any]:
    info = _require_user(raw_request)
    if info.is_pro:
        raise HTTPException(status_code=400, detail="You already have an active Pro plan.")
    if not paystack_configured():
        raise HTTPException(status_code=500, detail="Paystack is not configured.")
    callback = callback_url()
    if not callback:
        raise HTTPException(
            status_code=500,
            detail="Set PAYSTACK_CALLBACK_URL or APP_URL for Paystack redirects.",
        )

    amount = pro_amount_minor()
    currency = pro_currency()
    try:
        checkout = initialize_transaction(
            email=info.email,
            amount=amount,
            reference=generate_reference(),
            callback_url=callback,
            metadata={"userId": info.id, "email": info.email, "plan": PLAN_PRO},
            plan_code=plan_code(),
            currency=currency,
        )
    except PaystackError as exc:
        raise _paystack_exception(exc) from exc

    insert_paystack_transaction(
        user_id=info.id,
        reference=checkout["reference"],
        authorization_url=checkout["authorization_url"],
        access_code=checkout["access_code"],
        amount=amount,
        currency=currency,
        metadata={"plan": PLAN_PRO},
    )
    return {"authorization_url": checkout["authorization_url"], "reference": checkout["reference"]}


@app.post("/api/paystack/verify")
def paystack_verify(payload: PaystackVerifyRequest, raw_request: Request) -> dict[str, Any]:
    info = _require_user(raw_request)
    reference = (payload.reference or "").strip()
    if not reference:
        raise HTTPException(status_code=400, detail="Payment reference is required.")

    transaction = get_paystack_transaction(reference)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    if transaction["user_id"] != info.id:
        raise HTTPException(status_code=403, detail="You are not allowed to verify this transaction.")
    if transaction.get("status") == "success":
        return {
            "success": True,
            "plan": info.plan,
            "plan_expires_at": _isoformat(info.plan_expires_at),
            "message": "Transaction already processed.",
        }

    try:
        verification = verify_transaction(reference)
    except PaystackError as exc:
        raise _paystack_exception(exc) from exc

    if verification["status"] != "success":
        raise HTTPException(
            status_code=400,
            detail="Payment not completed yet. Please finish the Paystack flow.",
        )
    if verification["amount"] != transaction["amount"]:
        logger.warning(
            "Amount mismatch for reference %s. Expected: %s, Received: %s",
            reference,
            transaction["amount"],
            verification["amount"],
        )
        raise HTTPException(status_code=400, detail="Payment amount mismatch. Please contact support.")
    expected_currency = (transaction.get("currency") or "NGN").upper()
    received_currency = (verification.get("currency") or "NGN").upper()
    if received_currency != expected_currency:
        logger.warning(
            "Currency mismatch for reference %s. Expected: %s, Received: %s",
            reference,
            expected_currency,
            received_currency,
        )
        raise HTTPException(status_code=400, detail="Payment currency mismatch. Please contact support.")

    if info.is_pro:
        update_paystack_transaction(
            reference,
            status=verification["status"],
            channel=verification.get("channel"),
            metadata=verification.get("metadata") or None,
        )
        return {
            "success": True,
            "plan": info.plan,
            "plan_expires_at": _isoformat(info.plan_expires_at),
            "message": "You already have an active Pro plan.",
        }

    expires_at = calculate_pro_expiry()
    applied = apply_paystack_payment(
        user_id=info.id,
        reference=reference,
        expires_at=expires_at,
        amount=verification["amount"],
        currency=received_currency,
        channel=verification.get("channel"),
        metadata=verification.get("metadata") or None,
        customer_code=verification.get("customer_code"),
        authorization_code=verification.get("authorization_code"),
    )
    if not applied:
        refreshed = get_user_plan_info(info.id) or info
        return {
            "success": True,
            "plan": refreshed.plan,
            "plan_expires_at": _isoformat(refreshed.plan_expires_at),
            "message": "Transaction already processed.",
        }

    logger.info("Pro plan activated for user %s via %s", info.id, reference)
    _notify(
        send_plan_activated_email,
        "plan activation",
        email=info.email,
        plan_name="Pro",
        amount=format_amount(verification["amount"], received_currency),
        reference=reference,
        expires_at=_email_date(expires_at),
        manage_url=plan_management_url(),
    )
    return {"success": True, "plan": PLAN_PRO, "plan_expires_at": expires_at.isoformat()}


def _handle_payment_success(event: str, data: dict[str, Any]) -> None:
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    user_id = metadata.get("userId")
    reference = data.get("reference")
    if not user_id or not reference:
        logger.warning("Paystack %s event without userId metadata or reference.", event)
        return

    existing = get_paystack_transaction(reference)
    if existing:
        if existing["user_id"] != user_id:
            logger.error(
                "UserId mismatch for reference %s. Expected: %s, Received: %s",
                reference,
                existing["user_id"],
                user_id,
            )
            return
        if existing.get("status") == "success":
            logger.info("Paystack reference %s already processed.", reference)
            return

    if data.get("status") != "success":
        logger.warning("Paystack %s event for %s with status %s.", event, reference, data.get("status"))
        return

    user = get_user_by_id(user_id)
    if not user:
        logger.warning("Paystack payment %s references unknown user %s.", reference, user_id)
        return

    customer = data.get("customer") or {}
    authorization = data.get("authorization") or {}
    currency = (data.get("currency") or "NGN").upper()
    amount = int(data.get("amount") or 0)
    expires_at = calculate_pro_expiry()
    applied = apply_paystack_payment(
        user_id=user_id,
        reference=reference,
        expires_at=expires_at,
        amount=amount,
        currency=currency,
        channel=data.get("channel"),
        metadata=metadata or None,
        customer_code=customer.get("customer_code"),
        authorization_code=authorization.get("authorization_code"),
    )
    if not applied:
        logger.info("Paystack reference %s already processed.", reference)
        return

    is_renewal = event == "invoice.payment_success"
    email = customer.get("email") or metadata.get("email") or user.get("email")
    amount_label = format_amount(amount, currency)
    logger.info("Pro plan activated for user %s via webhook %s", user_id, reference)
    if email:
        _notify(
            send_plan_activated_email,
            "plan activation",
            email=email,
            plan_name="Pro",
            amount=amount_label,
            reference=reference,
            expires_at=_email_date(expires_at),
            manage_url=plan_management_url(),
            is_renewal=is_renewal,
        )
    if is_renewal:
        _notify(
            send_auto_renewal_notification_email,
            "auto-renewal alert",
            customer_email=email or "unknown",
            plan_name="Pro",
            amount=amount_label,
            reference=reference,
            paid_at=data.get("paid_at") or data.get("paidAt"),
        )


@app.post("/api/paystack/webhook")
async def paystack_webhook(request: Request) -> dict[str, bool]:
    raw_body = await request.body()
    signature = request.headers.get("x-paystack-signature")
    if not paystack_configured() or not signature:
        raise HTTPException(status_code=400, detail="Missing Paystack configuration.")
    if not verify_webhook_signature(raw_body, signature):
        raise HTTPException(status_code=401, detail="Invalid signature.")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid payload.") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload.")

    event = str(payload.get("event") or "")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    try:
        if event in PAYMENT_SUCCESS_EVENTS:
            _handle_payment_success(event, data)
        elif event == "invoice.payment_failed":
            logger.warning("Paystack renewal payment failed: %s", data.get("reference"))
    except Exception as exc:
        logger.exception("Paystack webhook processing failed.")
        raise HTTPException(status_code=500, detail="Failed to process webhook.") from exc

    return {"received": True}


# Admin


@app.get("/api/admin/me")
def admin_me(raw_request: Request) -> dict[str, Any]:
    admin = _require_admin(raw_request, allow_dashboard_token=False)
    info = get_user_plan_info(admin["sub"])
    if info is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {
        "authenticated": True,
        "admin": True,
        "user": {"id": info.id, "email": info.email, "plan": info.plan, "is_pro": info.is_pro},
    }


@app.get("/api/admin/stats")
def admin_stats(raw_request: Request) -> dict[str, Any]:
    _require_admin(raw_request)
    now = _now_utc()
    usage_month = usage_month_key(now)
    overview = fetch_admin_overview(usage_month, now - timedelta(days=30))
    total_users = int(overview.get("total_users") or 0)
    pro_users = summarize_plans(overview.get("pro_rows") or [], now)["active_pro"]
    return {
        "stats": {
            "total_users": total_users,
            "pro_users": pro_users,
            "free_users": total_users - pro_users,
            "total_conversations": int(overview.get("total_conversations") or 0),
            "recent_users": int(overview.get("recent_users") or 0),
            "total_credits_used": int(overview.get("total_credits_used") or 0),
            "usage_month": usage_month,
        }
    }


@app.get("/api/admin/users")
def admin_users(
    raw_request: Request,
    search: str | None = None,
    plan: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict[str, Any]:
    _require_admin(raw_request)
    page = max(page, 1)
    limit = min(max(limit, 1), 200)
    rows, total = fetch_admin_users(
        usage_month=usage_month_key(),
        search=(search or "").strip() or None,
        plan_filter=plan if plan in PLANS else None,
        limit=limit,
        offset=(page - 1) * limit,
    )
    now = _now_utc()
    return {
        "users": [format_user_row(row, now) for row in rows],
        "pagination": pagination(page, limit, total),
    }


@app.patch("/api/admin/users/{user_id}/plan")
def admin_update_plan(
    user_id: str,
    payload: AdminPlanUpdateRequest,
    raw_request: Request,
) -> dict[str, Any]:
    _require_admin(raw_request)
    if payload.plan not in PLANS:
        raise HTTPException(status_code=400, detail="Invalid plan. Must be 'free' or 'pro'")
    if not get_user_by_id(user_id):
        raise HTTPException(status_code=404, detail="User not found")

    expires_at: datetime | None = None
    if payload.plan == PLAN_PRO:
        days = payload.duration_days if payload.duration_days is not None else 30
        expires_at = _now_utc() + timedelta(days=days) if days > 0 else None
    updated = update_user_plan(user_id, payload.plan, expires_at)
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Admin set plan %s for user %s", payload.plan, user_id)
    return {
        "success": True,
        "user": {
            "id": updated["id"],
            "email": updated["email"],
            "plan": updated["plan"],
            "plan_expires_at": _isoformat(updated.get("plan_expires_at")),
        },
    }


@app.get("/api/admin/conversations")
def admin_conversations(
    raw_request: Request,
    days: int = 30,
    page: int = 1,
    limit: int = 50,
) -> dict[str, Any]:
    _require_admin(raw_request)
    page = max(page, 1)
    limit = min(max(limit, 1), 200)
    since = (_now_utc() - timedelta(days=max(days, 0))).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    rows, total = fetch_admin_conversations(since=since, limit=limit, offset=(page - 1) * limit)
    return {
        "conversations": [format_conversation_row(row) for row in rows],
        "pagination": pagination(page, limit, total),
    }


@app.get("/api/admin/analytics")
def admin_analytics(raw_request: Request, days: int = 30) -> dict[str, Any]:
    _require_admin(raw_request)
    now = _now_utc()
    days = max(days, 0)
    start = (now - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
    end = now.replace(hour=23, minute=59, second=59, microsecond=999999)
    return summarize_analytics(fetch_analytics_source(start), days=days, start=start, end=end, now=now)


@app.get("/api/admin/credits")
def admin_credits(raw_request: Request) -> dict[str, Any]:
    expected = env("ADMIN_DASHBOARD_TOKEN")
    if not expected:
        raise HTTPException(
            status_code=500,
            detail="ADMIN_DASHBOARD_TOKEN is not configured on the server.",
        )
    provided = raw_request.headers.get("x-admin-token")
    if not provided or not _secrets_match(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized.")

    now = _now_utc()
    usage_month = usage_month_key(now)
    rows, _ = fetch_admin_users(
        usage_month=usage_month,
        search=None,
        plan_filter=None,
        limit=None,
        offset=0,
    )
    return {
        "usage_month": usage_month,
        "pro_credit_limit": PRO_MAX_CREDITS_PER_MONTH,
        "users": [format_user_row(row, now) for row in rows],
        "generated_at": now.isoformat(),
    }
