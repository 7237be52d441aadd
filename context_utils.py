from __future__ import annotations

from typing import Any

PERSPECTIVE_THEIR_MESSAGES = "their_messages"
PERSPECTIVE_MY_MESSAGES = "my_messages"
PERSPECTIVE_BOTH = "both"
PERSPECTIVE_UNSURE = "unsure"
PERSPECTIVES = (
    PERSPECTIVE_THEIR_MESSAGES,
    PERSPECTIVE_MY_MESSAGES,
    PERSPECTIVE_BOTH,
    PERSPECTIVE_UNSURE,
)

RELATIONSHIP_TYPES = (
    "dating",
    "situationship",
    "friends",
    "family",
    "coworkers",
    "exes",
    "online_only",
    "other",
    "not_sure",
)

GENDER_UNKNOWN = "unknown"
GENDERS = ("woman", "man", "non_binary", "queer", "prefer_not", GENDER_UNKNOWN)

CLARIFICATION_AREAS = (
    "perspective",
    "relationshipType",
    "userRole",
    "partnerRole",
    "userGender",
    "partnerGender",
)

PERSPECTIVE_NARRATIVE = {
    PERSPECTIVE_THEIR_MESSAGES: (
        "You are judging the OTHER person's messages to you. Highlight how their tone, "
        "pacing, and subtext land for you who received them."
    ),
    PERSPECTIVE_MY_MESSAGES: (
        "You are critiquing YOUR outgoing messages. Grade how they sound to the recipient "
        "and what energy you're giving."
    ),
    PERSPECTIVE_BOTH: (
        "You are weighing BOTH sides. Call out who sends each message and compare their "
        "energy to show the push/pull."
    ),
    PERSPECTIVE_UNSURE: (
        "You aren't sure whose messages are whose. Try to infer based on context and "
        "clearly label who seems to be speaking in each callout."
    ),
}

RELATIONSHIP_LABELS = {
    "dating": "Dating / romantic",
    "situationship": "Situationship / undefined romance",
    "friends": "Friends (platonic)",
    "family": "Family",
    "coworkers": "Coworkers / professional",
    "exes": "Exes / recently ended",
    "online_only": "Online-only connection",
    "other": "Other / custom",
    "not_sure": "Relationship unclear",
}

GENDER_LABELS = {
    "woman": "woman",
    "man": "man",
    "non_binary": "non-binary person",
    "queer": "queer / fluid identity",
    "prefer_not": "prefers not to say",
    GENDER_UNKNOWN: "unspecified",
}

CLARIFICATION_AREA_PROMPTS = {
    "perspective": "Clarify whether the user wants us to judge their messages, the other person's, or both.",
    "relationshipType": "Define the overall relationship dynamic (dating, coworkers, friends, etc.).",
    "userRole": "Describe how the user would label their own role in the dynamic.",
    "partnerRole": "Describe how the other person is labeled (e.g., manager, situationship).",
    "userGender": "Share how the user identifies, if relevant.",
    "partnerGender": "Share how the other person identifies, if relevant.",
}

PERSPECTIVE_OPTIONS = [
    {
        "value": PERSPECTIVE_THEIR_MESSAGES,
        "label": "Their replies",
        "description": "Grade how their messages land on you.",
    },
    {
        "value": PERSPECTIVE_MY_MESSAGES,
        "label": "My replies",
        "description": "Roast or refine what I sent.",
    },
    {
        "value": PERSPECTIVE_BOTH,
        "label": "Both sides",
        "description": "Compare our energies together.",
    },
    {
        "value": PERSPECTIVE_UNSURE,
        "label": "Not sure",
        "description": "Help me figure out who sounds off.",
    },
]

RELATIONSHIP_OPTIONS = [
    {"value": "dating", "label": "Dating / together"},
    {"value": "situationship", "label": "Situationship"},
    {"value": "exes", "label": "Exes / post-breakup"},
    {"value": "friends", "label": "Friends"},
    {"value": "coworkers", "label": "Coworkers"},
    {"value": "family", "label": "Family"},
    {"value": "online_only", "label": "Online-only"},
    {"value": "other", "label": "Other vibe"},
    {"value": "not_sure", "label": "Not sure yet"},
]

GENDER_OPTIONS = [
    {"value": "woman", "label": "Woman"},
    {"value": "man", "label": "Man"},
    {"value": "non_binary", "label": "Non-binary"},
    {"value": "queer", "label": "Queer / fluid"},
    {"value": "prefer_not", "label": "Prefer not to say"},
    {"value": GENDER_UNKNOWN, "label": "Unsure"},
]

ROLE_SUGGESTIONS = [
    "Girlfriend",
    "Boyfriend",
    "Partner",
    "Crush",
    "Spouse",
    "Best friend",
    "Coworker",
    "Manager",
    "Sibling",
    "Parent",
    "Situationship",
    "Other",
]

MESSAGE_PERSPECTIVE_TITLE = "Message perspective"
MESSAGE_PERSPECTIVE_DESCRIPTION = (
    "Tell us whose voice you want decoded. We'll reuse this context for every reply "
    "in this conversation."
)


def default_context() -> dict[str, Any]:
    return {"perspective": PERSPECTIVE_THEIR_MESSAGES}


def derive_context_value_for_area(context: dict[str, Any] | None, area: str) -> str | None:
    if not context:
        return None
    user = context.get("user") or {}
    partner = context.get("partner") or {}
    if area == "perspective":
        return context.get("perspective")
    if area == "relationshipType":
        return context.get("relationshipType")
    if area == "userRole":
        return user.get("role")
    if area == "partnerRole":
        return partner.get("role")
    if area == "userGender":
        return user.get("gender")
    if area == "partnerGender":
        return partner.get("gender")
    return None


def _clear_area(context: dict[str, Any], area: str) -> None:
    if area == "perspective":
        context["perspective"] = PERSPECTIVE_THEIR_MESSAGES
    elif area == "relationshipType":
        context.pop("relationshipType", None)
    elif area in {"userRole", "userGender"} and context.get("user"):
        context["user"].pop("role" if area == "userRole" else "gender", None)
    elif area in {"partnerRole", "partnerGender"} and context.get("partner"):
        context["partner"].pop("role" if area == "partnerRole" else "gender", None)


def apply_clarification_answers(
    base_context: dict[str, Any] | None,
    questions: list[dict[str, Any]],
    answers: dict[str, str],
) -> dict[str, Any]:
    """Return a new context with the answered clarification areas filled in.

    A blank answer clears its area; perspective falls back to their_messages.
    """
    base = base_context or default_context()
    context: dict[str, Any] = {key: value for key, value in base.items() if key not in {"user", "partner"}}
    context.setdefault("perspective", PERSPECTIVE_THEIR_MESSAGES)
    for side in ("user", "partner"):
        if base.get(side):
            context[side] = dict(base[side])

    for question in questions:
        area = question.get("area")
        value = (answers.get(question.get("id", "")) or "").strip()
        if not value:
            _clear_area(context, area)
            continue
        if area == "perspective":
            context["perspective"] = value
        elif area == "relationshipType":
            context["relationshipType"] = value
        elif area == "userRole":
            context["user"] = {**(context.get("user") or {}), "role": value}
        elif area == "partnerRole":
            context["partner"] = {**(context.get("partner") or {}), "role": value}
        elif area == "userGender":
            context["user"] = {**(context.get("user") or {}), "gender": value}
        elif area == "partnerGender":
            context["partner"] = {**(context.get("partner") or {}), "gender": value}

    for side in ("user", "partner"):
        if side in context and not context[side]:
            del context[side]
    return context


def _format_participant(label: str, descriptor: dict[str, Any] | None) -> str | None:
    if not descriptor:
        return None
    parts: list[str] = []
    if descriptor.get("role"):
        parts.append(descriptor["role"])
    gender = descriptor.get("gender")
    if gender and gender != GENDER_UNKNOWN:
        parts.append(GENDER_LABELS.get(gender, gender))
    if not parts:
        return None
    return f"{label}: {', '.join(parts)}"


def build_context_instruction(context: dict[str, Any] | None) -> str:
    if not context:
        return PERSPECTIVE_NARRATIVE[PERSPECTIVE_THEIR_MESSAGES]
    perspective = context.get("perspective") or PERSPECTIVE_THEIR_MESSAGES
    lines = [PERSPECTIVE_NARRATIVE.get(perspective, PERSPECTIVE_NARRATIVE[PERSPECTIVE_THEIR_MESSAGES])]
    relationship = context.get("relationshipType")
    if relationship:
        lines.append(f"Relationship snapshot: {RELATIONSHIP_LABELS.get(relationship, relationship)}.")
    user_line = _format_participant("User", context.get("user"))
    partner_line = _format_participant("Other person", context.get("partner"))
    if user_line:
        lines.append(user_line)
    if partner_line:
        lines.append(partner_line)
    return "\n".join(lines)


def describe_context_gaps(context: dict[str, Any] | None) -> list[str]:
    if not context:
        return ["No conversation context provided."]
    user = context.get("user") or {}
    partner = context.get("partner") or {}
    gaps: list[str] = []
    if not context.get("relationshipType"):
        gaps.append("relationshipType missing")
    if not user.get("role"):
        gaps.append("user role unknown")
    if not partner.get("role"):
        gaps.append("partner role unknown")
    if user.get("gender") in {None, "", GENDER_UNKNOWN}:
        gaps.append("user gender unspecified")
    if partner.get("gender") in {None, "", GENDER_UNKNOWN}:
        gaps.append("partner gender unspecified")
    if context.get("perspective") == PERSPECTIVE_UNSURE:
        gaps.append("perspective marked as unsure")
    return gaps
