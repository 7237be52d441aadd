from __future__ import annotations

import inspect
import json
import logging
import os
import re
from functools import lru_cache
from typing import Any, TYPE_CHECKING

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError

from config import env
from context_utils import (
    CLARIFICATION_AREA_PROMPTS,
    build_context_instruction,
    derive_context_value_for_area,
    describe_context_gaps,
)
from schemas import (
    AnalysisResult,
    ClarificationCheckResult,
    ClarificationQuestion,
    ImageInput,
    TextInput,
)
from whatsapp import add_whatsapp_quote_context, normalize_whatsapp_quotes

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI

logger = logging.getLogger("textopsy.analysis")

PERSONA_INSTRUCTIONS = {
    "Brutal Best Friend": "Be honest, slightly mean, protective, with modern slang.",
    "Empathetic Therapist": "Clinical but warm, focused on attachment styles and boundaries.",
    "Toxic Ex": "Chaotic, manipulative, self-centered and sarcastic.",
    "FBI Behavioral Analyst": "Analytical, detached, behavioral profiling tone.",
    "Gen Z Roaster": "Brainrot slang, ruthless, internet-native humor.",
    "Charismatic Flirt Coach": (
        "High-energy hype friend, flirty compliments plus confident but respectful playbook."
    ),
}
PERSONAS = tuple(PERSONA_INSTRUCTIONS)

ANALYSIS_TEMPERATURE = 0.7
CLARIFY_TEMPERATURE = 0.1
CHAT_TEMPERATURE = 0.9
CHAT_MAX_TOKENS = 1000
CHAT_HISTORY_WINDOW = 10
CLARIFICATION_MAX_PREVIEW = 6000
CLARIFICATION_MAX_QUESTIONS = 2

INPUT_SEPARATOR = "\n\n--- Additional Context ---\n\n"
IMAGE_PLACEHOLDER = "[Image added to conversation]"

PAST_EVIDENCE_START = "=== PAST CONVERSATION EVIDENCE ==="
PAST_EVIDENCE_END = "=== END PAST CONVERSATION EVIDENCE ==="
PAST_INPUTS_START = "=== PAST CONVERSATION INPUTS ==="
PAST_INPUTS_END = "=== END PAST CONVERSATION INPUTS ==="
LATEST_ADDITION = "--- Latest Addition ---"
ORIGINAL_INPUT = "--- Original Input ---"

ANALYSIS_SCHEMA = """
Return JSON with this schema:
{
  "cringe_score": 0,
  "interest_level": 0,
  "response_speed_rating": "...",
  "red_flags": ["..."],
  "green_flags": ["..."],
  "diagnosis": "...",
  "detailed_analysis": "...",
  "suggested_replies": [{"tone": "...", "text": "...", "explanation": "..."}]
}
""".strip()

CLARIFICATION_SCHEMA = """
Return JSON with this schema:
{
  "clarification_needed": false,
  "rationale": "...",
  "questions": [
    {
      "id": "...",
      "area": "perspective | relationshipType | userRole | partnerRole | userGender | partnerGender",
      "question": "...",
      "helper_text": "...",
      "required": false,
      "suggested_answer": "..."
    }
  ]
}
""".strip()

SCREENSHOT_EXTRACTION_STEPS = """STEP 1 - Extract and Structure Messages:
First, carefully examine the conversation screenshot and extract ALL messages in order:
- Identify each message's position: LEFT side (usually from the other person) or RIGHT side (usually from you)
- Extract the complete text of each message
- Identify any quoted/forwarded messages (look for "PersonName" wrote: patterns or forward indicators)
- Note timestamps if visible
- Structure them clearly before analysis

Output the structured conversation like this:
[LEFT] Message text here
[RIGHT] Message text here
[LEFT] "QuotedName" wrote: [quoted message text]
        Reply to the quote here
[RIGHT] Another message

STEP 2 - Perform Analysis:
"""

SECOND_PERSON = (
    "Write in second person (use 'your', 'you') when addressing the person reading the analysis."
)

_EVIDENCE_BLOCK = re.compile(
    re.escape(PAST_EVIDENCE_START) + r".*?" + re.escape(PAST_EVIDENCE_END), re.DOTALL
)
_INPUTS_BLOCK = re.compile(re.escape(PAST_INPUTS_START) + r".*?" + re.escape(PAST_INPUTS_END), re.DOTALL)
_QUESTION_PATTERN = re.compile(
    r"[?]|^(what|how|why|when|where|who|which|explain|analyze|interpret|what's|what do)",
    re.IGNORECASE,
)


class AnalysisError(RuntimeError):
    """Raised when the language model is unavailable or returns unusable output."""


def is_valid_persona(persona: str | None) -> bool:
    return persona in PERSONA_INSTRUCTIONS


def _llm_kwargs(
    api_key: str,
    model: str,
    base_url: str,
    temperature: float,
    max_tokens: int | None,
    headers: dict[str, str],
) -> dict:
    from langchain_openai import ChatOpenAI

    params = inspect.signature(ChatOpenAI.__init__).parameters
    kwargs: dict[str, object] = {"model": model}

    if "api_key" in params:
        kwargs["api_key"] = api_key
    if "openai_api_key" in params:
        kwargs["openai_api_key"] = api_key
    if "base_url" in params:
        kwargs["base_url"] = base_url
    if "openai_api_base" in params:
        kwargs["openai_api_base"] = base_url
    if "temperature" in params:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        if "max_tokens" in params:
            kwargs["max_tokens"] = max_tokens
        elif "max_completion_tokens" in params:
            kwargs["max_completion_tokens"] = max_tokens
    if headers and "default_headers" in params:
        kwargs["default_headers"] = headers

    return kwargs


@lru_cache(maxsize=8)
def _get_llm(temperature: float, max_tokens: int | None = None) -> "ChatOpenAI":
    from langchain_openai import ChatOpenAI

    api_key = env("OPENROUTER_API_KEY")
    if not api_key:
        raise RuntimeError("OPENROUTER_API_KEY is not set.")

    model = env("OPENROUTER_MODEL", "openai/gpt-4o-mini")
    base_url = env("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")

    headers: dict[str, str] = {}
    app_url = env("OPENROUTER_APP_URL")
    app_name = env("OPENROUTER_APP_NAME", "Textopsy")
    if app_url:
        headers["HTTP-Referer"] = app_url
    if app_name:
        headers["X-Title"] = app_name

    os.environ.setdefault("OPENAI_API_KEY", api_key)
    os.environ.setdefault("OPENAI_BASE_URL", base_url)
    os.environ.setdefault("OPENAI_API_BASE", base_url)

    return ChatOpenAI(
        **_llm_kwargs(
            api_key=api_key,
            model=model,
            base_url=base_url,
            temperature=temperature,
            max_tokens=max_tokens,
            headers=headers,
        )
    )


def _invoke(messages: list, temperature: float, max_tokens: int | None = None) -> str:
    try:
        llm = _get_llm(temperature, max_tokens)
    except RuntimeError as exc:
        raise AnalysisError(str(exc)) from exc
    try:
        response = llm.invoke(messages)
    except Exception as exc:
        logger.exception("Language model call failed.")
        raise AnalysisError("The analysis service is unavailable. Please try again.") from exc
    content = getattr(response, "content", None)
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return content or ""


def _extract_json(text: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if not match:
            raise ValueError("Unable to parse JSON from model response.")
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object.")
    return data


def _image_part(image: ImageInput) -> dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{image.mime_type};base64,{image.base64}"},
    }


def _text_part(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def accumulate_inputs(inputs: list[dict[str, Any]]) -> str:
    """Join stored conversation inputs, in order, into one evidence transcript."""
    parts: list[str] = []
    for row in inputs:
        if row.get("input_type") == "text" and row.get("input_text"):
            parts.append(row["input_text"])
        elif row.get("input_type") == "image":
            parts.append(IMAGE_PLACEHOLDER)
    return INPUT_SEPARATOR.join(parts)


def build_past_evidence(analyses: list[dict[str, Any]], exclude_id: str | None = None) -> str:
    """Summarise prior analyses (newest first) as an evidence block for the model."""
    rows = [row for row in analyses if row.get("id") != exclude_id]
    if not rows:
        return ""
    lines = [PAST_EVIDENCE_START, ""]
    total = len(rows)
    for index, row in enumerate(rows):
        lines.append(f"--- Previous Analysis #{total - index} ({row.get('persona')}) ---")
        lines.append(f"Diagnosis: {row.get('diagnosis')}")
        lines.append(f"Interest Level: {row.get('interest_level')}%")
        lines.append(f"Cringe Score: {row.get('cringe_score')}%")
        if row.get("detailed_analysis"):
            lines.append(f"Analysis: {row['detailed_analysis']}")
        lines.append("")
    lines.append(PAST_EVIDENCE_END)
    lines.append("")
    return "\n".join(lines)


def build_full_context(evidence: str, accumulated: str) -> str:
    if not evidence:
        return accumulated
    return (
        f"{evidence}\n\n{PAST_INPUTS_START}\n\n{accumulated}\n\n{PAST_INPUTS_END}\n\n"
    )


def combine_with_latest(full_context: str, content: str, label: str = LATEST_ADDITION) -> str:
    return f"{full_context}\n\n{label}\n\n{content}"


def _strip_evidence(text: str) -> str:
    text = _EVIDENCE_BLOCK.sub("", text)
    text = _INPUTS_BLOCK.sub("", text)
    return text.replace(LATEST_ADDITION, "").replace(ORIGINAL_INPUT, "").strip()


def _analysis_parts(analysis_input: TextInput | ImageInput, context_text: str | None) -> list:
    if isinstance(analysis_input, ImageInput):
        if context_text:
            normalized = normalize_whatsapp_quotes(context_text)
            lead = add_whatsapp_quote_context(f"{normalized}\n\n--- New Screenshot ---\n\n")
            instruction = (
                "Now perform a Textopsy on this structured conversation, considering the past "
                "conversation evidence and inputs provided above."
            )
        else:
            lead = add_whatsapp_quote_context("")
            instruction = "Now perform a Textopsy on this structured conversation."
        prompt = (
            f"{SCREENSHOT_EXTRACTION_STEPS}{instruction}\n"
            "Use the message alignment (LEFT/RIGHT) and quote identification to correctly "
            "attribute messages to their actual senders.\n"
            f"{SECOND_PERSON}\nGive me the raw truth."
        )
        return [_text_part(lead), _image_part(analysis_input), _text_part(prompt)]

    normalized = normalize_whatsapp_quotes(analysis_input.content)
    clean_text = _strip_evidence(normalized)
    is_question = bool(_QUESTION_PATTERN.search(clean_text))
    has_history = PAST_EVIDENCE_START in normalized or bool(context_text)

    if has_history and is_question:
        if context_text:
            body = f"{normalize_whatsapp_quotes(context_text)}\n\n--- User Question ---\n\n{clean_text}"
        else:
            body = normalized
        prompt = (
            f'You are asking: "{clean_text}"\n\n'
            "Perform a Textopsy analysis considering the past conversation evidence and inputs "
            "provided above. Answer your question based on the evidence. Provide a full analysis "
            "with all the standard Textopsy components (diagnosis, scores, flags, etc.) but tailor "
            "the diagnosis and detailed analysis to directly address your question. "
            f"{SECOND_PERSON} Give me the raw truth."
        )
    elif has_history:
        if context_text:
            body = f"{normalize_whatsapp_quotes(context_text)}\n\n--- New Evidence ---\n\n{normalized}"
        else:
            body = normalized
        prompt = (
            "Perform a Textopsy on this text transcript, considering the past conversation "
            f"evidence and inputs provided above. {SECOND_PERSON} Give me the raw truth."
        )
    elif is_question:
        body = normalized
        prompt = (
            f'You are asking: "{clean_text}"\n\n'
            "However, there's no conversation evidence to analyze. Perform a Textopsy analysis "
            "if there's any conversation data in the input, otherwise indicate that evidence is "
            f"needed. {SECOND_PERSON}"
        )
    else:
        body = normalized
        prompt = f"Perform a Textopsy on this text transcript. {SECOND_PERSON} Give me the raw truth."

    return [_text_part(add_whatsapp_quote_context(body)), _text_part(prompt)]


def _analysis_system_prompt(persona: str, context: dict[str, Any] | None) -> str:
    return f"""
You are Textopsy, an expert text-message analyst.
Adopt the persona: {persona}.
{PERSONA_INSTRUCTIONS[persona]}

{build_context_instruction(context)}

Focus on ratio of messages, emoji presence, time gaps, punctuation aggression, and filler words.

Screenshots: identify message alignment first. LEFT messages are usually from the other person,
RIGHT messages are usually from you. Extract every message in order with [LEFT]/[RIGHT] markers.
A quoted name ("PersonName" wrote: ...) inside a message does NOT make that person the sender;
the alignment shows who sent the message containing the quote.

Write all analysis in second person ("your", "you"), directly addressing the reader.
Say "Your responses were good", never "the user's responses were good".

Rules:
- diagnosis is a SHORT 1-2 line punchline (max 120 characters). Witty, direct, memorable.
- detailed_analysis holds the full breakdown. Second person throughout.
- cringe_score is an integer 0-100 (0 = not cringe, 100 = maximum cringe).
- interest_level is an integer 0-100 (0 = no interest, 100 = maximum interest).
- Return ONE JSON object only. No markdown or extra text.

{ANALYSIS_SCHEMA}
""".strip()


def analyze_conversation(
    analysis_input: TextInput | ImageInput,
    persona: str,
    context: dict[str, Any] | None = None,
    context_text: str | None = None,
) -> AnalysisResult:
    """Run a persona-framed analysis of a text excerpt or screenshot."""
    if not is_valid_persona(persona):
        raise ValueError(f"Unknown persona: {persona}")
    messages = [
        SystemMessage(content=_analysis_system_prompt(persona, context)),
        HumanMessage(content=_analysis_parts(analysis_input, context_text)),
    ]
    raw = _invoke(messages, ANALYSIS_TEMPERATURE)
    try:
        return AnalysisResult.model_validate(_extract_json(raw))
    except (ValueError, ValidationError) as exc:
        logger.error("Unusable analysis response from model: %s", raw[:500])
        raise AnalysisError("Invalid response format from model.") from exc


def _truncate_preview(content: str, limit: int = CLARIFICATION_MAX_PREVIEW) -> str:
    if len(content) <= limit:
        return content
    return content[-limit:]


def _clarify_system_prompt(context: dict[str, Any] | None) -> str:
    gaps = describe_context_gaps(context)
    allowed = "\n".join(f"- {area}: {detail}" for area, detail in CLARIFICATION_AREA_PROMPTS.items())
    return f"""
You are Textopsy's intake triage specialist.
Decide if we MUST ask the user clarifying questions before full analysis.

Current context (if any):
{build_context_instruction(context) if context else "None provided yet."}

Potential gaps noticed: {", ".join(gaps) if gaps else "none"}

Allowed follow-up areas:
{allowed}

WhatsApp quotes appear as "PersonName" wrote: [quoted message] and may be marked with
[QUOTED FROM PersonName] ... [END QUOTE]. A quoted name does not make that person the sender.

Rules:
- Only ask about the allowed areas above.
- Max {CLARIFICATION_MAX_QUESTIONS} questions.
- If everything essential is present, respond with clarification_needed=false.
- Prefer clarity over quantity; skip obvious or already provided details.
- If gender is unclear for BOTH people, ask about userGender AND partnerGender as separate questions.

{CLARIFICATION_SCHEMA}
""".strip()


def _clarify_parts(analysis_input: TextInput | ImageInput) -> list:
    if isinstance(analysis_input, ImageInput):
        return [
            _text_part(
                "User provided a screenshot of the conversation.\n\n"
                "For screenshots:\n"
                "1. Identify message alignment: LEFT side (usually other person) vs RIGHT side (usually user)\n"
                "2. Extract ALL messages in order with their position markers [LEFT] or [RIGHT]\n"
                "3. Identify quoted messages; alignment shows who sent the message, not quoted names\n"
                "4. Structure clearly before determining clarification needs."
            ),
            _image_part(analysis_input),
        ]
    preview = _truncate_preview(normalize_whatsapp_quotes(analysis_input.content))
    return [_text_part(f"=== Conversation Preview ===\n{preview}\n=== End Preview ===")]


def filter_clarification_questions(
    raw_questions: list[Any],
    context: dict[str, Any] | None,
) -> list[ClarificationQuestion]:
    """Keep at most two well-formed questions about allowed areas, one per area."""
    questions: list[ClarificationQuestion] = []
    seen_areas: set[str] = set()
    for index, raw in enumerate(raw_questions):
        if not isinstance(raw, dict):
            continue
        data = dict(raw)
        data.setdefault("id", f"q{index + 1}")
        try:
            question = ClarificationQuestion.model_validate(data)
        except ValidationError:
            logger.warning("Dropping malformed clarification question: %s", raw)
            continue
        if question.area in seen_areas:
            continue
        if not question.suggested_answer:
            question.suggested_answer = derive_context_value_for_area(context, question.area)
        seen_areas.add(question.area)
        questions.append(question)
        if len(questions) >= CLARIFICATION_MAX_QUESTIONS:
            break
    return questions


def assess_clarification_needs(
    analysis_input: TextInput | ImageInput,
    context: dict[str, Any] | None = None,
) -> ClarificationCheckResult:
    messages = [
        SystemMessage(content=_clarify_system_prompt(context)),
        HumanMessage(content=_clarify_parts(analysis_input)),
    ]
    raw = _invoke(messages, CLARIFY_TEMPERATURE)
    if not raw.strip():
        return ClarificationCheckResult(clarification_needed=False, questions=[])
    try:
        data = _extract_json(raw)
    except ValueError as exc:
        raise AnalysisError("Invalid response format from model.") from exc

    raw_questions = data.get("questions")
    questions = filter_clarification_questions(
        raw_questions if isinstance(raw_questions, list) else [], context
    )
    rationale = data.get("rationale")
    return ClarificationCheckResult(
        clarification_needed=bool(data.get("clarification_needed")) and bool(questions),
        rationale=str(rationale) if rationale is not None else None,
        questions=questions,
    )


def _previous_analyses_block(previous: list[dict[str, Any]]) -> str:
    if not previous:
        return ""
    lines = ["=== PREVIOUS ANALYSES ===", ""]
    total = len(previous)
    for index, row in enumerate(previous):
        lines.append(f"--- Analysis #{total - index} ({row.get('persona')}) ---")
        lines.append(f"Diagnosis: {row.get('diagnosis')}")
        if row.get("interest_level") is not None:
            lines.append(f"Interest Level: {row['interest_level']}%")
        if row.get("cringe_score") is not None:
            lines.append(f"Cringe Score: {row['cringe_score']}%")
        lines.append(f"Analysis: {row.get('detailed_analysis')}")
        lines.append("")
    lines.append("=== END PREVIOUS ANALYSES ===")
    return "\n".join(lines) + "\n\n"


def _chat_history_block(history: list[dict[str, Any]]) -> str:
    if not history:
        return ""
    lines = ["=== CHAT HISTORY ===", ""]
    for message in history[-CHAT_HISTORY_WINDOW:]:
        speaker = "User" if message.get("role") == "user" else "You"
        lines.append(f"{speaker}: {message.get('content')}")
    lines.append("")
    lines.append("=== END CHAT HISTORY ===")
    return "\n".join(lines) + "\n\n"


def generate_conversational_response(
    message: str,
    persona: str,
    context: dict[str, Any] | None = None,
    chat_history: list[dict[str, Any]] | None = None,
    previous_analyses: list[dict[str, Any]] | None = None,
    evidence: str | None = None,
) -> str:
    """Reply in character to a follow-up question about an analysed conversation."""
    if not is_valid_persona(persona):
        raise ValueError(f"Unknown persona: {persona}")

    evidence_block = ""
    if evidence and evidence.strip():
        evidence_block = (
            "=== CONVERSATION EVIDENCE ===\n\n"
            f"{evidence.strip()}\n\n=== END CONVERSATION EVIDENCE ===\n\n"
        )

    system_prompt = (
        f"You are responding as a {persona} in a conversational style (NOT as an analysis).\n"
        f"Persona style: {PERSONA_INSTRUCTIONS[persona]}\n\n"
        f"{build_context_instruction(context)}\n\n"
        "The user is asking about their conversation or relationship situation. You have access to "
        "previous analyses of their conversations, the conversation evidence that was analysed, and "
        "the chat history with them.\n"
        "Respond naturally and in character. Reference specific details from the evidence or analyses "
        "when relevant. Do NOT use an analysis format; just chat."
    )
    prompt = (
        f"{_previous_analyses_block(previous_analyses or [])}"
        f"{evidence_block}"
        f"{_chat_history_block(chat_history or [])}"
        f'Current user message: "{message}"'
    )
    reply = _invoke(
        [SystemMessage(content=system_prompt), HumanMessage(content=prompt)],
        CHAT_TEMPERATURE,
        CHAT_MAX_TOKENS,
    ).strip()
    return reply or "Sorry, I couldn't generate a response."
