from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Perspective = Literal["their_messages", "my_messages", "both", "unsure"]
RelationshipType = Literal[
    "dating",
    "situationship",
    "friends",
    "family",
    "coworkers",
    "exes",
    "online_only",
    "other",
    "not_sure",
]
Gender = Literal["woman", "man", "non_binary", "queer", "prefer_not", "unknown"]
ClarificationArea = Literal[
    "perspective",
    "relationshipType",
    "userRole",
    "partnerRole",
    "userGender",
    "partnerGender",
]

DIAGNOSIS_MAX_LENGTH = 120


class ParticipantDescriptor(BaseModel):
    role: str | None = None
    gender: Gender | None = None


class ConversationContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    perspective: Perspective = "their_messages"
    relationship_type: RelationshipType | None = Field(default=None, alias="relationshipType")
    user: ParticipantDescriptor | None = None
    partner: ParticipantDescriptor | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class TextInput(BaseModel):
    type: Literal["text"]
    content: str


class ImageInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["image"]
    base64: str
    mime_type: str = Field(alias="mimeType")


AnalysisInput = Annotated[TextInput | ImageInput, Field(discriminator="type")]


class SuggestedReply(BaseModel):
    tone: str = ""
    text: str = ""
    explanation: str = ""


class AnalysisResult(BaseModel):
    cringe_score: int
    interest_level: int
    response_speed_rating: str = ""
    red_flags: list[str] = Field(default_factory=list)
    green_flags: list[str] = Field(default_factory=list)
    diagnosis: str
    detailed_analysis: str = ""
    suggested_replies: list[SuggestedReply] = Field(default_factory=list)

    @field_validator("cringe_score", "interest_level", mode="before")
    @classmethod
    def _clamp_percentage(cls, value: Any) -> int:
        try:
            number = int(round(float(value)))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, number))

    @field_validator("diagnosis", mode="before")
    @classmethod
    def _short_diagnosis(cls, value: Any) -> str:
        text = str(value or "").strip()
        if len(text) <= DIAGNOSIS_MAX_LENGTH:
            return text
        return text[: DIAGNOSIS_MAX_LENGTH - 3].rstrip() + "..."


class ClarificationQuestion(BaseModel):
    id: str
    area: ClarificationArea
    question: str
    helper_text: str | None = None
    required: bool = False
    suggested_answer: str | None = None


class ClarificationCheckResult(BaseModel):
    clarification_needed: bool = False
    rationale: str | None = None
    questions: list[ClarificationQuestion] = Field(default_factory=list)


class AnalyzeRequest(BaseModel):
    persona: str
    input: AnalysisInput
    conversation_id: str | None = None
    session_id: str | None = None
    update_analysis_id: str | None = None
    context: ConversationContext | None = None
    clarification_questions: list[ClarificationQuestion] | None = None
    clarification_answers: dict[str, str] | None = None


class AnalyzeResponse(AnalysisResult):
    analysis_id: str
    conversation_id: str
    session_id: str


class ClarifyRequest(BaseModel):
    persona: str
    input: AnalysisInput
    context: ConversationContext | None = None


class RegisterRequest(BaseModel):
    email: str = ""
    password: str = ""
    gender: str | None = None


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


class AuthResponse(BaseModel):
    token: str
    user: dict[str, Any]


class GenderUpdateRequest(BaseModel):
    gender: str | None = None


class ContextUpdateRequest(BaseModel):
    context: ConversationContext | None = None


class ChatRequest(BaseModel):
    message: str
    persona: str
    conversation_context: ConversationContext | None = None


class PaystackVerifyRequest(BaseModel):
    reference: str | None = None


class RenewalReminderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    days_before_expiry: int = Field(default=3, alias="daysBeforeExpiry")
    limit: int = Field(default=25, ge=1, le=500)


class AdminPlanUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan: str
    duration_days: int | None = Field(default=None, alias="durationDays")
