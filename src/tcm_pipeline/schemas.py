from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .contracts import Attachment, Message
from .prompts import normalize_language

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?;base64,(?P<data>.*)$", re.DOTALL)


def parse_media(value: str, default_mime_type: str) -> Attachment:
    """Accept a ``data:`` URL or bare base64 string."""
    match = _DATA_URL_RE.match(value.strip())
    if match:
        return Attachment(mime_type=match.group("mime") or default_mime_type, data=match.group("data"))
    return Attachment(mime_type=default_mime_type, data=value.strip())


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    language: str = "en"

    @field_validator("language", mode="before")
    @classmethod
    def _normalize_language(cls, v: Any) -> str:
        return normalize_language(v if isinstance(v, str) else None)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str

    def to_message(self) -> Message:
        return Message(role=self.role, content=self.content)


def to_messages(messages: list[ChatMessage]) -> tuple[Message, ...]:
    return tuple(m.to_message() for m in messages)


class ChatRequest(_Body):
    messages: list[ChatMessage] = Field(min_length=1)
    basic_info: dict[str, Any] | None = Field(default=None, alias="basicInfo")
    doctor_level: str | None = Field(default=None, alias="doctorLevel")


class AnalyzeImageRequest(_Body):
    image: str | None = None
    type: str = "tongue"
    symptoms: str | None = None
    main_complaint: str | None = Field(default=None, alias="mainComplaint")


class AnalyzeAudioRequest(_Body):
    audio: str | None = None


class SummarizeInquiryRequest(_Body):
    chat_history: list[ChatMessage] = Field(default_factory=list, alias="chatHistory")
    report_files: list[dict[str, Any]] = Field(default_factory=list, alias="reportFiles")
    medicine_files: list[dict[str, Any]] = Field(default_factory=list, alias="medicineFiles")
    basic_info: dict[str, Any] | None = Field(default=None, alias="basicInfo")
    model: str | None = None
    doctor_level: str | None = Field(default=None, alias="doctorLevel")


class _Section(BaseModel):
    model_config = ConfigDict(extra="allow")


class InquirySection(_Section):
    inquiry_text: str | None = Field(default=None, alias="inquiryText")


class ChatSection(_Section):
    chat: list[ChatMessage] = Field(default_factory=list)


class ConsultData(BaseModel):
    """Data collected by the intake wizard. Unknown sections are kept as-is."""

    model_config = ConfigDict(extra="allow")

    basic_info: dict[str, Any] | None = None
    verified_summaries: dict[str, Any] | None = None
    wen_inquiry: InquirySection | None = None
    wen_chat: ChatSection | None = None
    wen_audio: dict[str, Any] | None = None
    qie: dict[str, Any] | None = None
    wang_tongue: dict[str, Any] | None = None
    wang_face: dict[str, Any] | None = None
    wang_part: dict[str, Any] | None = None
    smart_connect: dict[str, Any] | None = None
    report_options: dict[str, Any] | None = None

    def to_context(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ConsultRequest(_Body):
    data: ConsultData
    prompt: str | None = None
    model: str | None = None


class ReportChatRequest(_Body):
    messages: list[ChatMessage] = Field(min_length=1)
    report_data: dict[str, Any] | None = Field(default=None, alias="reportData")
    patient_info: dict[str, Any] | None = Field(default=None, alias="patientInfo")
    model: str | None = None


class ErrorBody(BaseModel):
    message: str
    type: str = "api_error"
    code: str | None = None
    request_id: str | None = None


class ErrorResponse(BaseModel):
    error: ErrorBody


def make_error_response(
    *,
    message: str,
    type: str = "api_error",
    code: str | None = None,
    request_id: str | None = None,
) -> ErrorResponse:
    return ErrorResponse(error=ErrorBody(message=message, type=type, code=code, request_id=request_id))
