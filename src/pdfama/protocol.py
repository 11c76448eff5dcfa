"""
Typed message envelope exchanged between the sidebar (UI), the background
router and the offscreen worker.

Every message carries ``type``, ``from``, ``to``, an optional document ``url``
and a type-specific ``data`` payload. The set of types is closed: anything else
is rejected at the router boundary before dispatch.
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class Component(str, Enum):
    SIDEBAR = "sidebar"
    BACKGROUND = "background"
    OFFSCREEN = "offscreen"


class MessageType(str, Enum):
    START_PROCESSING = "start-processing"
    ASK_QUESTION = "ask-question"
    TERMINATE_CHAT = "terminate-chat"
    REQUEST_BUFFERED_RESPONSE = "request-buffered-response"
    TAB_ACTIVATED = "tab-activated"
    TAB_DEACTIVATED = "tab-deactivated"
    SIDEBAR_LOADED = "sidebar-loaded"
    PDF_ACTIVATED = "pdf-activated"
    NOT_PDF = "not-pdf"
    STATUS_UPDATE = "status-update"
    INIT_CHAT = "init-chat"
    AMA_CHUNK = "ama-chunk"
    AMA_COMPLETE = "ama-complete"
    AMA_COMPLETE_BUFFERED = "ama-complete-buffered"
    AMA_TERMINATED = "ama-terminated"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class QuestionData(_Payload):
    question: str = Field(..., min_length=1)


class StatusData(_Payload):
    message: str


class ChunkData(_Payload):
    chunk: str


class HistoryItem(_Payload):
    role: Literal["user", "assistant", "model"]
    content: str


class HistoryData(_Payload):
    history: list[HistoryItem] = Field(default_factory=list)


class ErrorData(_Payload):
    message: str


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

class _Envelope(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    sender: Component = Field(alias="from")
    to: Component
    url: str | None = None


class _Bare(_Envelope):
    """Envelope whose `data` carries nothing the receiver reads."""

    data: dict[str, Any] | None = None


class StartProcessing(_Bare):
    type: Literal["start-processing"] = "start-processing"
    sender: Component = Field(Component.SIDEBAR, alias="from")
    to: Component = Component.OFFSCREEN


class AskQuestion(_Envelope):
    type: Literal["ask-question"] = "ask-question"
    sender: Component = Field(Component.SIDEBAR, alias="from")
    to: Component = Component.OFFSCREEN
    data: QuestionData


class TerminateChat(_Bare):
    type: Literal["terminate-chat"] = "terminate-chat"
    sender: Component = Field(Component.SIDEBAR, alias="from")
    to: Component = Component.OFFSCREEN


class RequestBufferedResponse(_Bare):
    type: Literal["request-buffered-response"] = "request-buffered-response"
    sender: Component = Field(Component.SIDEBAR, alias="from")
    to: Component = Component.BACKGROUND


class SidebarLoaded(_Bare):
    type: Literal["sidebar-loaded"] = "sidebar-loaded"
    sender: Component = Field(Component.SIDEBAR, alias="from")
    to: Component = Component.BACKGROUND


class TabActivated(_Bare):
    type: Literal["tab-activated"] = "tab-activated"
    sender: Component = Field(Component.BACKGROUND, alias="from")
    to: Component = Component.OFFSCREEN


class TabDeactivated(_Bare):
    type: Literal["tab-deactivated"] = "tab-deactivated"
    sender: Component = Field(Component.BACKGROUND, alias="from")
    to: Component = Component.OFFSCREEN


class PdfActivated(_Bare):
    type: Literal["pdf-activated"] = "pdf-activated"
    sender: Component = Field(Component.BACKGROUND, alias="from")
    to: Component = Component.SIDEBAR


class NotPdf(_Bare):
    type: Literal["not-pdf"] = "not-pdf"
    sender: Component = Field(Component.BACKGROUND, alias="from")
    to: Component = Component.SIDEBAR


class StatusUpdate(_Envelope):
    type: Literal["status-update"] = "status-update"
    sender: Component = Field(Component.OFFSCREEN, alias="from")
    to: Component = Component.SIDEBAR
    data: StatusData


class InitChat(_Envelope):
    type: Literal["init-chat"] = "init-chat"
    sender: Component = Field(Component.OFFSCREEN, alias="from")
    to: Component = Component.SIDEBAR
    data: HistoryData = Field(default_factory=HistoryData)


class AmaChunk(_Envelope):
    type: Literal["ama-chunk"] = "ama-chunk"
    sender: Component = Field(Component.OFFSCREEN, alias="from")
    to: Component = Component.SIDEBAR
    data: ChunkData


class AmaComplete(_Bare):
    type: Literal["ama-complete"] = "ama-complete"
    sender: Component = Field(Component.OFFSCREEN, alias="from")
    to: Component = Component.SIDEBAR


class AmaCompleteBuffered(_Bare):
    type: Literal["ama-complete-buffered"] = "ama-complete-buffered"
    sender: Component = Field(Component.BACKGROUND, alias="from")
    to: Component = Component.SIDEBAR


class AmaTerminated(_Bare):
    type: Literal["ama-terminated"] = "ama-terminated"
    sender: Component = Field(Component.OFFSCREEN, alias="from")
    to: Component = Component.SIDEBAR


class ErrorMessage(_Envelope):
    type: Literal["error"] = "error"
    sender: Component = Field(Component.OFFSCREEN, alias="from")
    to: Component = Component.SIDEBAR
    data: ErrorData


Message = Annotated[
    Union[
        StartProcessing,
        AskQuestion,
        TerminateChat,
        RequestBufferedResponse,
        SidebarLoaded,
        TabActivated,
        TabDeactivated,
        PdfActivated,
        NotPdf,
        StatusUpdate,
        InitChat,
        AmaChunk,
        AmaComplete,
        AmaCompleteBuffered,
        AmaTerminated,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter[Message] = TypeAdapter(Message)


def parse_message(raw: Any) -> Message:
    """Validates a raw envelope (dict) or passes through an already typed message."""
    if isinstance(raw, _Envelope):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError("Message must be a JSON object", details={"type": type(raw).__name__})
    if raw.get("to") is None:
        raise ValidationError("Message has no recipient", field="to", details={"type": raw.get("type")})
    try:
        return _MESSAGE_ADAPTER.validate_python(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Malformed message",
            field="type",
            details={"type": raw.get("type"), "errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def to_wire(message: Message) -> dict[str, Any]:
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)


def status(url: str | None, message: str) -> StatusUpdate:
    return StatusUpdate(url=url, data=StatusData(message=message))


def error(url: str | None, message: str) -> ErrorMessage:
    return ErrorMessage(url=url, data=ErrorData(message=message))
