"""
Exception hierarchy for the document Q&A engine.

Every error carries a human-readable message plus optional context used in
structured log events and in `error` messages sent back to the UI.
"""
from __future__ import annotations

from typing import Any


class PdfAmaError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, "details": dict(self.details)}


class ValidationError(PdfAmaError):
    """Malformed store mutation, splitter configuration or message envelope."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details)


class TransientIOError(PdfAmaError):
    """Storage or channel temporarily unavailable. Surfaced, never retried internally."""


class ModelUnavailableError(PdfAmaError):
    """The embedder or generative model is not ready."""

    def __init__(self, model: str, reason: str, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        details["model"] = model
        super().__init__(f"AI model not available: {reason}", details)


class PartialIndexError(PdfAmaError):
    """Indexing stopped before every chunk of a document was stored."""

    def __init__(self, document_id: str, stored: int, expected: int) -> None:
        super().__init__(
            f"Indexing interrupted after {stored} of {expected} chunks",
            {"document_id": document_id, "stored": stored, "expected": expected},
        )


class SessionNotFoundError(PdfAmaError):
    """No persisted session exists for a document."""

    def __init__(self, url: str) -> None:
        super().__init__("Session not found.", {"url": url})


class GenerationCancelled(PdfAmaError):
    """Cooperative interrupt raised when a generation's token is cancelled. Not a failure."""

    def __init__(self, url: str | None = None) -> None:
        super().__init__("Generation cancelled", {"url": url} if url else None)
