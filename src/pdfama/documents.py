"""
Document identity and intake: which locations are documents, how to name them,
how to fetch their bytes and how to turn those bytes into plain text.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit, urlunsplit
from urllib.request import url2pathname

import fitz
import httpx

from .config import FETCH_TIMEOUT_S
from .errors import TransientIOError, ValidationError
from .observability import get_logger

logger = get_logger(__name__)

_REMOTE_SCHEMES = {"http", "https"}


def canonical_document_id(location: str) -> str:
    """Returns the identity of the document at `location`: its URL without fragment."""
    raw = str(location or "").strip()
    if not raw:
        raise ValidationError("Document location is empty", field="url")
    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme in _REMOTE_SCHEMES or scheme == "file":
        return urlunsplit((scheme, parts.netloc.lower(), parts.path, parts.query, ""))
    # Bare filesystem path (a one-letter scheme is a Windows drive).
    return Path(raw).expanduser().resolve().as_uri()


def is_document_url(location: str | None) -> bool:
    if not location:
        return False
    return urlsplit(str(location)).path.lower().endswith(".pdf")


class DocumentTextExtractor(Protocol):
    def extract(self, data: bytes) -> str: ...


class PyMuPDFTextExtractor:
    """Extracts page text with PyMuPDF, pages separated by blank lines."""

    def extract(self, data: bytes) -> str:
        try:
            with fitz.open(stream=data, filetype="pdf") as document:
                pages = [page.get_text("text").strip() for page in document]
        except (RuntimeError, ValueError) as exc:
            raise ValidationError("Could not read PDF", details={"error": str(exc)}) from exc
        return "\n\n".join(page for page in pages if page)


class DocumentFetcher:
    """Reads document bytes from http(s) URLs or local `file://` URLs."""

    def __init__(self, timeout: float = FETCH_TIMEOUT_S):
        self.timeout = timeout

    async def fetch(self, url: str) -> bytes:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme == "file":
            path = Path(url2pathname(parts.path))
            try:
                data = await asyncio.to_thread(path.read_bytes)
            except OSError as exc:
                raise TransientIOError(f"Fetch failed: {exc}", {"url": url}) from exc
        elif scheme in _REMOTE_SCHEMES:
            try:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    data = response.content
            except httpx.HTTPError as exc:
                raise TransientIOError(f"Fetch failed: {exc}", {"url": url}) from exc
        else:
            raise ValidationError(f"Unsupported document scheme '{scheme}'", field="url")

        if not data:
            raise ValidationError("Fetched PDF is empty.", field="url")
        logger.info("document_fetched", url=url, size_bytes=len(data))
        return data
