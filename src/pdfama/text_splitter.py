"""
Separator-priority text chunking with overlap.

Chunking is delegated to langchain's `RecursiveCharacterTextSplitter`: the first
separator that occurs in the text wins, small pieces are merged back up to
`chunk_size`, oversized pieces recurse into the finer separators that remain,
and the trailing `chunk_overlap` characters of a chunk carry into the next one.
A piece with no finer separator left is kept whole.
"""
from __future__ import annotations

from typing import Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .errors import ValidationError

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", " ", "")


class RecursiveTextSplitter:
    """Deterministic recursive character splitter."""

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        separators: Sequence[str] | None = None,
    ):
        if int(chunk_size) <= 0:
            raise ValidationError("chunk_size must be positive", field="chunk_size")
        if int(chunk_overlap) < 0:
            raise ValidationError("chunk_overlap cannot be negative", field="chunk_overlap")
        if int(chunk_overlap) >= int(chunk_size):
            raise ValidationError(
                "Cannot have chunk_overlap >= chunk_size",
                field="chunk_overlap",
                details={"chunk_size": chunk_size, "chunk_overlap": chunk_overlap},
            )
        self.chunk_size = int(chunk_size)
        self.chunk_overlap = int(chunk_overlap)
        self.separators = tuple(DEFAULT_SEPARATORS if separators is None else separators)
        if not self.separators:
            raise ValidationError("At least one separator is required", field="separators")
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            separators=list(self.separators),
            keep_separator=False,
        )

    def split_text(self, text: str) -> list[str]:
        return self._splitter.split_text(str(text or ""))


def split_text(
    text: str,
    chunk_size: int = 1000,
    chunk_overlap: int = 200,
    separators: Sequence[str] | None = None,
) -> list[str]:
    """Splits `text` with a one-off splitter configuration."""
    return RecursiveTextSplitter(chunk_size, chunk_overlap, separators).split_text(text)
