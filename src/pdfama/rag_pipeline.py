# /pdfama/rag_pipeline.py
"""
Indexing and retrieval for a single document.

`init()` chunks the document, embeds every chunk and stores it in the document's
own vector collection. It is idempotent: a collection that already holds entries
is treated as indexed. `retrieve()` embeds a question and returns the best
matching chunks joined into one context string.
"""
from __future__ import annotations

import asyncio
import hashlib
import re
import time
from typing import Awaitable, Callable

from .config import EMBED_PROGRESS_EVERY, RAG_CHUNK_OVERLAP, RAG_CHUNK_SIZE, RAG_TOP_K
from .errors import ModelUnavailableError, PartialIndexError, TransientIOError
from .models import Embedder
from .observability import get_logger
from .text_splitter import RecursiveTextSplitter
from .vector_store import VectorCollection

logger = get_logger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"
STATUS_CHUNKING = "Chunking document..."
STATUS_EMBEDDING = "Generating embeddings (this may take a while)..."

StatusCallback = Callable[[str], Awaitable[None]]

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")


def collection_name_for(document_id: str) -> str:
    """Deterministic collection name for a document identity."""
    slug = _NON_ALNUM_RE.sub("", document_id)[:48]
    digest = hashlib.sha256(document_id.encode("utf-8")).hexdigest()[:16]
    return f"vdb_{slug}_{digest}"


class RagPipeline:
    def __init__(
        self,
        document_id: str,
        text: str,
        collection: VectorCollection,
        embedder: Embedder,
        *,
        on_status: StatusCallback | None = None,
        chunk_size: int = RAG_CHUNK_SIZE,
        chunk_overlap: int = RAG_CHUNK_OVERLAP,
        top_k: int = RAG_TOP_K,
        progress_every: int = EMBED_PROGRESS_EVERY,
    ):
        self.document_id = document_id
        self.text = text
        self.collection = collection
        self.embedder = embedder
        self.splitter = RecursiveTextSplitter(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        self.top_k = top_k
        self.progress_every = max(1, int(progress_every))
        self._on_status = on_status

    async def _status(self, message: str):
        if self._on_status is not None:
            await self._on_status(message)

    async def init(self) -> int:
        """Indexes the document unless its collection already has entries.

        Returns the number of chunks embedded by this call (0 when reused). A
        collection left partial by an earlier interrupted run also counts as
        indexed; callers that need a clean index must rebuild the collection.
        """
        existing = await asyncio.to_thread(self.collection.count)
        if existing > 0:
            logger.info("rag_index_reused", document_id=self.document_id, entries=existing)
            return 0

        started = time.perf_counter()
        await self._status(STATUS_CHUNKING)
        chunks = await asyncio.to_thread(self.splitter.split_text, self.text)
        total = len(chunks)

        await self._status(STATUS_EMBEDDING)
        for index, chunk in enumerate(chunks, start=1):
            try:
                embedding = await self.embedder.embed(chunk)
                await asyncio.to_thread(
                    self.collection.insert,
                    {"documentId": self.document_id, "text": chunk, "embedding": embedding},
                )
            except (ModelUnavailableError, TransientIOError) as exc:
                stored = index - 1
                if stored == 0:
                    raise
                logger.error(
                    "rag_index_partial",
                    document_id=self.document_id,
                    stored=stored,
                    expected=total,
                    error=str(exc),
                )
                raise PartialIndexError(self.document_id, stored, total) from exc
            if index % self.progress_every == 0:
                await self._status(f"Embedding... ({index}/{total})")

        logger.info(
            "rag_index_complete",
            document_id=self.document_id,
            chunks=total,
            elapsed_s=round(time.perf_counter() - started, 3),
        )
        return total

    async def retrieve(self, query: str) -> str:
        query_vector = await self.embedder.embed(query)
        results = await asyncio.to_thread(self.collection.query, query_vector, self.top_k)
        logger.info(
            "rag_retrieve",
            document_id=self.document_id,
            results=len(results),
            top_score=round(results[0].score, 4) if results else None,
        )
        return CONTEXT_SEPARATOR.join(str(result.entry.get("text") or "") for result in results)
