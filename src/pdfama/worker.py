"""
The worker context: owns document sessions and vector collections, indexes
documents and answers questions. It only talks to the rest of the system
through its router channel.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict

from .chat_streamer import ChatStreamer, PendingGeneration
from .cancellation import CancellationToken
from .config import EMBEDDING_DIMENSIONS, TOKEN_LIMIT
from .documents import DocumentFetcher, DocumentTextExtractor, PyMuPDFTextExtractor
from .errors import PdfAmaError
from .models import Embedder, GenerativeModel, HuggingFaceEmbedder, OllamaChatModel
from .observability import get_logger
from .protocol import (
    AskQuestion,
    Component,
    HistoryData,
    HistoryItem,
    InitChat,
    Message,
    StartProcessing,
    TabActivated,
    TabDeactivated,
    TerminateChat,
    error,
    status,
)
from .rag_pipeline import RagPipeline, collection_name_for
from .router import Channel, Router, WorkerFactory
from .session_store import UI_INITIALIZING_RAG, UI_PROCESSING, UI_READY, DocumentSession, SessionStore
from .vector_store import VectorStore

logger = get_logger(__name__)


class DocumentWorker:
    def __init__(
        self,
        router: Router,
        *,
        sessions: SessionStore,
        vectors: VectorStore,
        embedder: Embedder,
        model: GenerativeModel,
        fetcher: DocumentFetcher,
        extractor: DocumentTextExtractor,
        token_limit: int = TOKEN_LIMIT,
        embedding_dimensions: int | None = EMBEDDING_DIMENSIONS,
    ):
        self.router = router
        self.sessions = sessions
        self.vectors = vectors
        self.embedder = embedder
        self.fetcher = fetcher
        self.extractor = extractor
        self.token_limit = token_limit
        self.embedding_dimensions = embedding_dimensions
        self.channel = Channel(Component.OFFSCREEN)
        self.streamer = ChatStreamer(sessions, model, self.pipeline_for, self.emit, token_limit=token_limit)
        self.active_documents: set[str] = set()
        self.generations: dict[str, PendingGeneration] = {}
        self._document_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tasks: set[asyncio.Task] = set()
        self._consumer: asyncio.Task | None = None

    def start(self):
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume())

    async def close(self):
        for generation in self.generations.values():
            generation.token.cancel()
        self.channel.close()
        pending = [task for task in (self._consumer, *self._tasks) if task is not None]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._consumer = None

    async def idle(self):
        """Waits until every message received so far has been fully handled."""
        while self.channel.pending() or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(0)

    async def emit(self, message: Message):
        await self.router.route(message)

    def pipeline_for(self, session: DocumentSession) -> RagPipeline:
        collection = self.vectors.collection(
            collection_name_for(session.url),
            dimensions=self.embedding_dimensions,
        )

        async def _on_status(message: str):
            await self.emit(status(session.url, message))

        return RagPipeline(session.url, session.text, collection, self.embedder, on_status=_on_status)

    # --- Dispatch -----------------------------------------------------------

    async def _consume(self):
        async for message in self.channel:
            self._spawn(self._dispatch(message))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, message: Message):
        url = message.url
        if isinstance(message, TerminateChat):
            self.terminate(url)
            return
        if isinstance(message, TabDeactivated):
            if url:
                self.active_documents.discard(url)
            logger.info("document_deactivated", url=url)
            return
        if not url:
            logger.warning("worker_message_without_url", type=message.type)
            return
        if isinstance(message, AskQuestion):
            await self.answer(url, message.data.question)
        elif isinstance(message, (StartProcessing, TabActivated)):
            self.active_documents.add(url)
            async with self._document_locks[url]:
                if url not in self.active_documents:
                    # Deactivated while waiting for the lock.
                    logger.info("document_processing_skipped", url=url)
                    return
                await self.process_document(url)
        else:
            logger.warning("unhandled_worker_message", type=message.type)

    def terminate(self, url: str | None) -> int:
        targets = [url] if url else list(self.generations)
        cancelled = 0
        for target in targets:
            generation = self.generations.get(target)
            if generation is not None and generation.token.cancel():
                cancelled += 1
        logger.info("terminate_requested", url=url, cancelled=cancelled)
        return cancelled

    # --- Document lifecycle -------------------------------------------------

    async def process_document(self, url: str):
        try:
            session = await asyncio.to_thread(self.sessions.get, url)
            if session is None or not session.text:
                session = await self._extract(session or DocumentSession(url=url))
            else:
                logger.info("session_reused", url=url, is_rag=session.is_rag, turns=len(session.chat_history))

            if session.is_rag:
                session.ui_state = UI_INITIALIZING_RAG
                await asyncio.to_thread(self.sessions.put, session)
                await self.emit(status(url, session.ui_state))
                await self.pipeline_for(session).init()
                session.ui_state = UI_READY
                await asyncio.to_thread(self.sessions.put, session)

            await self.emit(status(url, UI_READY))
            history = [HistoryItem(role=turn.role, content=turn.content) for turn in session.chat_history]
            await self.emit(InitChat(url=url, data=HistoryData(history=history)))
        except PdfAmaError as exc:
            logger.error("document_processing_failed", url=url, error=str(exc))
            await self.emit(error(url, exc.message))
        except Exception as exc:
            logger.exception("document_processing_crashed", url=url)
            await self.emit(error(url, str(exc)))

    async def _extract(self, session: DocumentSession) -> DocumentSession:
        session.text = ""
        session.is_rag = False
        session.ui_state = UI_PROCESSING
        await asyncio.to_thread(self.sessions.put, session)
        await self.emit(status(session.url, UI_PROCESSING))

        data = await self.fetcher.fetch(session.url)
        text = await asyncio.to_thread(self.extractor.extract, data)
        session.text = text
        session.is_rag = len(text) > self.token_limit
        session.ui_state = UI_READY
        await asyncio.to_thread(self.sessions.put, session)
        logger.info("document_extracted", url=session.url, chars=len(text), is_rag=session.is_rag)
        return session

    # --- Questions ----------------------------------------------------------

    async def answer(self, url: str, question: str) -> PendingGeneration | None:
        current = self.generations.get(url)
        if current is not None and not current.done:
            await self.emit(error(url, "AI Error: A response is already being generated for this document."))
            return None
        generation = PendingGeneration(url=url, token=CancellationToken(url))
        self.generations[url] = generation
        try:
            async with self._document_locks[url]:
                return await self.streamer.ask(url, question, generation)
        finally:
            if self.generations.get(url) is generation:
                del self.generations[url]


def make_worker_factory(**components) -> WorkerFactory:
    """Factory the router calls (once) to start the worker context."""

    async def _create(router: Router) -> DocumentWorker:
        worker = DocumentWorker(router, **components)
        worker.start()
        return worker

    return _create


def default_worker_factory(sessions: SessionStore, vectors: VectorStore) -> WorkerFactory:
    return make_worker_factory(
        sessions=sessions,
        vectors=vectors,
        embedder=HuggingFaceEmbedder(),
        model=OllamaChatModel(),
        fetcher=DocumentFetcher(),
        extractor=PyMuPDFTextExtractor(),
    )
