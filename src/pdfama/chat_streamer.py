"""
Question answering over a stored document session.

Short documents are answered directly with the whole text as context and the
prior conversation as history. Documents longer than `TOKEN_LIMIT` characters go
through retrieval: each answer is grounded fresh on the top matching chunks and
sees no prior history.
"""
from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from .cancellation import CancellationToken, iterate_with_cancellation
from .config import TOKEN_LIMIT
from .errors import GenerationCancelled, ModelUnavailableError, PdfAmaError, SessionNotFoundError
from .models import AVAILABLE, GenerativeModel
from .observability import get_logger
from .protocol import AmaChunk, AmaComplete, AmaTerminated, ChunkData, Message, error, status
from .rag_pipeline import RagPipeline
from .session_store import ChatTurn, DocumentSession, SessionStore

logger = get_logger(__name__)

SYSTEM_INSTRUCTION = "You are a helpful assistant. Answer based *only* on the provided text."
STATUS_THINKING = "Thinking..."

Emit = Callable[[Message], Awaitable[None]]
PipelineFactory = Callable[[DocumentSession], RagPipeline]


class ChatMode(str, Enum):
    DIRECT = "direct"
    RAG = "rag"


class GenerationState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class PendingGeneration:
    url: str
    token: CancellationToken = field(default_factory=CancellationToken)
    state: GenerationState = GenerationState.PENDING
    parts: list[str] = field(default_factory=list)
    done: bool = False
    error: str | None = None

    @property
    def output(self) -> str:
        return "".join(self.parts)


def select_mode(text: str, token_limit: int = TOKEN_LIMIT) -> ChatMode:
    return ChatMode.RAG if len(text or "") > token_limit else ChatMode.DIRECT


def build_direct_prompts(session: DocumentSession) -> list[ChatTurn]:
    """System turn bound to the document, then every turn before the pending question."""
    prompts = [ChatTurn("system", f"{SYSTEM_INSTRUCTION} Here is the text: {session.text}")]
    for turn in session.chat_history[:-1]:
        prompts.append(ChatTurn(turn.normalized_role(), turn.content))
    return prompts


def build_rag_prompt(question: str, context: str) -> str:
    return f'Based on the following text, answer the question: "{question}"\n\n---\n\n{context}'


class ChatStreamer:
    def __init__(
        self,
        sessions: SessionStore,
        model: GenerativeModel,
        pipeline_factory: PipelineFactory,
        emit: Emit,
        token_limit: int = TOKEN_LIMIT,
    ):
        self.sessions = sessions
        self.model = model
        self.pipeline_factory = pipeline_factory
        self.emit = emit
        self.token_limit = token_limit

    async def _check_model(self):
        availability = await self.model.availability()
        if availability != AVAILABLE:
            raise ModelUnavailableError(getattr(self.model, "name", "generative model"), availability)

    async def _open_stream(self, session: DocumentSession, question: str, token: CancellationToken):
        mode = select_mode(session.text, self.token_limit)
        logger.info("chat_mode_selected", url=session.url, mode=mode.value, text_chars=len(session.text))
        if mode is ChatMode.RAG:
            await self.emit(status(session.url, STATUS_THINKING))
            pipeline = self.pipeline_factory(session)
            await pipeline.init()
            context = await pipeline.retrieve(question)
            token.raise_if_cancelled()
            model_session = await self.model.create_session([ChatTurn("system", SYSTEM_INSTRUCTION)])
            prompt = build_rag_prompt(question, context)
        else:
            model_session = await self.model.create_session(build_direct_prompts(session))
            prompt = question
        token.raise_if_cancelled()
        return model_session.stream_complete(prompt, token)

    async def ask(self, url: str, question: str, generation: PendingGeneration | None = None) -> PendingGeneration:
        """Answers `question` for the document at `url`, streaming deltas through `emit`.

        The returned generation ends in COMPLETED, CANCELLED or FAILED. Only a
        completed answer is added to the persisted history.
        """
        generation = generation or PendingGeneration(url=url, token=CancellationToken(url))
        token = generation.token
        try:
            token.raise_if_cancelled()
            session = await asyncio.to_thread(self.sessions.get, url)
            if session is None:
                raise SessionNotFoundError(url)
            session.chat_history.append(ChatTurn("user", question))
            await asyncio.to_thread(self.sessions.put, session)

            await self._check_model()
            stream = await self._open_stream(session, question, token)

            generation.state = GenerationState.STREAMING
            async with aclosing(iterate_with_cancellation(stream, token)) as deltas:
                async for delta in deltas:
                    generation.parts.append(delta)
                    await self.emit(AmaChunk(url=url, data=ChunkData(chunk=delta)))

            session.chat_history.append(ChatTurn("assistant", generation.output))
            await asyncio.to_thread(self.sessions.put, session)
            generation.state = GenerationState.COMPLETED
            logger.info("generation_completed", url=url, chars=len(generation.output))
            await self.emit(AmaComplete(url=url))
        except GenerationCancelled:
            generation.state = GenerationState.CANCELLED
            logger.info("generation_cancelled", url=url, partial_chars=len(generation.output))
            await self.emit(AmaTerminated(url=url))
        except PdfAmaError as exc:
            generation.state = GenerationState.FAILED
            generation.error = exc.message
            logger.error("generation_failed", url=url, error=str(exc))
            await self.emit(error(url, f"AI Error: {exc.message}"))
        except Exception as exc:
            generation.state = GenerationState.FAILED
            generation.error = str(exc)
            logger.exception("generation_crashed", url=url)
            await self.emit(error(url, f"AI Error: {exc}"))
        finally:
            generation.done = True
        return generation
