"""
Model collaborators: the embedder used for indexing and retrieval, and the
generative chat model used to stream answers.

Both are reached through small protocols so the engine never depends on a
particular backend. The default backends follow the project stack: sentence
transformers through langchain-huggingface and a local Ollama chat model through
langchain-ollama.
"""
from __future__ import annotations

import asyncio
import threading
from typing import AsyncIterator, Protocol, Sequence

import httpx
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_huggingface import HuggingFaceEmbeddings
from langchain_ollama import ChatOllama

from .cancellation import CancellationToken
from .config import (
    EMBEDDING_DEVICE,
    EMBEDDING_MODEL_NAME,
    EMBEDDING_NORMALIZE,
    LLM_NUM_PREDICT,
    LLM_TEMPERATURE,
    LOCAL_MODEL_NAME,
    OLLAMA_BASE_URL,
)
from .errors import ModelUnavailableError
from .observability import get_logger
from .session_store import ChatTurn

logger = get_logger(__name__)

AVAILABLE = "available"
UNAVAILABLE = "unavailable"
DOWNLOADABLE = "downloadable"


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class ModelSession(Protocol):
    def stream_complete(self, prompt: str, token: CancellationToken) -> AsyncIterator[str]: ...


class GenerativeModel(Protocol):
    name: str

    async def availability(self) -> str: ...

    async def create_session(self, initial_prompts: Sequence[ChatTurn]) -> ModelSession: ...


# ==============================================================================
# EMBEDDINGS
# ==============================================================================
class HuggingFaceEmbedder:
    """Sentence-transformer embeddings, loaded on first use and shared afterwards."""

    def __init__(
        self,
        model_name: str = EMBEDDING_MODEL_NAME,
        device: str = EMBEDDING_DEVICE,
        normalize: bool = EMBEDDING_NORMALIZE,
    ):
        self.model_name = model_name
        self.device = device
        self.normalize = normalize
        self._model: HuggingFaceEmbeddings | None = None
        self._lock = threading.Lock()

    def _load(self) -> HuggingFaceEmbeddings:
        with self._lock:
            if self._model is None:
                try:
                    self._model = HuggingFaceEmbeddings(
                        model_name=self.model_name,
                        model_kwargs={"device": self.device},
                        encode_kwargs={"normalize_embeddings": self.normalize},
                    )
                except Exception as exc:
                    logger.error("embedder_load_failed", model=self.model_name, error=str(exc))
                    raise ModelUnavailableError(self.model_name, str(exc)) from exc
                logger.info("embedder_loaded", model=self.model_name, device=self.device)
            return self._model

    async def embed(self, text: str) -> list[float]:
        model = await asyncio.to_thread(self._load)
        try:
            vector = await asyncio.to_thread(model.embed_query, text)
        except Exception as exc:
            raise ModelUnavailableError(self.model_name, str(exc)) from exc
        return [float(value) for value in vector]


# ==============================================================================
# GENERATIVE MODEL
# ==============================================================================
def _to_message(turn: ChatTurn) -> BaseMessage:
    role = turn.normalized_role()
    if role == "system":
        return SystemMessage(content=turn.content)
    if role == "assistant":
        return AIMessage(content=turn.content)
    return HumanMessage(content=turn.content)


class OllamaChatSession:
    """A multi-turn conversation seeded with initial prompts."""

    def __init__(self, llm: ChatOllama, initial_prompts: Sequence[ChatTurn]):
        self._llm = llm
        self._messages: list[BaseMessage] = [_to_message(turn) for turn in initial_prompts]

    async def stream_complete(self, prompt: str, token: CancellationToken) -> AsyncIterator[str]:
        messages = [*self._messages, HumanMessage(content=prompt)]
        parts: list[str] = []
        async for chunk in self._llm.astream(messages):
            token.raise_if_cancelled()
            text = chunk.content if isinstance(chunk.content, str) else ""
            if text:
                parts.append(text)
                yield text
        self._messages = [*messages, AIMessage(content="".join(parts))]


class OllamaChatModel:
    """Local chat model served by Ollama."""

    def __init__(
        self,
        model: str = LOCAL_MODEL_NAME,
        base_url: str = OLLAMA_BASE_URL,
        temperature: float = LLM_TEMPERATURE,
        num_predict: int = LLM_NUM_PREDICT,
    ):
        self.name = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.num_predict = num_predict

    async def availability(self) -> str:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("ollama_unreachable", base_url=self.base_url, error=str(exc))
            return UNAVAILABLE
        names = {str(item.get("name") or "") for item in payload.get("models", [])}
        if self.name in names or f"{self.name}:latest" in names:
            return AVAILABLE
        return DOWNLOADABLE

    async def create_session(self, initial_prompts: Sequence[ChatTurn]) -> OllamaChatSession:
        llm = ChatOllama(
            model=self.name,
            base_url=self.base_url,
            temperature=self.temperature,
            num_predict=self.num_predict,
        )
        return OllamaChatSession(llm, initial_prompts)
