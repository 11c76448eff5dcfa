"""
Cross-context router.

The router owns one channel per connected context, the map of which document
each tab shows, and a per-document buffer for output produced while that
document is not in front of a connected sidebar. Messages are validated once at
the boundary and then forwarded unchanged to the addressed channel.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from .documents import canonical_document_id, is_document_url
from .errors import TransientIOError
from .observability import get_logger
from .protocol import (
    AmaChunk,
    AmaComplete,
    AmaCompleteBuffered,
    AmaTerminated,
    ChunkData,
    Component,
    ErrorMessage,
    InitChat,
    Message,
    NotPdf,
    PdfActivated,
    RequestBufferedResponse,
    SidebarLoaded,
    StatusUpdate,
    TabActivated,
    TabDeactivated,
    error,
    parse_message,
    status,
)

logger = get_logger(__name__)

BUFFERED_STATUS = "Response ready (buffered)."

_BUFFERABLE = (StatusUpdate, InitChat, AmaChunk, AmaComplete, AmaTerminated, ErrorMessage)


# ==============================================================================
# CHANNELS
# ==============================================================================
class Channel:
    """Ordered inbox of one context. The router puts, the context iterates."""

    def __init__(self, component: Component):
        self.component = component
        self.connected = True
        self._queue: asyncio.Queue[Message | None] = asyncio.Queue()

    def send(self, message: Message):
        if not self.connected:
            raise TransientIOError(f"{self.component.value} channel is disconnected")
        self._queue.put_nowait(message)

    def close(self):
        if self.connected:
            self.connected = False
            self._queue.put_nowait(None)

    def pending(self) -> int:
        return self._queue.qsize()

    async def receive(self) -> Message | None:
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[Message]:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            yield message


class WorkerHandle(Protocol):
    channel: Channel

    async def close(self) -> None: ...


WorkerFactory = Callable[["Router"], Awaitable[WorkerHandle]]


# ==============================================================================
# ACTIVE DOCUMENTS
# ==============================================================================
@dataclass
class TabDocument:
    document_id: str | None
    is_foreground: bool = False


class ActiveDocumentMap:
    """tab id -> document shown in that tab, with the active tab in the foreground."""

    def __init__(self):
        self._tabs: dict[int, TabDocument] = {}
        self.active_tab_id: int | None = None

    def get(self, tab_id: int) -> TabDocument | None:
        return self._tabs.get(tab_id)

    def foreground_document(self) -> str | None:
        if self.active_tab_id is None:
            return None
        entry = self._tabs.get(self.active_tab_id)
        return entry.document_id if entry else None

    def activate(self, tab_id: int, document_id: str | None) -> str | None:
        """Brings `tab_id` to the foreground and returns the previous foreground document."""
        previous = self.foreground_document()
        for entry in self._tabs.values():
            entry.is_foreground = False
        self._tabs[tab_id] = TabDocument(document_id=document_id, is_foreground=True)
        self.active_tab_id = tab_id
        return previous

    def update(self, tab_id: int, document_id: str | None) -> str | None:
        """Records a navigation inside `tab_id` and returns the document it showed before."""
        entry = self._tabs.get(tab_id)
        previous = entry.document_id if entry else None
        self._tabs[tab_id] = TabDocument(document_id=document_id, is_foreground=tab_id == self.active_tab_id)
        return previous

    def remove(self, tab_id: int) -> TabDocument | None:
        entry = self._tabs.pop(tab_id, None)
        if tab_id == self.active_tab_id:
            self.active_tab_id = None
        return entry

    def is_open(self, document_id: str) -> bool:
        return any(entry.document_id == document_id for entry in self._tabs.values())

    def snapshot(self) -> dict[int, dict[str, Any]]:
        return {
            tab_id: {"document_id": entry.document_id, "is_foreground": entry.is_foreground}
            for tab_id, entry in self._tabs.items()
        }


# ==============================================================================
# OUTPUT BUFFERS
# ==============================================================================
@dataclass
class DocumentBuffer:
    """Sidebar output for one document held back while it is in the background."""

    url: str
    parts: list[str] = field(default_factory=list)
    last_status: str | None = None
    init_chat: InitChat | None = None
    completed: bool = False
    terminal: Message | None = None

    def add(self, message: Message):
        if isinstance(message, AmaChunk):
            if self.completed or self.terminal is not None:
                # A new answer started after the previous one ended.
                self.completed = False
                self.terminal = None
            self.parts.append(message.data.chunk)
        elif isinstance(message, StatusUpdate):
            self.last_status = message.data.message
        elif isinstance(message, InitChat):
            self.init_chat = message
        elif isinstance(message, AmaComplete):
            self.completed = True
            self.terminal = None
            self.last_status = BUFFERED_STATUS
        elif isinstance(message, (AmaTerminated, ErrorMessage)):
            self.completed = False
            self.terminal = message

    def drain(self) -> list[Message]:
        """Messages that replay this buffer, in delivery order."""
        messages: list[Message] = []
        if self.init_chat is not None:
            messages.append(self.init_chat)
        if self.parts:
            messages.append(AmaChunk(url=self.url, data=ChunkData(chunk="".join(self.parts))))
        if self.last_status:
            messages.append(status(self.url, self.last_status))
        if self.completed:
            messages.append(AmaCompleteBuffered(url=self.url))
        elif self.terminal is not None:
            messages.append(self.terminal)
        return messages


# ==============================================================================
# ROUTER
# ==============================================================================
class Router:
    def __init__(
        self,
        worker_factory: WorkerFactory,
        document_matcher: Callable[[str | None], bool] = is_document_url,
    ):
        self.channels: dict[Component, Channel] = {}
        self.documents = ActiveDocumentMap()
        self.buffers: dict[str, DocumentBuffer] = {}
        self._worker_factory = worker_factory
        self._document_matcher = document_matcher
        self._worker: WorkerHandle | None = None
        self._worker_creation: asyncio.Future | None = None

    # --- Channels -----------------------------------------------------------

    def connect(self, component: Component) -> Channel:
        """Opens a fresh channel for a UI context, replacing any stale one."""
        stale = self.channels.get(component)
        if stale is not None:
            stale.close()
        channel = Channel(component)
        self.channels[component] = channel
        logger.info("channel_connected", component=component.value)
        return channel

    def disconnect(self, component: Component, channel: Channel | None = None):
        current = self.channels.get(component)
        if current is None or (channel is not None and current is not channel):
            return
        current.close()
        del self.channels[component]
        if component is Component.OFFSCREEN:
            self._worker = None
            self._worker_creation = None
        logger.info("channel_disconnected", component=component.value)

    def is_connected(self, component: Component) -> bool:
        channel = self.channels.get(component)
        return bool(channel and channel.connected)

    # --- Worker lifecycle ---------------------------------------------------

    @property
    def worker(self) -> WorkerHandle | None:
        return self._worker

    async def ensure_worker(self) -> WorkerHandle:
        """Returns the worker, creating it once even under concurrent callers."""
        if self._worker is not None:
            return self._worker
        if self._worker_creation is None:
            self._worker_creation = asyncio.ensure_future(self._create_worker())
        creation = self._worker_creation
        try:
            return await asyncio.shield(creation)
        except Exception:
            if self._worker_creation is creation:
                self._worker_creation = None
            raise

    async def _create_worker(self) -> WorkerHandle:
        logger.info("worker_creating")
        worker = await self._worker_factory(self)
        self._worker = worker
        self.channels[Component.OFFSCREEN] = worker.channel
        logger.info("worker_created")
        return worker

    # --- Routing ------------------------------------------------------------

    def is_foreground(self, url: str) -> bool:
        return self.is_connected(Component.SIDEBAR) and self.documents.foreground_document() == url

    async def route(self, raw: Any) -> bool:
        """Validates and delivers one message. Returns False when it was dropped."""
        message = parse_message(raw)
        if message.to is Component.BACKGROUND:
            await self._handle(message)
            return True
        if message.to is Component.OFFSCREEN:
            worker = await self.ensure_worker()
            return self._deliver(worker.channel, message)
        if message.url and isinstance(message, _BUFFERABLE) and not self.is_foreground(message.url):
            if not self.documents.is_open(message.url):
                # No tab shows the document, so nothing would ever replay it.
                logger.info("output_discarded", type=message.type, url=message.url)
                return False
            self.buffers.setdefault(message.url, DocumentBuffer(url=message.url)).add(message)
            return True
        return self._deliver(self.channels.get(message.to), message)

    async def submit(self, raw: Any) -> bool:
        """Routes a message sent by a UI context.

        A worker that cannot start is reported straight back to the sidebar as an
        `error` for the message's document; the sender stays connected.
        """
        message = parse_message(raw)
        try:
            return await self.route(message)
        except Exception as exc:
            if message.to is not Component.OFFSCREEN:
                raise
            logger.error("worker_unavailable", type=message.type, url=message.url, error=str(exc))
            self._notify_sidebar(error(message.url, f"Worker unavailable: {exc}"))
            return False

    def _deliver(self, channel: Channel | None, message: Message) -> bool:
        if channel is None or not channel.connected:
            logger.warning(
                "message_dropped",
                type=message.type,
                sender=message.sender.value,
                to=message.to.value,
                url=message.url,
            )
            return False
        channel.send(message)
        return True

    async def _handle(self, message: Message):
        if isinstance(message, SidebarLoaded):
            url = self.documents.foreground_document()
            self._notify_sidebar(PdfActivated(url=url) if url else NotPdf())
            if url:
                self.flush(url)
        elif isinstance(message, RequestBufferedResponse):
            if message.url:
                self.flush(message.url)
        else:
            logger.warning("unhandled_background_message", type=message.type)

    def _notify_sidebar(self, message: Message):
        self._deliver(self.channels.get(Component.SIDEBAR), message)

    def flush(self, url: str) -> int:
        """Replays and clears the buffer of a foreground document. Returns messages sent."""
        if not self.is_foreground(url):
            return 0
        buffer = self.buffers.pop(url, None)
        if buffer is None:
            return 0
        messages = buffer.drain()
        channel = self.channels[Component.SIDEBAR]
        for message in messages:
            channel.send(message)
        logger.info("buffer_flushed", url=url, messages=len(messages), chars=sum(len(p) for p in buffer.parts))
        return len(messages)

    async def _send_to_worker(self, message: Message):
        try:
            await self.route(message)
        except Exception as exc:
            logger.error("worker_unavailable", type=message.type, url=message.url, error=str(exc))
            if message.url and isinstance(message, TabActivated):
                await self.route(error(message.url, f"Worker unavailable: {exc}"))

    # --- Tab events ---------------------------------------------------------

    def _document_for(self, location: str | None) -> str | None:
        if not self._document_matcher(location):
            return None
        return canonical_document_id(str(location))

    async def activate_tab(self, tab_id: int, location: str | None) -> str | None:
        """Handles a tab coming to the foreground. Returns its document id, if any."""
        document_id = self._document_for(location)
        previous = self.documents.activate(tab_id, document_id)
        if previous and previous != document_id:
            await self._send_to_worker(TabDeactivated(url=previous))
        if document_id is None:
            self._notify_sidebar(NotPdf())
            return None
        if previous != document_id:
            await self._send_to_worker(TabActivated(url=document_id))
        self._notify_sidebar(PdfActivated(url=document_id))
        self.flush(document_id)
        return document_id

    async def update_tab(self, tab_id: int, location: str | None) -> str | None:
        """Handles navigation inside a tab."""
        if tab_id == self.documents.active_tab_id:
            return await self.activate_tab(tab_id, location)
        document_id = self._document_for(location)
        self.documents.update(tab_id, document_id)
        return document_id

    async def close_tab(self, tab_id: int):
        entry = self.documents.remove(tab_id)
        if entry is None or entry.document_id is None:
            return
        if not self.documents.is_open(entry.document_id):
            # The persisted session stays; only the worker's active set changes.
            dropped = self.buffers.pop(entry.document_id, None)
            if dropped is not None:
                logger.info("buffer_discarded", url=entry.document_id, chars=sum(len(p) for p in dropped.parts))
            await self._send_to_worker(TabDeactivated(url=entry.document_id))

    async def close(self):
        worker = self._worker
        for component in list(self.channels):
            self.disconnect(component)
        if worker is not None:
            await worker.close()
        self.buffers.clear()
