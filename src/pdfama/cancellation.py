"""
Cooperative cancellation for streamed generations.

A `CancellationToken` is shared between whoever may stop a generation and the
code consuming the model stream. `iterate_with_cancellation` checks the token at
every delta and also wakes up when the token fires while the model is silent,
so a stalled stream is abandoned promptly and its source is closed.
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterable, AsyncIterator, Callable

from .errors import GenerationCancelled


class CancellationToken:
    def __init__(self, url: str | None = None):
        self.url = url
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Fires the token. Returns False when it was already cancelled."""
        if self._event.is_set():
            return False
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()
        return True

    def add_callback(self, callback: Callable[[], None]):
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise GenerationCancelled(self.url)

    async def wait(self):
        await self._event.wait()


async def _next_delta(iterator: Any) -> str:
    return await iterator.__anext__()


async def iterate_with_cancellation(
    stream: AsyncIterable[str],
    token: CancellationToken,
) -> AsyncIterator[str]:
    """Yields deltas from `stream` until it ends or `token` is cancelled."""
    iterator = stream.__aiter__()
    try:
        while True:
            token.raise_if_cancelled()
            next_delta = asyncio.ensure_future(_next_delta(iterator))
            cancelled = asyncio.ensure_future(token.wait())
            try:
                done, _ = await asyncio.wait({next_delta, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                cancelled.cancel()
            if next_delta not in done:
                next_delta.cancel()
                await asyncio.gather(next_delta, return_exceptions=True)
                raise GenerationCancelled(token.url)
            try:
                delta = next_delta.result()
            except StopAsyncIteration:
                return
            token.raise_if_cancelled()
            yield delta
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
