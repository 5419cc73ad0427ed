"""Cooperative cancellation shared by every suspension point of a run."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from contextlib import suppress
from typing import Any

from termloop.errors import RunCancelledError

_EXHAUSTED = object()


class CancellationToken:
    """One-shot cancellation signal threaded through a run.

    Awaiting through ``guard``/``sleep``/``iterate`` turns a cancel into
    ``RunCancelledError`` at the suspension point, aborting the in-flight work.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = "cancelled"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self._reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def guard[T](self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RunCancelledError(self._reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds``; raise as soon as the token fires."""
        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise RunCancelledError(self._reason)

    async def iterate[T](self, stream: AsyncIterator[T]) -> AsyncIterator[T]:
        """Yield from ``stream`` with every ``__anext__`` guarded by the token."""
        iterator = aiter(stream)
        try:
            while True:
                item = await self.guard(_next_or_exhausted(iterator))
                if item is _EXHAUSTED:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with suppress(Exception):
                    await aclose()


async def _next_or_exhausted(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _EXHAUSTED
