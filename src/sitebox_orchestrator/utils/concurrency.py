"""Async concurrency primitives shared by the supervisor, swap coordinator and orchestrator."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")


@dataclass(slots=True)
class _KeyedEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class KeyedLock:
    """
    One ``asyncio.Lock`` per key, created on demand and dropped once unused.

    Operations holding different keys never block each other.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _KeyedEntry] = {}

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @property
    def active_keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._entries))

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = _KeyedEntry()
            self._entries[key] = entry
        entry.waiters += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.waiters -= 1
            if entry.waiters == 0 and self._entries.get(key) is entry:
                del self._entries[key]


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """
    Run ``coroutine`` with timeout and cooperative cancellation support.

    The inner task is always finished before this returns or raises, including when
    the caller itself is cancelled.
    """
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError("operation cancelled")

    task: asyncio.Task[T] = asyncio.create_task(_await_value(coroutine))
    cancel_wait_task = asyncio.create_task(token.wait())

    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if task in done:
            return task.result()

        await _cancel_and_drain(task)
        if cancel_wait_task in done and token.is_cancelled:
            raise asyncio.CancelledError("operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        if not task.done():
            # Caller was cancelled while waiting.
            await _cancel_and_drain(task)
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    *,
    attempts: int,
    interval_seconds: float,
) -> bool:
    """Evaluate ``predicate`` at most ``attempts`` times, sleeping between tries."""
    if attempts <= 0:
        raise ValueError("attempts must be > 0")
    if interval_seconds < 0:
        raise ValueError("interval_seconds must be >= 0")
    for attempt in range(attempts):
        if await predicate():
            return True
        if attempt + 1 < attempts:
            await asyncio.sleep(interval_seconds)
    return False


async def _cancel_and_drain(task: asyncio.Task[T]) -> None:
    task.cancel()
    with suppress(asyncio.CancelledError, Exception):
        await asyncio.shield(asyncio.gather(task, return_exceptions=True))


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # If cancellation/validation fails before scheduling, close raw coroutine objects
    # so CPython does not emit "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "KeyedLock",
    "poll_until",
    "run_with_timeout",
]
