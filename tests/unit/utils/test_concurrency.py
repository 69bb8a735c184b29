"""Regression tests for concurrency utility edge cases."""

from __future__ import annotations

import asyncio
import gc
import sys
import warnings
from contextlib import contextmanager
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from sitebox_orchestrator.utils.concurrency import CancellationToken, KeyedLock, poll_until, run_with_timeout

if TYPE_CHECKING:
    from collections.abc import Iterator


@contextmanager
def _capture_unraisable() -> Iterator[list[SimpleNamespace]]:
    captured: list[SimpleNamespace] = []
    original = sys.unraisablehook

    def hook(unraisable: object) -> None:
        captured.append(
            SimpleNamespace(
                exc_type=getattr(unraisable, "exc_type", None),
                err_msg=getattr(unraisable, "err_msg", None),
            )
        )

    sys.unraisablehook = hook
    try:
        yield captured
    finally:
        sys.unraisablehook = original


async def _slow() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slower() -> int:
    await asyncio.sleep(0.05)
    return 1


async def test_run_with_timeout_does_not_leak_coroutine_on_early_cancel() -> None:
    token = CancellationToken()
    token.cancel()

    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        coro = _slow()
        with pytest.raises(asyncio.CancelledError):
            await run_with_timeout(coro, 1.0, token)
        del coro
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_timeout_path_does_not_leak_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError):
            await run_with_timeout(_slower(), 0.001, None)
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_returns_value_and_honours_token_mid_flight() -> None:
    assert await run_with_timeout(_slow(), 1.0) == 1

    token = CancellationToken()
    finished = asyncio.Event()

    async def _long() -> None:
        try:
            await asyncio.sleep(5)
        finally:
            finished.set()

    asyncio.get_running_loop().call_later(0.01, token.cancel)
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(_long(), 5.0, token)
    # The inner task is finished before run_with_timeout returns control.
    assert finished.is_set()


async def test_run_with_timeout_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="timeout_seconds"):
        await run_with_timeout(_slow(), 0)


async def test_poll_until_stops_at_first_success_and_bounds_attempts() -> None:
    calls: list[int] = []

    async def _third_time_lucky() -> bool:
        calls.append(1)
        return len(calls) == 3

    assert await poll_until(_third_time_lucky, attempts=5, interval_seconds=0) is True
    assert len(calls) == 3

    calls.clear()

    async def _never() -> bool:
        calls.append(1)
        return False

    assert await poll_until(_never, attempts=4, interval_seconds=0) is False
    assert len(calls) == 4


async def test_keyed_lock_serialises_one_key_and_not_others() -> None:
    locks = KeyedLock()
    order: list[str] = []

    async def _hold(key: str, label: str, delay: float) -> None:
        async with locks.hold(key):
            order.append(f"{label}:in")
            await asyncio.sleep(delay)
            order.append(f"{label}:out")

    await asyncio.gather(_hold("a", "first", 0.03), _hold("a", "second", 0), _hold("b", "other", 0))

    assert order.index("first:out") < order.index("second:in")
    assert order.index("other:in") < order.index("first:out")
    assert locks.active_keys == ()
