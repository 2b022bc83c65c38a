"""Bounded-concurrency task runner that reports results in submission order.

Up to `concurrency` tasks run at once. Each settlement frees a slot, flushes
the longest ready prefix of results in index order through the callbacks,
then admits more work. The returned coroutine finishes only after the last
ordered emission has been awaited, so callers never observe a callback
running after `run_concurrent_ordered` has returned.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import dataclasses
import inspect
import logging
from typing import Any

from structured_batch.core.exceptions import OperationCancelledError
from structured_batch.core.types import OrderedResult
from structured_batch.execution.cancellation import CancelToken

log = logging.getLogger(__name__)

DEFAULT_YIELD_EVERY = 10

type TaskFactory[T] = Callable[[], Awaitable[T]]


async def call_maybe_async(fn: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke a sync or async callback, awaiting it when needed."""
    if fn is None:
        return
    result = fn(*args)
    if inspect.isawaitable(result):
        await result


@dataclasses.dataclass(frozen=True, slots=True)
class OrderedCallbacks:
    """Callbacks fired strictly in submission order. Sync or async."""

    on_item_complete: Callable[[int, Any], Any] | None = None
    on_item_error: Callable[[int, BaseException], Any] | None = None
    on_progress: Callable[[int, int], Any] | None = None


async def _settle[T](index: int, factory: TaskFactory[T]) -> OrderedResult[T]:
    try:
        value = await factory()
    except asyncio.CancelledError as exc:
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
        error = OperationCancelledError()
        error.__cause__ = exc
        return OrderedResult(index, "rejected", error=error)
    except Exception as exc:
        return OrderedResult(index, "rejected", error=exc)
    return OrderedResult(index, "fulfilled", value=value)


async def run_concurrent_ordered[T](
    tasks: Sequence[TaskFactory[T]],
    *,
    concurrency: int,
    cancel_token: CancelToken | None = None,
    callbacks: OrderedCallbacks | None = None,
    yield_every: int = DEFAULT_YIELD_EVERY,
) -> list[OrderedResult[T] | None]:
    """Run `tasks` with at most `concurrency` in flight.

    Cancellation stops new admissions; tasks already running finish and are
    still emitted in order. Slots for tasks that were never admitted stay
    ``None`` in the returned list.

    Args:
        tasks: Zero-argument callables returning awaitables.
        concurrency: Maximum number of tasks in flight (>= 1).
        cancel_token: Checked before every admission.
        callbacks: Ordered completion, error and progress callbacks.
        yield_every: Yield to the event loop after this many emissions.

    Returns:
        One entry per task, aligned with `tasks`.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    if yield_every < 1:
        raise ValueError("yield_every must be >= 1")

    total = len(tasks)
    results: list[OrderedResult[T] | None] = [None] * total
    if total == 0:
        return results

    cbs = callbacks or OrderedCallbacks()
    running: dict[asyncio.Task[OrderedResult[T]], int] = {}
    next_index = 0
    next_emit = 0

    def admit() -> None:
        nonlocal next_index
        while len(running) < concurrency and next_index < total:
            if cancel_token is not None and cancel_token.cancelled:
                log.debug(
                    "Admission stopped at index %d of %d (cancelled)", next_index, total
                )
                return
            index = next_index
            next_index += 1
            task = asyncio.create_task(_settle(index, tasks[index]))
            running[task] = index

    async def emit(result: OrderedResult[T]) -> None:
        if result.ok:
            await call_maybe_async(cbs.on_item_complete, result.index, result.value)
        else:
            await call_maybe_async(cbs.on_item_error, result.index, result.error)
        await call_maybe_async(cbs.on_progress, result.index + 1, total)

    try:
        admit()
        while running:
            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                running.pop(task)
                settled = task.result()
                results[settled.index] = settled

            while next_emit < total and results[next_emit] is not None:
                ready = results[next_emit]
                next_emit += 1
                await emit(ready)
                if next_emit % yield_every == 0:
                    await asyncio.sleep(0)

            admit()
    finally:
        # Only reached with tasks still running if a callback raised or we
        # were cancelled ourselves.
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    return results
