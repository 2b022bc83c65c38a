"""Prepare/execute split over the ordered scheduler, with a circuit breaker.

`prepare` is cheap and may skip an input by returning None. `execute` is the
expensive call. Only prepared inputs reach the scheduler, so an index map
translates scheduler positions back to the caller's original indices before
any callback fires.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import dataclasses
import inspect
import logging
from typing import Any

from structured_batch.core.exceptions import CancelOrigin, is_cancellation
from structured_batch.core.types import OrderedResult
from structured_batch.execution.cancellation import CancelToken
from structured_batch.execution.scheduler import (
    DEFAULT_YIELD_EVERY,
    OrderedCallbacks,
    call_maybe_async,
    run_concurrent_ordered,
)

log = logging.getLogger(__name__)

DEFAULT_BREAKER_THRESHOLD = 5


class CircuitBreaker:
    """Trips after `threshold` consecutive failures while nothing has succeeded.

    Once any item succeeds the backend is evidently reachable and the breaker
    stays closed for the rest of the batch.
    """

    __slots__ = ("consecutive_failures", "successes", "threshold", "tripped")

    def __init__(self, threshold: int = DEFAULT_BREAKER_THRESHOLD) -> None:
        if threshold < 1:
            raise ValueError("breaker threshold must be >= 1")
        self.threshold = threshold
        self.consecutive_failures = 0
        self.successes = 0
        self.tripped = False

    def record(self, *, success: bool) -> bool:
        """Record one outcome; returns True on the call that trips the breaker."""
        if success:
            self.successes += 1
            self.consecutive_failures = 0
            return False
        self.consecutive_failures += 1
        if (
            not self.tripped
            and self.successes == 0
            and self.consecutive_failures >= self.threshold
        ):
            self.tripped = True
            return True
        return False


@dataclasses.dataclass(frozen=True, slots=True)
class CoordinatorResult[R]:
    """Results aligned with the original inputs.

    Entries are None for skipped and never-attempted inputs.
    """

    results: tuple[OrderedResult[R] | None, ...]
    skipped: tuple[int, ...]
    not_attempted: tuple[int, ...]
    aborted_by: CancelOrigin | None = None
    breaker_tripped: bool = False


def _default_is_failure(value: Any) -> bool:
    return getattr(value, "success", True) is False


def _cancelled_value(value: Any) -> bool:
    error = getattr(value, "error", None)
    return error is not None and is_cancellation(error)


async def run_batch_coordinator[I, P, R](
    inputs: Sequence[I],
    execute: Callable[[P, CancelToken], Awaitable[R]],
    *,
    prepare: Callable[[I], P | None | Awaitable[P | None]] | None = None,
    concurrency: int = 3,
    cancel_token: CancelToken | None = None,
    callbacks: OrderedCallbacks | None = None,
    breaker: CircuitBreaker | None = None,
    is_failure: Callable[[R], bool] = _default_is_failure,
    yield_every: int = DEFAULT_YIELD_EVERY,
) -> CoordinatorResult[R]:
    """Prepare `inputs`, run the survivors through the scheduler, map back.

    Args:
        inputs: Caller-visible inputs; callback indices refer to this list.
        execute: Performs one call. Receives the prepared value and a token
            that is cancelled by the caller's token or by the breaker.
        prepare: Optional per-input preparation; returning None skips it.
        concurrency: Maximum number of concurrent `execute` calls.
        cancel_token: Caller's cancellation token.
        callbacks: Ordered callbacks, invoked with original indices.
        breaker: Consecutive-failure breaker, fed each outcome as the call
            finishes (completion order, not emission order).
        is_failure: Classifies a fulfilled value as a failure for the breaker.
            Defaults to treating objects with ``success == False`` as failures.
        yield_every: Cooperative yield cadence for prepare and emission.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    token = cancel_token.child() if cancel_token is not None else CancelToken()
    cbs = callbacks or OrderedCallbacks()

    index_map: list[int] = []
    prepared: list[Any] = []
    skipped: list[int] = []
    for position, item in enumerate(inputs):
        value = prepare(item) if prepare is not None else item
        if inspect.isawaitable(value):
            value = await value
        if value is None:
            skipped.append(position)
        else:
            index_map.append(position)
            prepared.append(value)
        if (position + 1) % yield_every == 0:
            await asyncio.sleep(0)

    if skipped:
        log.debug("Prepare skipped %d of %d input(s)", len(skipped), len(inputs))

    def observe(failed: bool, cancelled: bool) -> None:
        if breaker is None or cancelled:
            return
        if breaker.record(success=not failed):
            log.warning(
                "Circuit breaker tripped after %d consecutive failure(s); "
                "aborting remaining batch items",
                breaker.consecutive_failures,
            )
            token.cancel("circuit_breaker")

    # Outcomes reach the breaker in completion order.
    def make_task(value: Any) -> Callable[[], Awaitable[R]]:
        async def run() -> R:
            try:
                result = await execute(value, token)
            except Exception as exc:
                observe(True, is_cancellation(exc))
                raise
            observe(is_failure(result), _cancelled_value(result))
            return result

        return run

    async def on_complete(index: int, value: R) -> None:
        await call_maybe_async(cbs.on_item_complete, index_map[index], value)

    async def on_error(index: int, error: BaseException) -> None:
        await call_maybe_async(cbs.on_item_error, index_map[index], error)

    async def on_progress(done: int, total: int) -> None:
        await call_maybe_async(cbs.on_progress, done, total)

    scheduled = await run_concurrent_ordered(
        [make_task(v) for v in prepared],
        concurrency=concurrency,
        cancel_token=token,
        callbacks=OrderedCallbacks(on_complete, on_error, on_progress),
        yield_every=yield_every,
    )

    aligned: list[OrderedResult[R] | None] = [None] * len(inputs)
    not_attempted: list[int] = []
    for position, result in enumerate(scheduled):
        original = index_map[position]
        if result is None:
            not_attempted.append(original)
        else:
            aligned[original] = dataclasses.replace(result, index=original)

    return CoordinatorResult(
        results=tuple(aligned),
        skipped=tuple(skipped),
        not_attempted=tuple(not_attempted),
        aborted_by=token.origin,
        breaker_tripped=breaker is not None and breaker.tripped,
    )
