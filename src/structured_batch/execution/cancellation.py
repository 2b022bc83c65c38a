"""Cooperative cancellation for feature calls and batches.

A `CancelToken` is a one-shot flag plus an `asyncio.Event`. Children created
with `child()` are cancelled with their parent but can also be cancelled on
their own, which is how the batch circuit breaker stops the rest of a batch
without touching the caller's token.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
import inspect
import logging
from typing import Any
import weakref

from structured_batch.core.exceptions import (
    CancelOrigin,
    OperationCancelledError,
    RequestTimeoutError,
)

log = logging.getLogger(__name__)


class CancelToken:
    """One-shot cooperative cancellation signal."""

    __slots__ = ("__weakref__", "_children", "_event", "_origin")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._origin: CancelOrigin | None = None
        self._children: weakref.WeakSet[CancelToken] = weakref.WeakSet()

    @property
    def cancelled(self) -> bool:
        """Whether `cancel` has been called on this token or an ancestor."""
        return self._event.is_set()

    @property
    def origin(self) -> CancelOrigin | None:
        """Who cancelled, or None while the token is live."""
        return self._origin

    def cancel(self, origin: CancelOrigin = "user") -> None:
        """Cancel this token and every live child. Later calls are ignored."""
        if self._event.is_set():
            return
        self._origin = origin
        self._event.set()
        log.debug("Cancellation requested (origin=%s)", origin)
        for child in list(self._children):
            child.cancel(origin)

    def raise_if_cancelled(self) -> None:
        """Raise `OperationCancelledError` carrying the origin if cancelled."""
        if self._event.is_set():
            raise OperationCancelledError(origin=self._origin or "user")

    async def wait(self) -> CancelOrigin:
        """Block until cancelled; returns the origin."""
        await self._event.wait()
        return self._origin or "user"

    def child(self) -> CancelToken:
        """Return a linked token cancelled together with this one."""
        token = CancelToken()
        if self._event.is_set():
            token.cancel(self._origin or "user")
        else:
            self._children.add(token)
        return token

    def __repr__(self) -> str:
        state = f"cancelled, origin={self._origin}" if self.cancelled else "live"
        return f"CancelToken({state})"


async def race_call[T](
    call: Awaitable[T],
    token: CancelToken | None = None,
    timeout_s: float | None = None,
) -> T:
    """Await `call` against a cancellation token and an independent timeout.

    A call that has already finished wins over a cancellation or timeout
    that happened at the same time.

    Raises:
        OperationCancelledError: The token fired first; carries its origin.
        RequestTimeoutError: `timeout_s` elapsed first.
    """
    if token is not None and token.cancelled:
        # The call was never scheduled.
        if inspect.iscoroutine(call):
            call.close()
        token.raise_if_cancelled()
    task: asyncio.Task[T] = asyncio.ensure_future(call)
    waiters: set[asyncio.Future[Any]] = {task}
    cancel_waiter: asyncio.Task[CancelOrigin] | None = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED
        )
        if task in done:
            return task.result()
        if cancel_waiter is not None and cancel_waiter in done:
            raise OperationCancelledError(origin=cancel_waiter.result())
        raise RequestTimeoutError(timeout_s)
    finally:
        pending = [w for w in waiters if not w.done()]
        for waiter in pending:
            waiter.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
