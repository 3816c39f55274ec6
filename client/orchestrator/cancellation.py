"""
Cancellation primitives.

Responsibilities:
- CancelToken: one-shot cancellation signal shared by a turn or voice session
- await_or_cancel(): race any awaitable against a token and a timeout budget

Non-responsibilities:
- NO retry logic
- NO decision about what happens after cancellation
- NO knowledge of HTTP or WebSocket details (callers close their own resources)

This module is infrastructure only.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from orchestrator.errors import StreamCancelled, StreamTimeout


T = TypeVar("T")

CancelCallback = Callable[[], None]


class CancelToken:
    """
    One-shot cancellation signal.

    cancel() is idempotent and may be called from any coroutine on the
    loop; registered callbacks run synchronously, exactly once.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[CancelCallback] = []
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def add_callback(self, cb: CancelCallback) -> None:
        """Run cb on cancellation (immediately if already cancelled)."""
        if self._event.is_set():
            cb()
            return
        self._callbacks.append(cb)

    def remove_callback(self, cb: CancelCallback) -> None:
        try:
            self._callbacks.remove(cb)
        except ValueError:
            pass

    async def wait(self) -> None:
        await self._event.wait()


async def await_or_cancel(
    awaitable: Awaitable[T],
    token: CancelToken | None,
    *,
    timeout_s: float | None,
    partial_content: str = "",
) -> T:
    """
    Await `awaitable` unless the token fires or the timeout elapses first.

    Raises:
        StreamCancelled if the token fired (the awaitable is cancelled).
        StreamTimeout if timeout_s elapsed first.
    Both carry partial_content.
    """
    if token is not None and token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise StreamCancelled(token.reason or "cancelled", partial_content=partial_content)

    work = asyncio.ensure_future(awaitable)
    waiter: asyncio.Future[None] | None = (
        asyncio.ensure_future(token.wait()) if token is not None else None
    )
    pending = {work} if waiter is None else {work, waiter}

    try:
        done, _ = await asyncio.wait(
            pending,
            timeout=timeout_s,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        work.cancel()
        if waiter is not None:
            waiter.cancel()
        raise

    if work in done:
        if waiter is not None:
            waiter.cancel()
        return work.result()

    work.cancel()
    # Drain the cancelled task so no "exception never retrieved" warning leaks
    await asyncio.gather(work, return_exceptions=True)

    if waiter is not None and waiter in done:
        raise StreamCancelled(
            token.reason if token is not None and token.reason else "cancelled",
            partial_content=partial_content,
        )

    if waiter is not None:
        waiter.cancel()
    raise StreamTimeout(
        f"no data within {timeout_s:.1f}s" if timeout_s is not None else "timed out",
        partial_content=partial_content,
    )
