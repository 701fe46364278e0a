"""Cooperative cancellation primitives shared by the engine and the upstream client."""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from backend.core.errors import TaskCancelledError

T = TypeVar("T")


class CancellationToken:
    """
    One-shot flag tripped when a task is cancelled.

    The engine creates one per running task and hands it to the executor;
    anything that suspends for a long time can race its work against it.
    """

    def __init__(self, task_id: str | None = None):
        self.task_id = task_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TaskCancelledError(self.task_id)


async def race_cancellation(
    awaitable: Awaitable[T], token: CancellationToken | None
) -> T:
    """
    Await `awaitable` unless `token` trips first.

    Raises:
        TaskCancelledError: If the token trips before the work finishes; the
            work itself is cancelled
    """
    if token is None:
        return await awaitable
    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise TaskCancelledError(token.task_id)

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for fut in (work, waiter):
            if not fut.done():
                fut.cancel()

    if work in done:
        return work.result()

    # Let the abandoned work unwind before reporting cancellation
    await asyncio.gather(work, return_exceptions=True)
    raise TaskCancelledError(token.task_id)
