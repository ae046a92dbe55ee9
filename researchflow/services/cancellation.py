from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from researchflow.errors import ResearchCancelledError

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancel flag shared by every stage of one research session."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ResearchCancelledError(f"Research cancelled: {self.reason}")

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        The losing side is cancelled; a cancel wins ties.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if self._event.is_set():
            if not work.done():
                work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise ResearchCancelledError(f"Research cancelled: {self.reason}")
        return work.result()
