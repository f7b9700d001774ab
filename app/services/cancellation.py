# =============================================================================
# Cancellation Token — Cooperative, Set-Once
# =============================================================================
#
# One token per orchestration run (or per answer stream). Any caller may
# request cancellation; the run observes it:
#   - immediately, while waiting on dependencies (`guard()`)
#   - between steps, before dispatching the next capability (`raise_if_cancelled()`)
#
# A capability that is already executing is never interrupted.
#
# DESIGN DECISION: set-once.
# The first `cancel()` call records its reason; later calls are no-ops and
# report False, so concurrent cancel requests cannot overwrite each other.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from app.exceptions import OrchestrationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled by request") -> bool:
        """Request cancellation. Returns False if it was already requested."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        logger.info("Cancellation requested: %s", reason)
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OrchestrationCancelledError(self._reason or "cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless cancellation is requested first.

        If the token fires before the awaitable finishes, the awaitable is
        cancelled and OrchestrationCancelledError is raised.
        """
        work = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            self.raise_if_cancelled()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise OrchestrationCancelledError(self._reason or "cancelled")
