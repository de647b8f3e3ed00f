from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RefreshFlags:
    messages: bool = False
    documents: bool = False
    tasks: bool = False
    case: bool = False

    @classmethod
    def everything(cls) -> "RefreshFlags":
        return cls(messages=True, documents=True, tasks=True, case=True)

    def merge(self, other: "RefreshFlags") -> "RefreshFlags":
        return RefreshFlags(
            messages=self.messages or other.messages,
            documents=self.documents or other.documents,
            tasks=self.tasks or other.tasks,
            case=self.case or other.case,
        )

    def any(self) -> bool:
        return self.messages or self.documents or self.tasks or self.case


class RefreshCoordinator:
    """
    Serializes workspace refreshes.

    At most one `perform` call runs at a time. Requests that arrive while one is in flight, or while
    refreshing is suppressed, are OR-merged into a pending set that is drained as a single
    follow-up, so bursts of push events never fan out into parallel fetches and no requested scope
    is lost.
    """

    def __init__(
        self,
        perform: Callable[[RefreshFlags], Awaitable[None]],
        *,
        suppressed: Callable[[], str | None] | None = None,
    ) -> None:
        self._perform = perform
        self._suppressed = suppressed or (lambda: None)
        self._pending = RefreshFlags()
        self._in_flight = False

    @property
    def pending(self) -> RefreshFlags:
        return self._pending

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def request(self, flags: RefreshFlags) -> None:
        self._pending = self._pending.merge(flags)
        await self._drain()

    async def resume(self) -> None:
        await self._drain()

    def defer(self, flags: RefreshFlags) -> None:
        """Keep `flags` pending without starting a refresh."""

        self._pending = self._pending.merge(flags)

    def reset(self) -> None:
        self._pending = RefreshFlags()

    async def _drain(self) -> None:
        if self._in_flight:
            return
        while self._pending.any():
            reason = self._suppressed()
            if reason:
                logger.debug("Refresh deferred", extra={"reason": reason, "pending": self._pending})
                return
            flags, self._pending = self._pending, RefreshFlags()
            self._in_flight = True
            try:
                await self._perform(flags)
            finally:
                self._in_flight = False
