from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from paraconnect.clients.base import CaseApiClient, CaseApiError
from paraconnect.sync.refresh import RefreshFlags

logger = logging.getLogger(__name__)

EVENT_FLAGS: dict[str, RefreshFlags] = {
    "messages": RefreshFlags(messages=True),
    "documents": RefreshFlags(documents=True),
    "tasks": RefreshFlags(tasks=True),
    "case": RefreshFlags.everything(),
}


def flags_for_event(name: str) -> RefreshFlags | None:
    """Map a push event to the scope it invalidates; keepalives and unknown events map to nothing."""

    return EVENT_FLAGS.get(name)


class RealtimeTransport:
    """
    Keeps one case live over the server-push stream, degrading to fixed-interval polling.

    Polling only ever runs while the stream is down. Stream failures are logged and never raised;
    reconnects happen after a fixed delay (the server may override it with a `retry:` field), with
    no exponential backoff.
    """

    def __init__(
        self,
        client: CaseApiClient,
        on_refresh: Callable[[RefreshFlags], Awaitable[None]],
        *,
        poll_interval: float = 3.0,
        retry_seconds: float = 3.0,
    ) -> None:
        self._client = client
        self._on_refresh = on_refresh
        self._poll_interval = poll_interval
        self._retry_seconds = retry_seconds
        self._stream_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._dispatched: set[asyncio.Task[None]] = set()
        self.case_id: str | None = None
        self.stream_active = False

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start_stream(self, case_id: str) -> None:
        self.stop_stream()
        self.case_id = case_id
        self._stream_task = asyncio.create_task(self._run_stream(case_id), name=f"case-stream-{case_id}")

    def stop_stream(self) -> None:
        if self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None
        self.stream_active = False

    def start_polling(self) -> None:
        if self.stream_active or self.polling:
            return
        self._poll_task = asyncio.create_task(self._poll(), name=f"case-poll-{self.case_id}")
        logger.info("Polling case", extra={"case_id": self.case_id, "interval": self._poll_interval})

    def stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    def close(self) -> None:
        self.stop_stream()
        self.stop_polling()
        self.case_id = None

    async def drain(self) -> None:
        """Wait for refreshes already handed to the workspace."""

        while self._dispatched:
            await asyncio.gather(*list(self._dispatched), return_exceptions=True)

    async def _run_stream(self, case_id: str) -> None:
        retry_seconds = self._retry_seconds
        while True:
            try:
                async with self._client.open_case_stream(case_id) as events:
                    self._stream_opened(case_id)
                    async for event in events:
                        if event.retry_ms is not None:
                            retry_seconds = event.retry_ms / 1000
                        flags = flags_for_event(event.name)
                        if flags is not None:
                            self._dispatch(flags)
                logger.info("Case stream closed by server", extra={"case_id": case_id})
            except CaseApiError as exc:
                logger.info(
                    "Case stream unavailable, falling back to polling",
                    extra={"case_id": case_id, "error": exc.message, "status_code": exc.status_code},
                )
            self._stream_lost()
            await asyncio.sleep(retry_seconds)

    def _stream_opened(self, case_id: str) -> None:
        logger.debug("Case stream open", extra={"case_id": case_id})
        self.stream_active = True
        self.stop_polling()

    def _stream_lost(self) -> None:
        self.stream_active = False
        self.start_polling()

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            self._dispatch(RefreshFlags.everything())

    def _dispatch(self, flags: RefreshFlags) -> None:
        task = asyncio.create_task(self._on_refresh(flags))
        self._dispatched.add(task)
        task.add_done_callback(self._dispatch_done)

    def _dispatch_done(self, task: asyncio.Task[None]) -> None:
        self._dispatched.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Refresh handler failed", exc_info=task.exception())
