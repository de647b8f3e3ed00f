from __future__ import annotations

import pytest

from conftest import FIXTURE, wait_for
from paraconnect.clients import MockCaseApiClient
from paraconnect.sync.refresh import RefreshFlags
from paraconnect.sync.transport import RealtimeTransport, flags_for_event


def test_event_names_map_to_refresh_scopes():
    assert flags_for_event("messages") == RefreshFlags(messages=True)
    assert flags_for_event("documents") == RefreshFlags(documents=True)
    assert flags_for_event("tasks") == RefreshFlags(tasks=True)
    assert flags_for_event("case") == RefreshFlags.everything()
    assert flags_for_event("ping") is None
    assert flags_for_event("something-new") is None


@pytest.mark.asyncio
async def test_stream_events_are_dispatched_and_pings_ignored():
    client = MockCaseApiClient(FIXTURE)
    received: list[RefreshFlags] = []

    async def on_refresh(flags: RefreshFlags) -> None:
        received.append(flags)

    transport = RealtimeTransport(client, on_refresh, poll_interval=0.01, retry_seconds=0.01)
    transport.start_stream("case-100")
    await wait_for(lambda: client.subscriber_count("case-100") == 1)
    assert transport.stream_active is True
    assert transport.polling is False

    client.publish("case-100", "ping")
    client.publish("case-100", "messages")
    client.publish("case-100", "documents")
    await wait_for(lambda: len(received) == 2)
    await transport.drain()

    assert received == [RefreshFlags(messages=True), RefreshFlags(documents=True)]
    transport.close()


@pytest.mark.asyncio
async def test_stream_failure_falls_back_to_polling_and_recovers():
    client = MockCaseApiClient(FIXTURE)
    client.stream_available = False
    received: list[RefreshFlags] = []

    async def on_refresh(flags: RefreshFlags) -> None:
        received.append(flags)

    transport = RealtimeTransport(client, on_refresh, poll_interval=0.01, retry_seconds=0.02)
    transport.start_stream("case-100")

    await wait_for(lambda: RefreshFlags.everything() in received)
    assert transport.stream_active is False
    assert transport.polling is True

    client.stream_available = True
    await wait_for(lambda: transport.stream_active)
    assert transport.polling is False

    transport.close()
    assert transport.polling is False
    assert transport.case_id is None


@pytest.mark.asyncio
async def test_polling_is_idempotent_and_never_runs_beside_the_stream():
    client = MockCaseApiClient(FIXTURE)

    async def on_refresh(flags: RefreshFlags) -> None:
        return None

    transport = RealtimeTransport(client, on_refresh, poll_interval=0.01)
    transport.start_polling()
    first = transport._poll_task
    transport.start_polling()
    assert transport._poll_task is first

    transport.start_stream("case-100")
    await wait_for(lambda: transport.stream_active)
    assert transport.polling is False
    transport.start_polling()
    assert transport.polling is False

    transport.close()
