from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import FIXTURE
from paraconnect.clients import CaseApiError, MockCaseApiClient

NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


def _server(viewer_id: str, role: str) -> MockCaseApiClient:
    return MockCaseApiClient(FIXTURE, viewer_id=viewer_id, viewer_role=role, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_fixture_cases_are_parsed_from_mixed_field_shapes():
    client = _server("a1", "attorney")

    funded = await client.get_case("case-100")
    assert funded.attorney_id == "a1"
    assert funded.paralegal_id == "p1"
    assert funded.currency == "usd"
    assert [task.completed for task in funded.tasks] == [False, False, False]

    listed = await client.get_case("case-200")
    assert listed.applicant_ids == ["p2"]
    assert listed.locked_total_cents == 45000

    messages = await client.list_messages("case-100")
    assert messages[1].sender_id == "p1"
    assert messages[1].sender_role == "paralegal"


@pytest.mark.asyncio
async def test_unknown_case_is_not_found():
    with pytest.raises(CaseApiError) as exc_info:
        await _server("a1", "attorney").get_case("case-999")
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_withdrawal_without_progress_finalizes_zero_payout():
    client = _server("p1", "paralegal")
    await client.withdraw("case-100")

    case = await client.get_case("case-100")
    assert case.status == "paused"
    assert case.pause_reason == "paralegal_withdrew"
    assert case.withdrawn_at == NOW
    assert case.payout_finalized_type == "zero_auto"
    assert case.partial_payout_cents == 0


@pytest.mark.asyncio
async def test_only_the_assigned_paralegal_can_withdraw():
    with pytest.raises(CaseApiError) as exc_info:
        await _server("p2", "paralegal").withdraw("case-100")
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_partial_payout_is_bounded_by_remaining_balance():
    client = _server("a1", "attorney")

    with pytest.raises(CaseApiError) as exc_info:
        await client.finalize_partial_payout("case-300", 90001)
    assert exc_info.value.status_code == 400

    await client.finalize_partial_payout("case-300", 90000)
    case = await client.get_case("case-300")
    assert case.partial_payout_cents == 90000
    assert case.payout_finalized_type == "partial"

    with pytest.raises(CaseApiError) as exc_info:
        await client.reject_payout("case-300")
    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_fixture_files_can_be_reviewed_by_their_stored_id():
    client = _server("a1", "attorney")

    updated = await client.update_document_status("case-100", "f-1", "attorney_revision")

    assert updated.id == "f-1"
    assert updated.status == "attorney_revision"
    assert [doc.status for doc in await client.list_documents("case-100")] == ["attorney_revision"]
    with pytest.raises(CaseApiError) as exc_info:
        await client.update_document_status("case-100", "f-404", "approved")
    assert exc_info.value.status_code == 404
