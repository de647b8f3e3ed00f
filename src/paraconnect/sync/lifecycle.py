"""
Client-side case lifecycle.

The server exposes raw `status`, escrow and pause fields rather than a single state enum. This
module derives the state the workspace cares about and gates every case action on it. Everything
here is a pure function of plain data so it can be evaluated fresh on every case load.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Sequence

from paraconnect.types import Case, Task, Viewer

DRAFT = "draft"
OPEN = "open"
APPLIED = "applied"
FUNDED_IN_PROGRESS = "funded_in_progress"
PAUSED = "paused"
DISPUTED = "disputed"
COMPLETED = "completed"
CLOSED = "closed"

PAUSE_REASON_WITHDREW = "paralegal_withdrew"
ZERO_PAYOUT_TYPE = "zero_auto"
DEFAULT_WITHDRAWAL_HOLD = timedelta(hours=24)

_FUNDED_WORKSPACE_STATUSES = frozenset({"in progress", "in_progress"})
_STATUS_ALIASES = {
    "in_progress": "in progress",
    "cancelled": CLOSED,
    "canceled": CLOSED,
    "assigned": OPEN,
    "awaiting_funding": OPEN,
    "active": "in progress",
    "awaiting_documents": "in progress",
    "reviewing": "in progress",
    "funded_in_progress": "in progress",
}
_WITHDRAW_BLOCKED = frozenset({PAUSED, DISPUTED, COMPLETED, CLOSED})


@dataclass(frozen=True, slots=True)
class WithdrawalActionState:
    show_partial: bool = False
    show_reject: bool = False
    show_relist: bool = False
    banner: str | None = None
    remaining_cents: int = 0
    hold_ends_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ActionAvailability:
    complete: bool = False
    withdraw: bool = False
    partial_payout: bool = False
    reject_payout: bool = False
    relist: bool = False
    dispute: bool = False
    dispute_from_case: bool = False

    def enabled(self) -> list[str]:
        return [item.name for item in fields(self) if getattr(self, item.name)]


@dataclass(frozen=True, slots=True)
class CaseSummary:
    """Everything the workspace renders about a case besides its collections."""

    state: str
    workspace_unlocked: bool
    actions: ActionAvailability
    withdrawal: WithdrawalActionState


def normalize_case_status(value: str | None) -> str:
    if not value:
        return ""
    lowered = str(value).strip().lower()
    if not lowered:
        return ""
    return _STATUS_ALIASES.get(lowered, lowered)


def has_paralegal(case: Case) -> bool:
    return bool(case.paralegal_id)


def is_escrow_funded(case: Case) -> bool:
    return bool(case.escrow_intent_id) and str(case.escrow_status or "").lower() == "funded"


def viewer_applied(case: Case, viewer_id: str | None) -> bool:
    if not viewer_id:
        return False
    return str(viewer_id) in case.applicant_ids


def resolve_case_state(case: Case, viewer_id: str | None = None) -> str:
    status = normalize_case_status(case.status)
    if not status:
        return ""
    if has_paralegal(case) and is_escrow_funded(case) and status in _FUNDED_WORKSPACE_STATUSES:
        return FUNDED_IN_PROGRESS
    if status == OPEN:
        return APPLIED if viewer_applied(case, viewer_id) else OPEN
    return status


def can_use_workspace(case: Case, viewer_id: str | None = None) -> bool:
    return resolve_case_state(case, viewer_id) == FUNDED_IN_PROGRESS


def all_tasks_complete(tasks: Sequence[Task] | Sequence[bool]) -> bool:
    """True when there is at least one task and every task is done."""

    if not tasks:
        return False
    return all(task.completed if isinstance(task, Task) else bool(task) for task in tasks)


def financial_actions_locked(case: Case) -> bool:
    return normalize_case_status(case.status) == DISPUTED


def remaining_cents(case: Case) -> int:
    return max(0, case.locked_total_cents - case.partial_payout_cents)


def validate_partial_payout(amount_cents: int, remaining: int) -> bool:
    return 0 <= amount_cents <= remaining


def can_complete_case(
    case: Case,
    viewer: Viewer,
    *,
    rendered_tasks: Sequence[bool] | None = None,
) -> bool:
    if not viewer.is_attorney:
        return False
    if resolve_case_state(case, viewer.id) != FUNDED_IN_PROGRESS:
        return False
    if case.read_only or case.payment_released or financial_actions_locked(case):
        return False
    if not has_paralegal(case):
        return False
    # Checkbox state wins over the last fetched record when the list is on screen.
    if rendered_tasks is not None:
        return all_tasks_complete(rendered_tasks)
    return all_tasks_complete(case.tasks)


def can_withdraw(case: Case, viewer: Viewer) -> bool:
    if not viewer.is_paralegal or not case.paralegal_id:
        return False
    if str(case.paralegal_id) != str(viewer.id):
        return False
    if normalize_case_status(case.status) in _WITHDRAW_BLOCKED:
        return False
    return not all_tasks_complete(case.tasks)


def is_withdrawal_pause(case: Case) -> bool:
    return normalize_case_status(case.status) == PAUSED and case.pause_reason == PAUSE_REASON_WITHDREW


def resolve_withdrawal_actions(
    case: Case,
    viewer: Viewer,
    now: datetime,
    *,
    hold: timedelta = DEFAULT_WITHDRAWAL_HOLD,
) -> WithdrawalActionState:
    remaining = remaining_cents(case)
    finalized = case.payout_finalized_at is not None
    relisted = case.relisted_at is not None
    withdrawn_at = case.withdrawn_at or case.paused_at
    hold_ends_at = withdrawn_at + hold if withdrawn_at else None

    if not finalized and not is_withdrawal_pause(case):
        return WithdrawalActionState(remaining_cents=remaining)

    banner = _withdrawal_banner(case, now, hold_ends_at)
    if not viewer.is_attorney or financial_actions_locked(case):
        return WithdrawalActionState(banner=banner, remaining_cents=remaining, hold_ends_at=hold_ends_at)

    hold_elapsed = hold_ends_at is not None and now >= hold_ends_at
    decide = is_withdrawal_pause(case) and hold_elapsed and not finalized
    return WithdrawalActionState(
        show_partial=decide,
        show_reject=decide,
        show_relist=finalized and not relisted,
        banner=banner,
        remaining_cents=remaining,
        hold_ends_at=hold_ends_at,
    )


def can_finalize_partial_payout(
    case: Case, viewer: Viewer, now: datetime, *, hold: timedelta = DEFAULT_WITHDRAWAL_HOLD
) -> bool:
    return resolve_withdrawal_actions(case, viewer, now, hold=hold).show_partial


def can_reject_payout(
    case: Case, viewer: Viewer, now: datetime, *, hold: timedelta = DEFAULT_WITHDRAWAL_HOLD
) -> bool:
    return resolve_withdrawal_actions(case, viewer, now, hold=hold).show_reject


def can_relist(case: Case, viewer: Viewer) -> bool:
    if not viewer.is_attorney or financial_actions_locked(case):
        return False
    return case.payout_finalized_at is not None and case.relisted_at is None


def can_open_dispute(case: Case, viewer: Viewer) -> bool:
    if not viewer.is_paralegal or str(case.paralegal_id or "") != str(viewer.id):
        return False
    return normalize_case_status(case.status) not in {DISPUTED, CLOSED, COMPLETED, ""}


def can_open_dispute_from_case(case: Case, viewer: Viewer) -> bool:
    # Disputes are not offered from the case menu until product signs off on the flow.
    return False


def summarize_case(
    case: Case,
    viewer: Viewer,
    now: datetime,
    *,
    rendered_tasks: Sequence[bool] | None = None,
    hold: timedelta = DEFAULT_WITHDRAWAL_HOLD,
) -> CaseSummary:
    state = resolve_case_state(case, viewer.id)
    withdrawal = resolve_withdrawal_actions(case, viewer, now, hold=hold)
    actions = ActionAvailability(
        complete=can_complete_case(case, viewer, rendered_tasks=rendered_tasks),
        withdraw=can_withdraw(case, viewer),
        partial_payout=withdrawal.show_partial,
        reject_payout=withdrawal.show_reject,
        relist=withdrawal.show_relist,
        dispute=can_open_dispute(case, viewer),
        dispute_from_case=can_open_dispute_from_case(case, viewer),
    )
    return CaseSummary(
        state=state,
        workspace_unlocked=state == FUNDED_IN_PROGRESS,
        actions=actions,
        withdrawal=withdrawal,
    )


def format_cents(cents: int, currency: str = "usd") -> str:
    symbol = "$" if currency.lower() in {"usd", ""} else f"{currency.upper()} "
    if cents % 100 == 0:
        return f"{symbol}{cents // 100:,}"
    return f"{symbol}{cents / 100:,.2f}"


def _withdrawal_banner(case: Case, now: datetime, hold_ends_at: datetime | None) -> str:
    if case.payout_finalized_type == ZERO_PAYOUT_TYPE:
        return "Paralegal withdrew before any tasks were completed. A $0 payout was issued."
    if case.relisted_at is not None:
        return "Case was relisted after the paralegal withdrew."
    if case.payout_finalized_at is not None:
        if case.payout_finalized_type == "rejected":
            return "Paralegal withdrew. The case was closed without releasing funds."
        paid = format_cents(case.partial_payout_cents, case.currency)
        return f"Paralegal withdrew. A partial payout of {paid} was issued."
    if hold_ends_at is not None and now < hold_ends_at:
        return (
            "Paralegal withdrew. Payout decisions unlock at "
            f"{hold_ends_at.strftime('%Y-%m-%d %H:%M UTC')}."
        )
    return "Paralegal withdrew. Choose a partial payout or close the case without releasing funds."
