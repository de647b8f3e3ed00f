from .lifecycle import (
    ActionAvailability,
    CaseSummary,
    WithdrawalActionState,
    normalize_case_status,
    resolve_case_state,
    summarize_case,
)
from .refresh import RefreshCoordinator, RefreshFlags
from .snapshots import (
    CollectionSnapshot,
    TaskSnapshot,
    document_key,
    document_snapshot,
    has_changed,
    merge_documents,
    message_snapshot,
    prune_optimistic,
    task_snapshot,
)
from .transport import RealtimeTransport, flags_for_event

__all__ = [
    "ActionAvailability",
    "CaseSummary",
    "CollectionSnapshot",
    "RealtimeTransport",
    "RefreshCoordinator",
    "RefreshFlags",
    "TaskSnapshot",
    "WithdrawalActionState",
    "document_key",
    "document_snapshot",
    "flags_for_event",
    "has_changed",
    "merge_documents",
    "message_snapshot",
    "normalize_case_status",
    "prune_optimistic",
    "resolve_case_state",
    "summarize_case",
    "task_snapshot",
]
