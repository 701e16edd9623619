from typing import Dict, FrozenSet

from django.conf import settings

from requisitions.models import Request

ITEM_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    Request.STATUS_PENDING: frozenset({Request.STATUS_ASSIGNED, Request.STATUS_REJECTED}),
    Request.STATUS_ASSIGNED: frozenset({Request.STATUS_RETURNED_PENDING_INSPECTION}),
    Request.STATUS_RETURNED_PENDING_INSPECTION: frozenset({Request.STATUS_CLOSED}),
    Request.STATUS_REJECTED: frozenset(),
    Request.STATUS_CLOSED: frozenset(),
}

CUSTOM_RESPONSE_STATUSES: FrozenSet[str] = frozenset(
    {
        Request.STATUS_UNDER_REVIEW,
        Request.STATUS_PURCHASING,
        Request.STATUS_APPROVED,
        Request.STATUS_REJECTED,
    }
)

CUSTOM_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    Request.STATUS_PENDING: CUSTOM_RESPONSE_STATUSES,
    Request.STATUS_UNDER_REVIEW: CUSTOM_RESPONSE_STATUSES - {Request.STATUS_UNDER_REVIEW},
    Request.STATUS_PURCHASING: CUSTOM_RESPONSE_STATUSES - {Request.STATUS_PURCHASING},
    Request.STATUS_APPROVED: frozenset(),
    Request.STATUS_REJECTED: frozenset(),
}

REPORT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    Request.STATUS_PENDING: frozenset({Request.STATUS_UNDER_REVIEW, Request.STATUS_REJECTED}),
    Request.STATUS_UNDER_REVIEW: frozenset({Request.STATUS_IN_PROGRESS, Request.STATUS_REJECTED}),
    Request.STATUS_IN_PROGRESS: frozenset({Request.STATUS_RESOLVED, Request.STATUS_REJECTED}),
    Request.STATUS_RESOLVED: frozenset(),
    Request.STATUS_REJECTED: frozenset(),
}

TRANSITIONS_BY_TYPE: Dict[str, Dict[str, FrozenSet[str]]] = {
    Request.TYPE_ITEM: ITEM_TRANSITIONS,
    Request.TYPE_CUSTOM: CUSTOM_TRANSITIONS,
    Request.TYPE_REPORT: REPORT_TRANSITIONS,
}

# Forward order of item statuses; used to tell a stale retry from a
# request that has not reached the expected state yet.
ITEM_STATUS_RANK: Dict[str, int] = {
    Request.STATUS_PENDING: 0,
    Request.STATUS_ASSIGNED: 1,
    Request.STATUS_RETURNED_PENDING_INSPECTION: 2,
    Request.STATUS_REJECTED: 3,
    Request.STATUS_CLOSED: 3,
}

# Statuses whose request still holds reserved stock.
RESERVATION_HOLDING_STATUSES: FrozenSet[str] = frozenset(
    {Request.STATUS_ASSIGNED, Request.STATUS_RETURNED_PENDING_INSPECTION}
)

# Custom statuses whose estimated cost counts against the budget.
BUDGET_COMMITTED_STATUSES: FrozenSet[str] = frozenset({Request.STATUS_APPROVED})

INSPECTION_CONDITION_TO_ITEM_STATUS: Dict[str, str] = {
    "available": "Available",
    "under_maintenance": "UnderMaintenance",
    "damaged": "Damaged",
}

ADMIN_RESPONSE_MAX_LENGTH = 1000
NOTES_MAX_LENGTH = 1000


def is_terminal(request_type: str, status: str) -> bool:
    transitions = TRANSITIONS_BY_TYPE.get(request_type, {})
    return not transitions.get(status)


def can_transition(request_type: str, current: str, target: str) -> bool:
    return target in TRANSITIONS_BY_TYPE.get(request_type, {}).get(current, frozenset())


def compact_feed_limit() -> int:
    return int(getattr(settings, "NOTIFICATION_COMPACT_LIMIT", 15))


def teacher_feed_limit() -> int:
    return int(getattr(settings, "NOTIFICATION_TEACHER_LIMIT", 10))


def assigned_window_hours() -> int:
    return int(getattr(settings, "NOTIFICATION_ASSIGNED_WINDOW_HOURS", 24))


def due_soon_days() -> int:
    return int(getattr(settings, "NOTIFICATION_DUE_SOON_DAYS", 3))


def poll_interval_seconds() -> int:
    return int(getattr(settings, "NOTIFICATION_POLL_SECONDS", 2))
