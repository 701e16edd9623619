"""
Derived notifications.

Notifications are never stored. Each feed is recomputed from current request
state and the wall clock, and every entry has a deterministic id of the form
``{kind}-{request_id}`` so that read markers held by the client keep matching
across recomputations. Clients poll the feed (see
``rules.poll_interval_seconds``); a few seconds of staleness is expected.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from django.db import DatabaseError
from django.utils import timezone

from requisitions import rules
from requisitions.models import Request

logger = logging.getLogger("property.audit")

FEED_COMPACT = "compact"
FEED_FULL = "full"
FEEDS = (FEED_COMPACT, FEED_FULL)

KIND_URGENT = "urgent"
KIND_PENDING = "pending"
KIND_OVERDUE = "overdue"
KIND_ASSIGNED = "assigned"
KIND_INSPECTION = "inspection"
KIND_DUE_SOON = "due-soon"
KIND_REJECTED = "rejected"

_TEACHER_CUSTOM_STATUSES = (
    Request.STATUS_PURCHASING,
    Request.STATUS_APPROVED,
    Request.STATUS_REJECTED,
)


@dataclass(frozen=True)
class NotificationPrefs:
    new_user: bool = True
    inventory: bool = True
    requests: bool = True


@dataclass(frozen=True)
class Notification:
    id: str
    kind: str
    request_id: int
    title: str
    message: str
    timestamp: datetime
    severity: str = "info"
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "request_id": self.request_id,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity,
            "read": self.read,
        }


@dataclass
class _Builder:
    read_ids: frozenset
    entries: List[Notification] = field(default_factory=list)

    def add(self, kind: str, req: Any, title: str, message: str, timestamp: datetime, severity: str) -> None:
        notification_id = f"{kind}-{req.request_id}"
        self.entries.append(
            Notification(
                id=notification_id,
                kind=kind,
                request_id=req.request_id,
                title=title,
                message=message,
                timestamp=timestamp,
                severity=severity,
                read=notification_id in self.read_ids,
            )
        )

    def result(self, limit: Optional[int]) -> List[Notification]:
        ordered = sorted(self.entries, key=lambda n: (n.timestamp, n.id), reverse=True)
        if limit is not None:
            return ordered[:limit]
        return ordered


def _today(now: datetime) -> date:
    if timezone.is_aware(now):
        return timezone.localtime(now).date()
    return now.date()


def _start_of_day(day: date, now: datetime) -> datetime:
    start = datetime.combine(day, time.min)
    if timezone.is_aware(now):
        return timezone.make_aware(start, timezone.get_current_timezone())
    return start


def _subject(req: Any) -> str:
    if req.request_type == Request.TYPE_ITEM:
        item = getattr(req, "item", None)
        return getattr(item, "name", None) or f"item #{req.item_id}"
    if req.request_type == Request.TYPE_CUSTOM:
        return req.item_name or "custom item"
    return req.reported_item_name or "reported item"


def _who(req: Any) -> str:
    return req.requester_name or req.requester_id


def _is_overdue(req: Any, today: date) -> bool:
    return (
        req.request_type == Request.TYPE_ITEM
        and req.status == Request.STATUS_ASSIGNED
        and req.due_date is not None
        and req.due_date < today
    )


def derive(
    requests: Iterable[Any],
    now: datetime,
    prefs: Optional[NotificationPrefs] = None,
    read_ids: Iterable[str] = (),
    feed: str = FEED_COMPACT,
    limit: Optional[int] = None,
) -> List[Notification]:
    """
    Admin feed: urgent and pending submissions, overdue and recently assigned
    items, and returns waiting for inspection.

    Pending and urgent are exclusive for a request. An overdue assignment
    also appears as ``assigned``. The compact feed windows ``assigned`` and
    is capped; the full feed is neither.
    """
    prefs = prefs or NotificationPrefs()
    if not prefs.requests:
        return []
    if feed not in FEEDS:
        raise ValueError(f"invalid feed, expected one of: {list(FEEDS)}")
    if feed == FEED_COMPACT and limit is None:
        limit = rules.compact_feed_limit()

    today = _today(now)
    assigned_since = now - timedelta(hours=rules.assigned_window_hours())
    builder = _Builder(read_ids=frozenset(read_ids))

    for req in requests:
        if req.status == Request.STATUS_PENDING:
            if req.priority == Request.PRIORITY_URGENT:
                builder.add(
                    KIND_URGENT,
                    req,
                    "Urgent request",
                    f"{_who(req)} urgently requested {_subject(req)}.",
                    req.created_at,
                    "critical",
                )
            else:
                builder.add(
                    KIND_PENDING,
                    req,
                    "New request",
                    f"{_who(req)} requested {_subject(req)}.",
                    req.created_at,
                    "info",
                )
            continue

        if req.request_type != Request.TYPE_ITEM:
            continue

        if _is_overdue(req, today):
            builder.add(
                KIND_OVERDUE,
                req,
                "Overdue item",
                f"{_subject(req)} assigned to {_who(req)} was due {req.due_date.isoformat()}.",
                _start_of_day(req.due_date, now),
                "warning",
            )
        if req.status == Request.STATUS_ASSIGNED and req.assigned_at is not None:
            if feed == FEED_FULL or req.assigned_at >= assigned_since:
                builder.add(
                    KIND_ASSIGNED,
                    req,
                    "Item assigned",
                    f"{req.quantity_assigned} x {_subject(req)} assigned to {_who(req)}.",
                    req.assigned_at,
                    "success",
                )
        elif (
            req.status == Request.STATUS_RETURNED_PENDING_INSPECTION
            and req.inspection_status == Request.INSPECTION_PENDING
        ):
            builder.add(
                KIND_INSPECTION,
                req,
                "Inspection needed",
                f"{_who(req)} returned {_subject(req)}; inspect before restocking.",
                req.returned_at or req.updated_at,
                "info",
            )

    return builder.result(limit)


def derive_teacher(
    requests: Iterable[Any],
    now: datetime,
    requester_id: str,
    prefs: Optional[NotificationPrefs] = None,
    read_ids: Iterable[str] = (),
    limit: Optional[int] = None,
) -> List[Notification]:
    """Teacher feed: the teacher's own assignments and request outcomes."""
    prefs = prefs or NotificationPrefs()
    if not prefs.requests:
        return []
    if limit is None:
        limit = rules.teacher_feed_limit()

    today = _today(now)
    due_soon_until = today + timedelta(days=rules.due_soon_days())
    assigned_since = now - timedelta(hours=rules.assigned_window_hours())
    builder = _Builder(read_ids=frozenset(read_ids))

    for req in requests:
        if req.requester_id != str(requester_id):
            continue

        if req.request_type == Request.TYPE_ITEM:
            if _is_overdue(req, today):
                builder.add(
                    KIND_OVERDUE,
                    req,
                    "Item overdue",
                    f"Please return {_subject(req)}; it was due {req.due_date.isoformat()}.",
                    _start_of_day(req.due_date, now),
                    "warning",
                )
            elif (
                req.status == Request.STATUS_ASSIGNED
                and req.due_date is not None
                and req.due_date <= due_soon_until
            ):
                builder.add(
                    KIND_DUE_SOON,
                    req,
                    "Return due soon",
                    f"{_subject(req)} is due {req.due_date.isoformat()}.",
                    _start_of_day(req.due_date, now),
                    "info",
                )
            elif (
                req.status == Request.STATUS_ASSIGNED
                and req.assigned_at is not None
                and req.assigned_at >= assigned_since
            ):
                builder.add(
                    KIND_ASSIGNED,
                    req,
                    "Request approved",
                    f"{req.quantity_assigned} x {_subject(req)} assigned to you.",
                    req.assigned_at,
                    "success",
                )
            elif req.status == Request.STATUS_REJECTED:
                builder.add(
                    KIND_REJECTED,
                    req,
                    "Request rejected",
                    req.admin_response or f"Your request for {_subject(req)} was rejected.",
                    req.updated_at,
                    "warning",
                )
        elif req.request_type == Request.TYPE_CUSTOM and req.status in _TEACHER_CUSTOM_STATUSES:
            builder.add(
                f"custom-{req.status}",
                req,
                f"Custom request {req.get_status_display().lower()}",
                req.admin_response or f"Your request for {_subject(req)} is {req.status}.",
                req.updated_at,
                "warning" if req.status == Request.STATUS_REJECTED else "info",
            )

    return builder.result(limit)


def load_feed(
    fetch: Callable[[], Iterable[Any]],
    deriver: Callable[..., List[Notification]],
    **kwargs: Any,
) -> List[Notification]:
    """
    Fetch requests and derive a feed. A failed fetch yields an empty feed
    instead of an error.
    """
    try:
        requests = list(fetch())
    except DatabaseError as exc:
        logger.warning("notifications.fetch_failed error=%s", exc)
        return []
    return deriver(requests, **kwargs)


def unread_count(notifications: Iterable[Notification], read_ids: Iterable[str] = ()) -> int:
    read = frozenset(read_ids)
    return sum(1 for n in notifications if n.id not in read)


def mark_read(read_ids: Iterable[str], notification_id: str) -> frozenset:
    return frozenset(read_ids) | {notification_id}


def mark_all_read(read_ids: Iterable[str], notifications: Iterable[Notification]) -> frozenset:
    return frozenset(read_ids) | {n.id for n in notifications}
