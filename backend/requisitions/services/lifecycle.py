"""
Request lifecycle service.

Validates and applies status changes for item, custom and report requests.
Each operation runs in one transaction with the request row locked, so the
status change and the inventory movement it triggers commit together or not
at all, and a second admin acting on the same request waits and then sees
the first admin's result.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import QuerySet
from django.utils import timezone

from requisitions import rules
from requisitions.exceptions import (
    AlreadyProcessed,
    AlreadyReleased,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from requisitions.models import InventoryItem, Request, RequestStatusHistory
from requisitions.services import budget as budget_service
from requisitions.services import inventory

logger = logging.getLogger("property.audit")

INSPECTION_PASS = "pass"
INSPECTION_FAIL = "fail"
INSPECTION_RESULTS = (INSPECTION_PASS, INSPECTION_FAIL)


@dataclass
class InspectionOutcome:
    request: Request
    suggested_report: Optional[Dict[str, Any]] = None


# ── Helpers ─────────────────────────────────────────────────────────────────


def _lock_request(request_id: int) -> Request:
    try:
        return Request.objects.select_for_update().get(pk=request_id)
    except Request.DoesNotExist:
        raise NotFound("Request not found.", field="request_id")


def _require_type(req: Request, request_type: str) -> None:
    if req.request_type != request_type:
        raise ValidationError(
            f"Operation requires a {request_type} request; request {req.request_id} "
            f"is a {req.request_type} request.",
            code="wrong_request_type",
            field="request_type",
        )


def _require_item_status(req: Request, expected: str) -> None:
    """
    Item requests only move forward, so a request already past ``expected``
    is a repeated or racing call rather than a premature one.
    """
    if req.status == expected:
        return
    current_rank = rules.ITEM_STATUS_RANK.get(req.status, 0)
    if current_rank > rules.ITEM_STATUS_RANK[expected]:
        raise AlreadyProcessed(
            f"Request {req.request_id} was already processed (status: {req.status}).",
            field="status",
        )
    raise InvalidTransition(
        f"Request {req.request_id} must be {expected}; current status is {req.status}.",
        field="status",
    )


def _require_open_transition(req: Request, target: str) -> None:
    if req.status == target or rules.is_terminal(req.request_type, req.status):
        raise AlreadyProcessed(
            f"Request {req.request_id} was already processed (status: {req.status}).",
            field="status",
        )
    if not rules.can_transition(req.request_type, req.status, target):
        raise InvalidTransition(
            f"Cannot transition from {req.status} to {target}.",
            field="status",
        )


def _require_owner(req: Request, actor_id: str) -> None:
    if req.requester_id != str(actor_id):
        raise PermissionDenied(
            "Only the requesting teacher can perform this action.",
            field="requester_id",
        )


def _clean_text(value: Any, field: str, max_length: int, required: bool = False) -> Optional[str]:
    if value is None:
        text = ""
    elif isinstance(value, str):
        text = value.strip()
    else:
        raise ValidationError("Must be a string.", code="invalid_text", field=field)
    if required and not text:
        raise ValidationError("This field is required.", code="required", field=field)
    if len(text) > max_length:
        raise ValidationError(
            f"Must be at most {max_length} characters.", code="too_long", field=field
        )
    return text or None


def _clean_priority(priority: Any) -> str:
    if priority is None or priority == "":
        return Request.PRIORITY_NORMAL
    normalized = str(priority).strip().lower()
    if normalized not in {Request.PRIORITY_NORMAL, Request.PRIORITY_URGENT}:
        raise ValidationError(
            "Priority must be normal or urgent.", code="invalid_priority", field="priority"
        )
    return normalized


def _clean_quantity(value: Any, field: str = "quantity") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Quantity must be an integer.", code="invalid_quantity", field=field)
    if value < 1:
        raise ValidationError("Quantity must be at least 1.", code="invalid_quantity", field=field)
    return value


def _clean_cost(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("Must be a number.", code="invalid_cost", field="estimated_cost")
    try:
        cost = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Must be a number.", code="invalid_cost", field="estimated_cost")
    if not cost.is_finite() or cost < 0:
        raise ValidationError(
            "Estimated cost must be zero or more.", code="invalid_cost", field="estimated_cost"
        )
    return cost.quantize(Decimal("0.01"))


def _record_transition(
    req: Request,
    from_status: Optional[str],
    actor_id: str,
    reason: Optional[str] = None,
) -> None:
    RequestStatusHistory.objects.create(
        request=req,
        from_status=from_status,
        to_status=req.status,
        actor_id=actor_id,
        reason=reason,
    )
    logger.info(
        "request_status_changed",
        extra={
            "event_type": "CREATE" if from_status is None else "STATE_CHANGE",
            "user_id": actor_id,
            "request_id": req.request_id,
            "request_type": req.request_type,
            "from_status": from_status,
            "to_status": req.status,
        },
    )


def _save(req: Request, actor_id: str, fields: List[str]) -> None:
    req.update_by_id = actor_id
    req.version_nbr += 1
    req.save(update_fields=fields + ["update_by_id", "version_nbr", "update_dtime", "updated_at"])


def _release_held_stock(req: Request, actor_id: str) -> Optional[int]:
    reservation = inventory.active_reservation_for(req)
    if reservation is None:
        return None
    try:
        inventory.release(reservation.reservation_id, actor_id)
    except AlreadyReleased as exc:
        logger.warning(
            "inventory.release_skipped request=%s reservation=%s reason=%s",
            req.request_id,
            reservation.reservation_id,
            exc.message,
        )
        return None
    return reservation.quantity


# ── Submission ──────────────────────────────────────────────────────────────


@transaction.atomic
def submit_item_request(
    actor_id: str,
    actor_name: str,
    item_id: Any,
    quantity: Any,
    location: Any,
    priority: Any = None,
    description: Any = None,
) -> Request:
    """Create a pending request for a catalog item."""
    quantity = _clean_quantity(quantity, "quantity_requested")
    location = _clean_text(location, "location", 150, required=True)
    priority = _clean_priority(priority)
    description = _clean_text(description, "description", rules.NOTES_MAX_LENGTH)

    try:
        item = InventoryItem.objects.get(pk=item_id)
    except (InventoryItem.DoesNotExist, ValueError, TypeError):
        raise NotFound("Inventory item not found.", field="item_id")
    if item.status != InventoryItem.STATUS_AVAILABLE:
        raise ValidationError(
            f"{item.name} is not available for request.",
            code="item_unavailable",
            field="item_id",
        )

    req = Request.objects.create(
        request_type=Request.TYPE_ITEM,
        requester_id=str(actor_id),
        requester_name=actor_name or "",
        location=location,
        priority=priority,
        description=description or "",
        item=item,
        quantity_requested=quantity,
        create_by_id=actor_id,
        update_by_id=actor_id,
    )
    _record_transition(req, None, actor_id)
    return req


@transaction.atomic
def submit_custom_request(
    actor_id: str,
    actor_name: str,
    item_name: Any,
    quantity: Any,
    location: Any = None,
    description: Any = None,
    estimated_cost: Any = None,
    priority: Any = None,
    photo_ref: Any = None,
) -> Request:
    """Create a pending purchase request for something not in the catalog."""
    req = Request.objects.create(
        request_type=Request.TYPE_CUSTOM,
        requester_id=str(actor_id),
        requester_name=actor_name or "",
        location=_clean_text(location, "location", 150) or "",
        priority=_clean_priority(priority),
        description=_clean_text(description, "description", rules.NOTES_MAX_LENGTH) or "",
        item_name=_clean_text(item_name, "item_name", 150, required=True),
        quantity_requested=_clean_quantity(quantity, "quantity_requested"),
        estimated_cost=_clean_cost(estimated_cost),
        photo_ref=_clean_text(photo_ref, "photo_ref", 500),
        create_by_id=actor_id,
        update_by_id=actor_id,
    )
    _record_transition(req, None, actor_id)
    return req


@transaction.atomic
def submit_report(
    actor_id: str,
    actor_name: str,
    reported_item_name: Any,
    report_kind: Any,
    description: Any = None,
    location: Any = None,
    related_request_id: Any = None,
    photo_ref: Any = None,
) -> Request:
    """File a missing/damaged/other report against an item the teacher holds."""
    kind = str(report_kind or "").strip().lower()
    if kind not in {choice for choice, _ in Request.REPORT_KIND_CHOICES}:
        raise ValidationError(
            "Report kind must be missing, damaged or other.",
            code="invalid_report_kind",
            field="report_kind",
        )

    related = None
    if related_request_id not in (None, ""):
        try:
            related = Request.objects.get(pk=related_request_id)
        except (Request.DoesNotExist, ValueError, TypeError):
            raise NotFound("Related request not found.", field="related_request_id")
        if related.request_type != Request.TYPE_ITEM:
            raise ValidationError(
                "Reports can only reference item requests.",
                code="wrong_request_type",
                field="related_request_id",
            )
        _require_owner(related, actor_id)

    req = Request.objects.create(
        request_type=Request.TYPE_REPORT,
        requester_id=str(actor_id),
        requester_name=actor_name or "",
        location=_clean_text(location, "location", 150) or "",
        description=_clean_text(description, "description", rules.NOTES_MAX_LENGTH) or "",
        reported_item_name=_clean_text(reported_item_name, "reported_item_name", 150, required=True),
        report_kind=kind,
        related_request=related,
        photo_ref=_clean_text(photo_ref, "photo_ref", 500),
        create_by_id=actor_id,
        update_by_id=actor_id,
    )
    _record_transition(req, None, actor_id)
    return req


# ── Item request transitions ────────────────────────────────────────────────


@transaction.atomic
def approve_and_assign(
    request_id: int,
    actor_id: str,
    due_date: Any,
    quantity: Any = None,
) -> Request:
    """
    Approve a pending item request and hand out ``quantity`` units until
    ``due_date``. Quantity defaults to the amount requested.
    """
    if isinstance(due_date, datetime) or not isinstance(due_date, date):
        raise ValidationError("Due date is required.", code="invalid_due_date", field="due_date")
    if due_date < timezone.localdate():
        raise ValidationError(
            "Due date cannot be in the past.", code="invalid_due_date", field="due_date"
        )

    req = _lock_request(request_id)
    _require_type(req, Request.TYPE_ITEM)
    _require_item_status(req, Request.STATUS_PENDING)

    if quantity is None:
        quantity = req.quantity_requested
    quantity = _clean_quantity(quantity)
    if quantity > req.quantity_requested:
        raise ValidationError(
            f"Cannot assign {quantity}; only {req.quantity_requested} requested.",
            code="quantity_exceeds_requested",
            field="quantity",
        )

    inventory.reserve(req.item_id, quantity, actor_id, request=req)

    from_status = req.status
    req.status = Request.STATUS_ASSIGNED
    req.quantity_assigned = quantity
    req.due_date = due_date
    req.assigned_at = timezone.now()
    req.assigned_by = actor_id
    _save(req, actor_id, ["status", "quantity_assigned", "due_date", "assigned_at", "assigned_by"])
    _record_transition(req, from_status, actor_id)
    return req


@transaction.atomic
def reject(request_id: int, actor_id: str, admin_response: Any = None) -> Request:
    """Reject a pending item or custom request."""
    admin_response = _clean_text(admin_response, "admin_response", rules.ADMIN_RESPONSE_MAX_LENGTH)
    req = _lock_request(request_id)
    if req.request_type == Request.TYPE_REPORT:
        raise ValidationError(
            "Reports are rejected through their status update.",
            code="wrong_request_type",
            field="request_type",
        )
    if req.request_type == Request.TYPE_ITEM:
        _require_item_status(req, Request.STATUS_PENDING)
        released = _release_held_stock(req, actor_id)
        if released is None:
            logger.info("inventory.release_noop request=%s actor=%s", req.request_id, actor_id)
    else:
        _require_open_transition(req, Request.STATUS_REJECTED)

    from_status = req.status
    req.status = Request.STATUS_REJECTED
    req.admin_response = admin_response
    _save(req, actor_id, ["status", "admin_response"])
    _record_transition(req, from_status, actor_id, reason=admin_response)
    return req


@transaction.atomic
def adjust_assignment(request_id: int, actor_id: str, quantity: Any) -> Request:
    """Resize an active assignment, moving the difference in or out of stock."""
    quantity = _clean_quantity(quantity)
    req = _lock_request(request_id)
    _require_type(req, Request.TYPE_ITEM)
    _require_item_status(req, Request.STATUS_ASSIGNED)
    if quantity > req.quantity_requested:
        raise ValidationError(
            f"Cannot assign {quantity}; only {req.quantity_requested} requested.",
            code="quantity_exceeds_requested",
            field="quantity",
        )

    reservation = inventory.active_reservation_for(req)
    if reservation is None:
        raise NotFound("No active reservation for this request.", field="reservation_id")

    previous = req.quantity_assigned
    inventory.adjust_assigned(reservation.reservation_id, previous, quantity, actor_id)
    req.quantity_assigned = quantity
    _save(req, actor_id, ["quantity_assigned"])

    logger.info(
        "request_assignment_adjusted",
        extra={
            "event_type": "UPDATE",
            "user_id": actor_id,
            "request_id": req.request_id,
            "from_quantity": previous,
            "to_quantity": quantity,
        },
    )
    return req


@transaction.atomic
def teacher_return(
    request_id: int,
    actor_id: str,
    reported_damaged: bool = False,
    notes: Any = None,
) -> Request:
    """
    Mark an assignment as physically returned. Stock stays reserved until an
    admin inspects the item.
    """
    notes = _clean_text(notes, "notes", rules.NOTES_MAX_LENGTH)
    req = _lock_request(request_id)
    _require_type(req, Request.TYPE_ITEM)
    _require_owner(req, actor_id)
    _require_item_status(req, Request.STATUS_ASSIGNED)

    from_status = req.status
    req.status = Request.STATUS_RETURNED_PENDING_INSPECTION
    req.returned_at = timezone.now()
    req.inspection_status = Request.INSPECTION_PENDING
    req.reported_damaged = bool(reported_damaged)
    req.return_notes = notes
    _save(
        req,
        actor_id,
        ["status", "returned_at", "inspection_status", "reported_damaged", "return_notes"],
    )
    _record_transition(req, from_status, actor_id, reason=notes)
    return req


@transaction.atomic
def inspect(
    request_id: int,
    actor_id: str,
    result: str,
    condition: Optional[str] = None,
    remarks: Any = None,
) -> InspectionOutcome:
    """
    Close a returned assignment.

    A passing inspection releases the reserved stock and optionally records
    the item's condition in the catalog. A failing inspection keeps the stock
    held and suggests a damage report for the returning teacher.
    """
    if result not in INSPECTION_RESULTS:
        raise ValidationError("Result must be pass or fail.", code="invalid_result", field="result")
    if condition is not None and (
        not isinstance(condition, str)
        or condition not in rules.INSPECTION_CONDITION_TO_ITEM_STATUS
    ):
        raise ValidationError(
            "Condition must be available, under_maintenance or damaged.",
            code="invalid_condition",
            field="condition",
        )
    remarks = _clean_text(remarks, "remarks", rules.NOTES_MAX_LENGTH)

    req = _lock_request(request_id)
    _require_type(req, Request.TYPE_ITEM)
    _require_item_status(req, Request.STATUS_RETURNED_PENDING_INSPECTION)

    suggested_report = None
    if result == INSPECTION_PASS:
        _release_held_stock(req, actor_id)
        if condition is None and req.reported_damaged:
            condition = "damaged"
        if condition is not None:
            item_status = rules.INSPECTION_CONDITION_TO_ITEM_STATUS[condition]
            InventoryItem.objects.filter(pk=req.item_id).update(
                status=item_status,
                update_by_id=actor_id,
                update_dtime=timezone.now(),
            )
        req.inspection_status = Request.INSPECTION_PASSED
    else:
        req.inspection_status = Request.INSPECTION_FAILED
        suggested_report = {
            "request_type": Request.TYPE_REPORT,
            "report_kind": Request.REPORT_DAMAGED,
            "reported_item_name": req.item.name if req.item_id else "",
            "related_request_id": req.request_id,
            "requester_id": req.requester_id,
            "description": remarks or req.return_notes or "",
        }

    from_status = req.status
    req.status = Request.STATUS_CLOSED
    req.inspected_at = timezone.now()
    req.inspected_by = actor_id
    req.inspection_remarks = remarks
    _save(
        req,
        actor_id,
        ["status", "inspection_status", "inspected_at", "inspected_by", "inspection_remarks"],
    )
    _record_transition(req, from_status, actor_id, reason=f"inspection {result}")
    return InspectionOutcome(request=req, suggested_report=suggested_report)


# ── Custom request and report transitions ───────────────────────────────────


@transaction.atomic
def respond_custom(
    request_id: int,
    actor_id: str,
    status: Any,
    admin_response: Any = None,
) -> Request:
    """
    Move a custom request among under_review, purchasing, approved and
    rejected. Approval never touches inventory; the purchased item is added
    to the catalog separately. Approval refreshes the budget ledger.
    """
    target = str(status or "").strip().lower()
    if target not in rules.CUSTOM_RESPONSE_STATUSES:
        raise ValidationError(
            "Status must be under_review, purchasing, approved or rejected.",
            code="invalid_status",
            field="status",
        )
    admin_response = _clean_text(admin_response, "admin_response", rules.ADMIN_RESPONSE_MAX_LENGTH)

    req = _lock_request(request_id)
    _require_type(req, Request.TYPE_CUSTOM)
    _require_open_transition(req, target)

    from_status = req.status
    req.status = target
    fields = ["status"]
    if admin_response is not None:
        req.admin_response = admin_response
        fields.append("admin_response")
    if target == Request.STATUS_APPROVED:
        req.approved_at = timezone.now()
        fields.append("approved_at")
    _save(req, actor_id, fields)
    _record_transition(req, from_status, actor_id, reason=admin_response)

    if target in rules.BUDGET_COMMITTED_STATUSES:
        budget_service.recalculate(actor_id)
    return req


@transaction.atomic
def update_report_status(
    request_id: int,
    actor_id: str,
    status: Any,
    admin_response: Any = None,
) -> Request:
    target = str(status or "").strip().lower()
    if target not in rules.REPORT_TRANSITIONS:
        raise ValidationError(
            "Status must be under_review, in_progress, resolved or rejected.",
            code="invalid_status",
            field="status",
        )
    admin_response = _clean_text(admin_response, "admin_response", rules.ADMIN_RESPONSE_MAX_LENGTH)

    req = _lock_request(request_id)
    _require_type(req, Request.TYPE_REPORT)
    _require_open_transition(req, target)

    from_status = req.status
    req.status = target
    fields = ["status"]
    if admin_response is not None:
        req.admin_response = admin_response
        fields.append("admin_response")
    _save(req, actor_id, fields)
    _record_transition(req, from_status, actor_id, reason=admin_response)
    return req


@transaction.atomic
def delete_request(request_id: int, actor_id: str) -> Dict[str, Any]:
    """
    Administrative delete, allowed in any status. Stock held by an open
    assignment is released first. A failed inspection keeps its hold after
    the request is gone. Deleting an approved custom request refreshes the
    budget ledger.
    """
    req = _lock_request(request_id)
    released = None
    if req.status in rules.RESERVATION_HOLDING_STATUSES:
        released = _release_held_stock(req, actor_id)

    snapshot = {
        "request_id": req.request_id,
        "request_type": req.request_type,
        "status": req.status,
        "released_quantity": released or 0,
    }
    refresh_budget = (
        req.request_type == Request.TYPE_CUSTOM
        and req.status in rules.BUDGET_COMMITTED_STATUSES
    )
    req.delete()
    if refresh_budget:
        budget_service.recalculate(actor_id)

    logger.info(
        "request_deleted",
        extra={
            "event_type": "DELETE",
            "user_id": actor_id,
            **snapshot,
        },
    )
    return snapshot


# ── Read models ─────────────────────────────────────────────────────────────


def get_request(request_id: int) -> Request:
    try:
        return Request.objects.select_related("item").get(pk=request_id)
    except (Request.DoesNotExist, ValueError, TypeError):
        raise NotFound("Request not found.", field="request_id")


def list_requests(
    requester_id: Optional[str] = None,
    status: Optional[str] = None,
    request_type: Optional[str] = None,
) -> QuerySet:
    queryset = Request.objects.select_related("item").order_by("-created_at", "-request_id")
    if requester_id is not None:
        queryset = queryset.filter(requester_id=str(requester_id))
    if status:
        queryset = queryset.filter(status=status)
    if request_type:
        queryset = queryset.filter(request_type=request_type)
    return queryset


def list_overdue(today: Optional[date] = None) -> QuerySet:
    today = today or timezone.localdate()
    return (
        Request.objects.select_related("item")
        .filter(
            request_type=Request.TYPE_ITEM,
            status=Request.STATUS_ASSIGNED,
            due_date__lt=today,
        )
        .order_by("due_date", "request_id")
    )


def list_pending_inspection() -> QuerySet:
    return (
        Request.objects.select_related("item")
        .filter(
            request_type=Request.TYPE_ITEM,
            status=Request.STATUS_RETURNED_PENDING_INSPECTION,
            inspection_status=Request.INSPECTION_PENDING,
        )
        .order_by("returned_at", "request_id")
    )


def assigned_summary(requester_id: str, today: Optional[date] = None) -> List[Dict[str, Any]]:
    """A teacher's current assignments grouped by catalog item."""
    today = today or timezone.localdate()
    assigned = (
        Request.objects.select_related("item")
        .filter(
            request_type=Request.TYPE_ITEM,
            status=Request.STATUS_ASSIGNED,
            requester_id=str(requester_id),
        )
        .order_by("item_id", "due_date", "request_id")
    )
    groups: Dict[int, Dict[str, Any]] = {}
    for req in assigned:
        group = groups.setdefault(
            req.item_id,
            {
                "item_id": req.item_id,
                "item_name": req.item.name,
                "category": req.item.category,
                "quantity_assigned": 0,
                "assignments": [],
            },
        )
        group["quantity_assigned"] += req.quantity_assigned or 0
        group["assignments"].append(
            {
                "request_id": req.request_id,
                "quantity_assigned": req.quantity_assigned,
                "due_date": req.due_date.isoformat() if req.due_date else None,
                "is_overdue": bool(req.due_date and req.due_date < today),
            }
        )
    return list(groups.values())


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_request(req: Request, include_history: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "request_id": req.request_id,
        "request_type": req.request_type,
        "status": req.status,
        "requester_id": req.requester_id,
        "requester_name": req.requester_name,
        "location": req.location,
        "priority": req.priority,
        "description": req.description,
        "admin_response": req.admin_response,
        "created_at": _iso(req.created_at),
        "updated_at": _iso(req.updated_at),
    }
    if req.request_type == Request.TYPE_ITEM:
        data.update(
            {
                "item_id": req.item_id,
                "item_name": req.item.name if req.item_id else None,
                "quantity_requested": req.quantity_requested,
                "quantity_assigned": req.quantity_assigned,
                "due_date": _iso(req.due_date),
                "assigned_at": _iso(req.assigned_at),
                "returned_at": _iso(req.returned_at),
                "reported_damaged": req.reported_damaged,
                "return_notes": req.return_notes,
                "inspection_status": req.inspection_status,
                "inspected_at": _iso(req.inspected_at),
                "inspection_remarks": req.inspection_remarks,
            }
        )
    elif req.request_type == Request.TYPE_CUSTOM:
        data.update(
            {
                "item_name": req.item_name,
                "quantity_requested": req.quantity_requested,
                "estimated_cost": str(req.estimated_cost) if req.estimated_cost is not None else None,
                "photo_ref": req.photo_ref,
                "approved_at": _iso(req.approved_at),
            }
        )
    else:
        data.update(
            {
                "reported_item_name": req.reported_item_name,
                "report_kind": req.report_kind,
                "related_request_id": req.related_request_id,
                "photo_ref": req.photo_ref,
            }
        )
    if include_history:
        data["history"] = [
            {
                "from_status": entry.from_status,
                "to_status": entry.to_status,
                "actor_id": entry.actor_id,
                "reason": entry.reason,
                "changed_at": _iso(entry.changed_at),
            }
            for entry in req.status_history.all()
        ]
    return data
