import logging
import re
from typing import Any, Dict

from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from api.authentication import BearerOrDevAuthentication
from api.permissions import RequisitionPermission
from api.rbac import (
    PERM_BUDGET_MANAGE,
    PERM_BUDGET_VIEW,
    PERM_INVENTORY_VIEW,
    PERM_NOTIFICATIONS_VIEW,
    PERM_REPORT_MANAGE,
    PERM_REPORT_SUBMIT,
    PERM_REQUEST_ADJUST,
    PERM_REQUEST_APPROVE,
    PERM_REQUEST_DELETE,
    PERM_REQUEST_INSPECT,
    PERM_REQUEST_REJECT,
    PERM_REQUEST_RESPOND,
    PERM_REQUEST_RETURN,
    PERM_REQUEST_SUBMIT,
    PERM_REQUEST_VIEW_ALL,
    PERM_REQUEST_VIEW_OWN,
    has_permission,
)
from requisitions import rules
from requisitions.exceptions import InsufficientStock, RequisitionError
from requisitions.models import InventoryItem, Request
from requisitions.services import budget as budget_service
from requisitions.services import inventory, lifecycle, notifications

logger = logging.getLogger("property.audit")

_NOTIFICATION_SOURCE_STATUSES = (
    Request.STATUS_PENDING,
    Request.STATUS_ASSIGNED,
    Request.STATUS_RETURNED_PENDING_INSPECTION,
)
_FALSE_VALUES = {"0", "false", "no", "off"}
_TRUE_VALUES = {"1", "true", "yes", "on"}


def _actor_id(request) -> str | None:
    return getattr(request.user, "user_id", None) or getattr(request.user, "username", None)


def _actor_name(request) -> str:
    return getattr(request.user, "display_name", "") or ""


def _error_response(exc: RequisitionError) -> Response:
    body: Dict[str, Any] = {"errors": {exc.field: exc.message}, "code": exc.code}
    if isinstance(exc, InsufficientStock):
        body["available"] = exc.available
        body["requested"] = exc.requested
    return Response(body, status=exc.status_code)


def _parse_positive_int(value: Any, field_name: str, errors: Dict[str, str]) -> int | None:
    if isinstance(value, (bool, float)):
        errors[field_name] = "Must be an integer."
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or not re.fullmatch(r"[+-]?\d+", stripped):
            errors[field_name] = "Must be an integer."
            return None
        value = stripped
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        errors[field_name] = "Must be an integer."
        return None
    if parsed <= 0:
        errors[field_name] = "Must be a positive integer."
        return None
    return parsed


def _parse_date(value: Any, field_name: str, errors: Dict[str, str]):
    if not value:
        errors[field_name] = "Date is required."
        return None
    try:
        parsed = parse_date(str(value))
    except ValueError:
        parsed = None
    if parsed is None:
        errors[field_name] = "Must be a date (YYYY-MM-DD)."
    return parsed


def _parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return default


def _can_view_all(request) -> bool:
    return has_permission(request, PERM_REQUEST_VIEW_ALL)


# ── Requests ────────────────────────────────────────────────────────────────


@api_view(["GET"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def requests_list(request):
    params = request.query_params
    requester_id = params.get("requester_id") or None
    if not _can_view_all(request):
        requester_id = _actor_id(request)
    queryset = lifecycle.list_requests(
        requester_id=requester_id,
        status=params.get("status") or None,
        request_type=params.get("request_type") or None,
    )
    return Response({"requests": [lifecycle.serialize_request(req) for req in queryset]})


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_item_submit(request):
    payload = request.data or {}
    errors: Dict[str, str] = {}
    item_id = _parse_positive_int(payload.get("item_id"), "item_id", errors)
    quantity = _parse_positive_int(payload.get("quantity_requested"), "quantity_requested", errors)
    if errors:
        return Response({"errors": errors}, status=400)

    try:
        req = lifecycle.submit_item_request(
            actor_id=_actor_id(request),
            actor_name=_actor_name(request),
            item_id=item_id,
            quantity=quantity,
            location=payload.get("location"),
            priority=payload.get("priority"),
            description=payload.get("description"),
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return Response(lifecycle.serialize_request(req), status=201)


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_custom_submit(request):
    payload = request.data or {}
    errors: Dict[str, str] = {}
    quantity = _parse_positive_int(payload.get("quantity_requested"), "quantity_requested", errors)
    if errors:
        return Response({"errors": errors}, status=400)

    try:
        req = lifecycle.submit_custom_request(
            actor_id=_actor_id(request),
            actor_name=_actor_name(request),
            item_name=payload.get("item_name"),
            quantity=quantity,
            location=payload.get("location"),
            description=payload.get("description"),
            estimated_cost=payload.get("estimated_cost"),
            priority=payload.get("priority"),
            photo_ref=payload.get("photo_ref"),
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return Response(lifecycle.serialize_request(req), status=201)


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_report_submit(request):
    payload = request.data or {}
    try:
        req = lifecycle.submit_report(
            actor_id=_actor_id(request),
            actor_name=_actor_name(request),
            reported_item_name=payload.get("reported_item_name"),
            report_kind=payload.get("report_kind"),
            description=payload.get("description"),
            location=payload.get("location"),
            related_request_id=payload.get("related_request_id"),
            photo_ref=payload.get("photo_ref"),
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return Response(lifecycle.serialize_request(req), status=201)


@api_view(["GET", "DELETE"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_detail(request, request_id: int):
    if request.method == "DELETE":
        try:
            result = lifecycle.delete_request(request_id, _actor_id(request))
        except RequisitionError as exc:
            return _error_response(exc)
        return Response(result)

    try:
        req = lifecycle.get_request(request_id)
    except RequisitionError as exc:
        return _error_response(exc)
    if not _can_view_all(request) and req.requester_id != _actor_id(request):
        return Response({"errors": {"request_id": "Not found."}}, status=404)
    return Response(lifecycle.serialize_request(req, include_history=True))


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_approve(request, request_id: int):
    payload = request.data or {}
    errors: Dict[str, str] = {}
    due_date = _parse_date(payload.get("due_date"), "due_date", errors)
    quantity = None
    if payload.get("quantity") not in (None, ""):
        quantity = _parse_positive_int(payload.get("quantity"), "quantity", errors)
    if errors:
        return Response({"errors": errors}, status=400)

    try:
        req = lifecycle.approve_and_assign(
            request_id, _actor_id(request), due_date=due_date, quantity=quantity
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return Response(lifecycle.serialize_request(req))


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_reject(request, request_id: int):
    payload = request.data or {}
    try:
        req = lifecycle.reject(request_id, _actor_id(request), payload.get("admin_response"))
    except RequisitionError as exc:
        return _error_response(exc)
    return Response(lifecycle.serialize_request(req))


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_respond(request, request_id: int):
    payload = request.data or {}
    try:
        req = lifecycle.respond_custom(
            request_id,
            _actor_id(request),
            status=payload.get("status"),
            admin_response=payload.get("admin_response"),
        )
    except RequisitionError as exc:
        return _error_response(exc)

    body = lifecycle.serialize_request(req)
    body["catalog_addition_required"] = req.status == Request.STATUS_APPROVED
    if req.status == Request.STATUS_APPROVED:
        body["budget"] = budget_service.serialize_budget(budget_service.get_budget())
    return Response(body)


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_adjust(request, request_id: int):
    payload = request.data or {}
    errors: Dict[str, str] = {}
    quantity = _parse_positive_int(payload.get("quantity"), "quantity", errors)
    if errors:
        return Response({"errors": errors}, status=400)

    try:
        req = lifecycle.adjust_assignment(request_id, _actor_id(request), quantity)
    except RequisitionError as exc:
        return _error_response(exc)
    return Response(lifecycle.serialize_request(req))


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_return(request, request_id: int):
    payload = request.data or {}
    try:
        req = lifecycle.teacher_return(
            request_id,
            _actor_id(request),
            reported_damaged=_parse_bool(payload.get("reported_damaged")),
            notes=payload.get("notes"),
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return Response(lifecycle.serialize_request(req))


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_inspect(request, request_id: int):
    payload = request.data or {}
    try:
        outcome = lifecycle.inspect(
            request_id,
            _actor_id(request),
            result=str(payload.get("result") or "").strip().lower(),
            condition=payload.get("condition") or None,
            remarks=payload.get("remarks"),
        )
    except RequisitionError as exc:
        return _error_response(exc)

    body = lifecycle.serialize_request(outcome.request)
    body["suggested_report"] = outcome.suggested_report
    return Response(body)


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def request_report_status(request, request_id: int):
    payload = request.data or {}
    try:
        req = lifecycle.update_report_status(
            request_id,
            _actor_id(request),
            status=payload.get("status"),
            admin_response=payload.get("admin_response"),
        )
    except RequisitionError as exc:
        return _error_response(exc)
    return Response(lifecycle.serialize_request(req))


@api_view(["GET"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def requests_overdue(request):
    queryset = lifecycle.list_overdue()
    return Response({"requests": [lifecycle.serialize_request(req) for req in queryset]})


@api_view(["GET"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def requests_pending_inspection(request):
    queryset = lifecycle.list_pending_inspection()
    return Response({"requests": [lifecycle.serialize_request(req) for req in queryset]})


@api_view(["GET"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def requests_assigned_summary(request):
    return Response({"items": lifecycle.assigned_summary(_actor_id(request))})


# ── Inventory ───────────────────────────────────────────────────────────────


@api_view(["GET"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def inventory_list(request):
    queryset = InventoryItem.objects.order_by("name", "item_id")
    status = request.query_params.get("status")
    if status:
        queryset = queryset.filter(status=status)
    category = request.query_params.get("category")
    if category:
        queryset = queryset.filter(category=category)
    return Response({"items": [inventory.serialize_item(item) for item in queryset]})


@api_view(["GET"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def inventory_detail(request, item_id: int):
    try:
        item = InventoryItem.objects.get(pk=item_id)
    except InventoryItem.DoesNotExist:
        return Response({"errors": {"item_id": "Not found."}}, status=404)
    body = inventory.serialize_item(item)
    body["reserved"] = inventory.reserved_quantity(item_id)
    return Response(body)


@api_view(["GET"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def inventory_consistency(request):
    drift = inventory.find_counter_drift()
    if drift:
        logger.warning("inventory.counter_drift items=%d", len(drift))
    return Response({"consistent": not drift, "drift": drift})


# ── Notifications ───────────────────────────────────────────────────────────


def _read_ids_from_params(params) -> list[str]:
    raw = params.get("read_ids") or ""
    return [value.strip() for value in raw.split(",") if value.strip()]


def _prefs_from_params(params) -> notifications.NotificationPrefs:
    return notifications.NotificationPrefs(
        new_user=_parse_bool(params.get("newUser"), True),
        inventory=_parse_bool(params.get("inventory"), True),
        requests=_parse_bool(params.get("requests"), True),
    )


@api_view(["GET"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def notifications_feed(request):
    params = request.query_params
    feed = params.get("feed") or notifications.FEED_COMPACT
    if feed not in notifications.FEEDS:
        return Response({"errors": {"feed": "Must be compact or full."}}, status=400)

    read_ids = _read_ids_from_params(params)
    prefs = _prefs_from_params(params)
    now = timezone.now()

    if _can_view_all(request):
        items = notifications.load_feed(
            lambda: Request.objects.select_related("item").filter(
                status__in=_NOTIFICATION_SOURCE_STATUSES
            ),
            notifications.derive,
            now=now,
            prefs=prefs,
            read_ids=read_ids,
            feed=feed,
        )
    else:
        actor = _actor_id(request)
        items = notifications.load_feed(
            lambda: Request.objects.select_related("item").filter(requester_id=actor),
            notifications.derive_teacher,
            now=now,
            requester_id=actor,
            prefs=prefs,
            read_ids=read_ids,
        )

    return Response(
        {
            "notifications": [item.to_dict() for item in items],
            "unread_count": notifications.unread_count(items, read_ids),
            "poll_interval_seconds": rules.poll_interval_seconds(),
        }
    )


# ── Budget ──────────────────────────────────────────────────────────────────


@api_view(["GET", "PUT"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def budget_detail(request):
    if request.method == "GET":
        return Response(budget_service.serialize_budget(budget_service.get_budget()))

    previous = budget_service.serialize_budget(budget_service.get_budget())
    try:
        budget = budget_service.set_total_budget(
            (request.data or {}).get("total_budget"), _actor_id(request)
        )
    except RequisitionError as exc:
        return _error_response(exc)
    body = budget_service.serialize_budget(budget)
    body["previous"] = previous
    return Response(body)


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def budget_recalculate(request):
    previous = budget_service.serialize_budget(budget_service.get_budget())
    budget = budget_service.recalculate(_actor_id(request))
    body = budget_service.serialize_budget(budget)
    body["previous"] = previous
    return Response(body)


@api_view(["POST"])
@authentication_classes([BearerOrDevAuthentication])
@permission_classes([RequisitionPermission])
def budget_reset(request):
    payload = request.data or {}
    if payload.get("confirm") is not True:
        return Response(
            {"errors": {"confirm": "Budget reset is irreversible; send confirm=true."}},
            status=400,
        )

    previous = budget_service.serialize_budget(budget_service.get_budget())
    try:
        budget = budget_service.reset(_actor_id(request), payload.get("new_amount"))
    except RequisitionError as exc:
        return _error_response(exc)
    body = budget_service.serialize_budget(budget)
    body["previous"] = previous
    return Response(body)


requests_list.required_permission = [PERM_REQUEST_VIEW_ALL, PERM_REQUEST_VIEW_OWN]
request_item_submit.required_permission = PERM_REQUEST_SUBMIT
request_custom_submit.required_permission = PERM_REQUEST_SUBMIT
request_report_submit.required_permission = PERM_REPORT_SUBMIT
request_detail.required_permission = {
    "GET": [PERM_REQUEST_VIEW_ALL, PERM_REQUEST_VIEW_OWN],
    "DELETE": PERM_REQUEST_DELETE,
}
request_approve.required_permission = PERM_REQUEST_APPROVE
request_reject.required_permission = PERM_REQUEST_REJECT
request_respond.required_permission = PERM_REQUEST_RESPOND
request_adjust.required_permission = PERM_REQUEST_ADJUST
request_return.required_permission = PERM_REQUEST_RETURN
request_inspect.required_permission = PERM_REQUEST_INSPECT
request_report_status.required_permission = PERM_REPORT_MANAGE
requests_overdue.required_permission = PERM_REQUEST_VIEW_ALL
requests_pending_inspection.required_permission = PERM_REQUEST_VIEW_ALL
requests_assigned_summary.required_permission = PERM_REQUEST_VIEW_OWN
inventory_list.required_permission = PERM_INVENTORY_VIEW
inventory_detail.required_permission = PERM_INVENTORY_VIEW
inventory_consistency.required_permission = PERM_REQUEST_VIEW_ALL
notifications_feed.required_permission = PERM_NOTIFICATIONS_VIEW
budget_detail.required_permission = {"GET": PERM_BUDGET_VIEW, "PUT": PERM_BUDGET_MANAGE}
budget_recalculate.required_permission = PERM_BUDGET_MANAGE
budget_reset.required_permission = PERM_BUDGET_MANAGE

for view_func in (
    requests_list,
    request_item_submit,
    request_custom_submit,
    request_report_submit,
    request_detail,
    request_approve,
    request_reject,
    request_respond,
    request_adjust,
    request_return,
    request_inspect,
    request_report_status,
    requests_overdue,
    requests_pending_inspection,
    requests_assigned_summary,
    inventory_list,
    inventory_detail,
    inventory_consistency,
    notifications_feed,
    budget_detail,
    budget_recalculate,
    budget_reset,
):
    if hasattr(view_func, "cls"):
        view_func.cls.required_permission = view_func.required_permission
