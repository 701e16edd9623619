"""
Inventory reservation service.

Owns the available-quantity counters on catalog items. Every decrement is a
single conditional UPDATE (compare-and-swap on quantity_available), so two
concurrent reservations against the last units cannot both succeed.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import F, Q, Sum
from django.utils import timezone

from requisitions.exceptions import (
    AlreadyProcessed,
    AlreadyReleased,
    InsufficientStock,
    NotFound,
    ValidationError,
)
from requisitions.models import InventoryItem, Request, Reservation

logger = logging.getLogger("property.audit")


def _require_positive_quantity(value: Any, field: str = "quantity") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Quantity must be an integer.", code="invalid_quantity", field=field)
    if value < 1:
        raise ValidationError("Quantity must be at least 1.", code="invalid_quantity", field=field)
    return value


def _get_item(item_id: int) -> InventoryItem:
    try:
        return InventoryItem.objects.get(pk=item_id)
    except InventoryItem.DoesNotExist:
        raise NotFound("Inventory item not found.", field="item_id")


def _lock_reservation(reservation_id: int) -> Reservation:
    try:
        return Reservation.objects.select_for_update().get(pk=reservation_id)
    except Reservation.DoesNotExist:
        raise NotFound("Reservation not found.", field="reservation_id")


def _decrement_available(item_id: int, quantity: int, actor_id: str) -> bool:
    updated = InventoryItem.objects.filter(
        pk=item_id,
        status=InventoryItem.STATUS_AVAILABLE,
        quantity_available__gte=quantity,
    ).update(
        quantity_available=F("quantity_available") - quantity,
        update_by_id=actor_id,
        update_dtime=timezone.now(),
        version_nbr=F("version_nbr") + 1,
    )
    return updated == 1


def _increment_available(item_id: int, quantity: int, actor_id: str) -> None:
    InventoryItem.objects.filter(pk=item_id).update(
        quantity_available=F("quantity_available") + quantity,
        update_by_id=actor_id,
        update_dtime=timezone.now(),
        version_nbr=F("version_nbr") + 1,
    )


def _insufficient(item_id: int, quantity: int) -> InsufficientStock:
    item = _get_item(item_id)
    if item.status != InventoryItem.STATUS_AVAILABLE:
        return InsufficientStock(
            f"{item.name} is {item.get_status_display().lower()} and cannot be assigned.",
            available=0,
            requested=quantity,
        )
    return InsufficientStock(
        f"Only {item.quantity_available} of {item.name} available; {quantity} requested.",
        available=item.quantity_available,
        requested=quantity,
    )


@transaction.atomic
def reserve(
    item_id: int,
    quantity: int,
    actor_id: str,
    request: Optional[Request] = None,
) -> Reservation:
    """Hold ``quantity`` units of an item; fails with no side effect if short."""
    quantity = _require_positive_quantity(quantity)
    _get_item(item_id)

    if not _decrement_available(item_id, quantity, actor_id):
        raise _insufficient(item_id, quantity)

    reservation = Reservation.objects.create(
        item_id=item_id,
        request=request,
        quantity=quantity,
        created_by=actor_id,
    )

    logger.info(
        "inventory.reserved item=%s qty=%d reservation=%s actor=%s",
        item_id,
        quantity,
        reservation.reservation_id,
        actor_id,
    )
    return reservation


@transaction.atomic
def release(
    reservation_id: int,
    actor_id: str,
    quantity: Optional[int] = None,
) -> Reservation:
    """
    Return reserved units to the available pool.

    Without ``quantity`` the whole reservation is released. A partial quantity
    shrinks the reservation and leaves it active. Releasing a reservation that
    is no longer active raises AlreadyReleased and changes nothing.
    """
    reservation = _lock_reservation(reservation_id)
    if not reservation.is_active:
        raise AlreadyReleased(
            f"Reservation {reservation_id} was already released.",
            field="reservation_id",
        )

    if quantity is None:
        quantity = reservation.quantity
    quantity = _require_positive_quantity(quantity)
    if quantity > reservation.quantity:
        raise ValidationError(
            f"Cannot release {quantity}; reservation holds {reservation.quantity}.",
            code="invalid_quantity",
            field="quantity",
        )

    _increment_available(reservation.item_id, quantity, actor_id)

    if quantity == reservation.quantity:
        reservation.released_at = timezone.now()
        reservation.released_by = actor_id
        reservation.save(update_fields=["released_at", "released_by"])
    else:
        reservation.quantity -= quantity
        reservation.save(update_fields=["quantity"])

    logger.info(
        "inventory.released item=%s qty=%d reservation=%s actor=%s",
        reservation.item_id,
        quantity,
        reservation_id,
        actor_id,
    )
    return reservation


@transaction.atomic
def adjust_assigned(
    reservation_id: int,
    old_quantity: int,
    new_quantity: int,
    actor_id: str,
) -> Reservation:
    """
    Change the size of an active reservation.

    ``old_quantity`` must match what the reservation currently holds so that a
    stale client cannot apply an adjustment twice. Growth is re-validated
    against current availability.
    """
    new_quantity = _require_positive_quantity(new_quantity)
    reservation = _lock_reservation(reservation_id)
    if not reservation.is_active:
        raise AlreadyReleased(
            f"Reservation {reservation_id} was already released.",
            field="reservation_id",
        )
    if reservation.quantity != old_quantity:
        raise AlreadyProcessed(
            f"Reservation holds {reservation.quantity}, not {old_quantity}.",
            field="quantity",
        )

    delta = new_quantity - old_quantity
    if delta > 0:
        if not _decrement_available(reservation.item_id, delta, actor_id):
            raise _insufficient(reservation.item_id, delta)
    elif delta < 0:
        _increment_available(reservation.item_id, -delta, actor_id)

    if delta:
        reservation.quantity = new_quantity
        reservation.save(update_fields=["quantity"])

    logger.info(
        "inventory.adjusted item=%s reservation=%s from=%d to=%d actor=%s",
        reservation.item_id,
        reservation_id,
        old_quantity,
        new_quantity,
        actor_id,
    )
    return reservation


def active_reservation_for(request: Request) -> Optional[Reservation]:
    return (
        Reservation.objects.select_for_update()
        .filter(request=request, released_at__isnull=True)
        .order_by("reservation_id")
        .first()
    )


def reserved_quantity(item_id: int) -> int:
    total = Reservation.objects.filter(
        item_id=item_id, released_at__isnull=True
    ).aggregate(total=Sum("quantity"))["total"]
    return int(total or 0)


def find_counter_drift() -> List[Dict[str, Any]]:
    """
    Items whose available counter disagrees with total minus active holds.
    An empty list means the inventory is consistent.
    """
    items = InventoryItem.objects.annotate(
        held=Sum("reservations__quantity", filter=Q(reservations__released_at__isnull=True))
    ).order_by("item_id")
    drift = []
    for item in items:
        held = int(item.held or 0)
        expected = item.quantity_total - held
        if expected != item.quantity_available:
            drift.append(
                {
                    "item_id": item.item_id,
                    "name": item.name,
                    "quantity_total": item.quantity_total,
                    "quantity_available": item.quantity_available,
                    "reserved": held,
                    "expected_available": expected,
                }
            )
    return drift


def serialize_item(item: InventoryItem) -> Dict[str, Any]:
    return {
        "item_id": item.item_id,
        "name": item.name,
        "category": item.category,
        "quantity_total": item.quantity_total,
        "quantity_available": item.quantity_available,
        "status": item.status,
    }
