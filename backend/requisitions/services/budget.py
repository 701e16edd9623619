"""
Budget ledger for custom purchase requests.

Spending is never entered by hand: ``recalculate`` derives it from the
estimated cost of approved custom requests in the current period.
"""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from requisitions import rules
from requisitions.exceptions import InvalidAmount
from requisitions.models import Request, SchoolBudget

logger = logging.getLogger("property.audit")

_CENTS = Decimal("0.01")


def percentage_used(total_budget: Decimal, total_spent: Decimal) -> float:
    if not total_budget or total_budget <= 0:
        return 0.0
    return float((Decimal(total_spent) / Decimal(total_budget) * 100).quantize(_CENTS))


def _parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None or value == "":
        raise InvalidAmount("Amount is required.")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount("Amount must be a number.")
    if not amount.is_finite():
        raise InvalidAmount("Amount must be a number.")
    if amount < 0:
        raise InvalidAmount("Amount cannot be negative.")
    return amount.quantize(_CENTS)


def get_budget() -> SchoolBudget:
    budget, _ = SchoolBudget.objects.get_or_create(
        pk=SchoolBudget.SINGLETON_ID,
        defaults={"create_by_id": "system", "update_by_id": "system"},
    )
    return budget


def _lock_budget() -> SchoolBudget:
    get_budget()
    return SchoolBudget.objects.select_for_update().get(pk=SchoolBudget.SINGLETON_ID)


def _save(budget: SchoolBudget, actor_id: str, fields: list[str]) -> None:
    budget.update_by_id = actor_id
    budget.version_nbr += 1
    budget.save(update_fields=fields + ["update_by_id", "version_nbr", "update_dtime"])


def committed_spend(since=None) -> Decimal:
    queryset = Request.objects.filter(
        request_type=Request.TYPE_CUSTOM,
        status__in=rules.BUDGET_COMMITTED_STATUSES,
        estimated_cost__isnull=False,
    )
    if since is not None:
        queryset = queryset.filter(approved_at__gte=since)
    total = queryset.aggregate(total=Sum("estimated_cost"))["total"]
    return Decimal(total or 0).quantize(_CENTS)


@transaction.atomic
def recalculate(actor_id: str = "system") -> SchoolBudget:
    budget = _lock_budget()
    previous = budget.total_spent
    budget.total_spent = committed_spend(since=budget.period_started_at)
    _save(budget, actor_id, ["total_spent"])

    logger.info(
        "budget.recalculated spent=%s previous=%s total=%s actor=%s",
        budget.total_spent,
        previous,
        budget.total_budget,
        actor_id,
    )
    return budget


@transaction.atomic
def set_total_budget(amount: Any, actor_id: str) -> SchoolBudget:
    amount = _parse_amount(amount)
    budget = _lock_budget()
    previous = budget.total_budget
    budget.total_budget = amount
    _save(budget, actor_id, ["total_budget"])

    logger.info(
        "budget_updated",
        extra={
            "event_type": "UPDATE",
            "user_id": actor_id,
            "from_amount": str(previous),
            "to_amount": str(amount),
        },
    )
    return budget


@transaction.atomic
def reset(actor_id: str, new_amount: Optional[Any] = None) -> SchoolBudget:
    """
    Start a new spending period. Spending from before the reset is no longer
    counted by ``recalculate``. Irreversible.
    """
    amount = _parse_amount(new_amount) if new_amount is not None else None
    budget = _lock_budget()
    previous_total = budget.total_budget
    previous_spent = budget.total_spent
    budget.total_spent = Decimal("0.00")
    budget.period_started_at = timezone.now()
    fields = ["total_spent", "period_started_at"]
    if amount is not None:
        budget.total_budget = amount
        fields.append("total_budget")
    _save(budget, actor_id, fields)

    logger.warning(
        "budget_reset",
        extra={
            "event_type": "UPDATE",
            "user_id": actor_id,
            "previous_total": str(previous_total),
            "previous_spent": str(previous_spent),
            "total_budget": str(budget.total_budget),
        },
    )
    return budget


def serialize_budget(budget: SchoolBudget) -> Dict[str, Any]:
    return {
        "total_budget": str(budget.total_budget),
        "total_spent": str(budget.total_spent),
        "remaining_balance": str(budget.remaining_balance),
        "percentage_used": percentage_used(budget.total_budget, budget.total_spent),
        "period_started_at": (
            budget.period_started_at.isoformat() if budget.period_started_at else None
        ),
    }
