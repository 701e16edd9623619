from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import patch

from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from requisitions import rules
from requisitions.exceptions import (
    AlreadyProcessed,
    AlreadyReleased,
    InsufficientStock,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from requisitions.models import InventoryItem, Request, RequestStatusHistory, Reservation, SchoolBudget
from requisitions.services import budget as budget_service
from requisitions.services import inventory, lifecycle, notifications

TEACHER = "teacher-1"
OTHER_TEACHER = "teacher-2"
ADMIN = "admin-1"


def _make_item(name="Projector", total=5, available=None, status=InventoryItem.STATUS_AVAILABLE):
    return InventoryItem.objects.create(
        name=name,
        category="AV",
        quantity_total=total,
        quantity_available=total if available is None else available,
        status=status,
        create_by_id="catalog",
        update_by_id="catalog",
    )


def _submit(item, quantity=3, actor=TEACHER, priority=None):
    return lifecycle.submit_item_request(
        actor_id=actor,
        actor_name=f"Teacher {actor}",
        item_id=item.item_id,
        quantity=quantity,
        location="Room 12",
        priority=priority,
    )


def _due(days=7):
    return timezone.localdate() + timedelta(days=days)


def _available(item) -> int:
    item.refresh_from_db()
    return item.quantity_available


class InventoryStoreTests(TestCase):
    def setUp(self) -> None:
        self.item = _make_item(total=5)

    def test_reserve_decrements_available(self) -> None:
        reservation = inventory.reserve(self.item.item_id, 2, ADMIN)

        self.assertEqual(_available(self.item), 3)
        self.assertTrue(reservation.is_active)
        self.assertEqual(inventory.reserved_quantity(self.item.item_id), 2)

    def test_reserve_more_than_available_has_no_side_effect(self) -> None:
        with self.assertRaises(InsufficientStock) as ctx:
            inventory.reserve(self.item.item_id, 6, ADMIN)

        self.assertEqual(ctx.exception.available, 5)
        self.assertEqual(ctx.exception.requested, 6)
        self.assertEqual(_available(self.item), 5)
        self.assertFalse(Reservation.objects.exists())

    def test_reserve_rejects_non_positive_quantity(self) -> None:
        with self.assertRaises(ValidationError):
            inventory.reserve(self.item.item_id, 0, ADMIN)
        self.assertEqual(_available(self.item), 5)

    def test_reserve_refuses_item_under_maintenance(self) -> None:
        item = _make_item(name="Printer", total=2, status=InventoryItem.STATUS_UNDER_MAINTENANCE)

        with self.assertRaises(InsufficientStock):
            inventory.reserve(item.item_id, 1, ADMIN)
        self.assertEqual(_available(item), 2)

    def test_reserve_unknown_item(self) -> None:
        with self.assertRaises(NotFound):
            inventory.reserve(999, 1, ADMIN)

    def test_second_release_signals_already_released(self) -> None:
        reservation = inventory.reserve(self.item.item_id, 2, ADMIN)
        inventory.release(reservation.reservation_id, ADMIN)
        self.assertEqual(_available(self.item), 5)

        with self.assertRaises(AlreadyReleased):
            inventory.release(reservation.reservation_id, ADMIN)
        self.assertEqual(_available(self.item), 5)

    def test_partial_release_shrinks_reservation(self) -> None:
        reservation = inventory.reserve(self.item.item_id, 3, ADMIN)

        reservation = inventory.release(reservation.reservation_id, ADMIN, quantity=1)

        self.assertTrue(reservation.is_active)
        self.assertEqual(reservation.quantity, 2)
        self.assertEqual(_available(self.item), 3)

    def test_release_more_than_reserved_is_rejected(self) -> None:
        reservation = inventory.reserve(self.item.item_id, 2, ADMIN)

        with self.assertRaises(ValidationError):
            inventory.release(reservation.reservation_id, ADMIN, quantity=3)
        self.assertEqual(_available(self.item), 3)

    def test_adjust_assigned_grows_and_shrinks(self) -> None:
        reservation = inventory.reserve(self.item.item_id, 2, ADMIN)

        inventory.adjust_assigned(reservation.reservation_id, 2, 4, ADMIN)
        self.assertEqual(_available(self.item), 1)

        reservation = inventory.adjust_assigned(reservation.reservation_id, 4, 1, ADMIN)
        self.assertEqual(reservation.quantity, 1)
        self.assertEqual(_available(self.item), 4)

    def test_adjust_assigned_with_stale_quantity_is_already_processed(self) -> None:
        reservation = inventory.reserve(self.item.item_id, 2, ADMIN)
        inventory.adjust_assigned(reservation.reservation_id, 2, 3, ADMIN)

        with self.assertRaises(AlreadyProcessed):
            inventory.adjust_assigned(reservation.reservation_id, 2, 3, ADMIN)
        self.assertEqual(_available(self.item), 2)

    def test_adjust_assigned_revalidates_availability(self) -> None:
        reservation = inventory.reserve(self.item.item_id, 2, ADMIN)
        inventory.reserve(self.item.item_id, 2, ADMIN)

        with self.assertRaises(InsufficientStock):
            inventory.adjust_assigned(reservation.reservation_id, 2, 4, ADMIN)

        reservation.refresh_from_db()
        self.assertEqual(reservation.quantity, 2)
        self.assertEqual(_available(self.item), 1)

    def test_counter_drift_detects_out_of_band_edits(self) -> None:
        inventory.reserve(self.item.item_id, 2, ADMIN)
        self.assertEqual(inventory.find_counter_drift(), [])

        InventoryItem.objects.filter(pk=self.item.item_id).update(quantity_available=5)

        drift = inventory.find_counter_drift()
        self.assertEqual(len(drift), 1)
        self.assertEqual(drift[0]["expected_available"], 3)


class ItemRequestLifecycleTests(TestCase):
    def setUp(self) -> None:
        self.item = _make_item(total=5)

    def test_reserve_return_inspect_round_trip(self) -> None:
        request_a = _submit(self.item, 3)
        lifecycle.approve_and_assign(request_a.request_id, ADMIN, due_date=_due(), quantity=3)
        self.assertEqual(_available(self.item), 2)

        request_b = _submit(self.item, 3, actor=OTHER_TEACHER)
        with self.assertRaises(InsufficientStock):
            lifecycle.approve_and_assign(request_b.request_id, ADMIN, due_date=_due(), quantity=3)
        request_b.refresh_from_db()
        self.assertEqual(request_b.status, Request.STATUS_PENDING)
        self.assertEqual(_available(self.item), 2)

        lifecycle.teacher_return(request_a.request_id, TEACHER)
        self.assertEqual(_available(self.item), 2)

        outcome = lifecycle.inspect(request_a.request_id, ADMIN, result=lifecycle.INSPECTION_PASS)

        self.assertEqual(outcome.request.status, Request.STATUS_CLOSED)
        self.assertEqual(outcome.request.inspection_status, Request.INSPECTION_PASSED)
        self.assertIsNone(outcome.suggested_report)
        self.assertEqual(_available(self.item), 5)
        self.assertEqual(inventory.find_counter_drift(), [])

    def test_approve_sets_assignment_fields(self) -> None:
        req = _submit(self.item, 2)
        due = _due(3)

        req = lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=due)

        self.assertEqual(req.status, Request.STATUS_ASSIGNED)
        self.assertEqual(req.quantity_assigned, 2)
        self.assertEqual(req.due_date, due)
        self.assertIsNotNone(req.assigned_at)
        self.assertEqual(req.assigned_by, ADMIN)

    def test_approve_more_than_requested_changes_nothing(self) -> None:
        req = _submit(self.item, 2)

        with self.assertRaises(ValidationError) as ctx:
            lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due(), quantity=3)

        self.assertEqual(ctx.exception.code, "quantity_exceeds_requested")
        req.refresh_from_db()
        self.assertEqual(req.status, Request.STATUS_PENDING)
        self.assertIsNone(req.due_date)
        self.assertEqual(_available(self.item), 5)

    def test_approve_rejects_datetime_due_date(self) -> None:
        req = _submit(self.item, 1)

        with self.assertRaises(ValidationError) as ctx:
            lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=timezone.now() + timedelta(days=2))

        self.assertEqual(ctx.exception.field, "due_date")
        req.refresh_from_db()
        self.assertEqual(req.status, Request.STATUS_PENDING)
        self.assertEqual(_available(self.item), 5)

    def test_approve_rejects_past_due_date(self) -> None:
        req = _submit(self.item, 1)

        with self.assertRaises(ValidationError) as ctx:
            lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due(-1))

        self.assertEqual(ctx.exception.field, "due_date")
        self.assertEqual(_available(self.item), 5)

    def test_second_approval_is_already_processed(self) -> None:
        req = _submit(self.item, 2)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())

        with self.assertRaises(AlreadyProcessed):
            lifecycle.approve_and_assign(req.request_id, "admin-2", due_date=_due())

        self.assertEqual(_available(self.item), 3)
        self.assertEqual(Reservation.objects.filter(request=req).count(), 1)

    def test_combined_approvals_beyond_stock_only_first_succeeds(self) -> None:
        first = _submit(self.item, 3)
        second = _submit(self.item, 3, actor=OTHER_TEACHER)

        lifecycle.approve_and_assign(first.request_id, ADMIN, due_date=_due())
        with self.assertRaises(InsufficientStock):
            lifecycle.approve_and_assign(second.request_id, "admin-2", due_date=_due())

        self.assertEqual(_available(self.item), 2)
        self.assertEqual(inventory.find_counter_drift(), [])

    def test_reject_without_reservation_leaves_counters(self) -> None:
        req = _submit(self.item, 2)

        req = lifecycle.reject(req.request_id, ADMIN, admin_response="Not this term.")

        self.assertEqual(req.status, Request.STATUS_REJECTED)
        self.assertEqual(req.admin_response, "Not this term.")
        self.assertEqual(_available(self.item), 5)

    def test_reject_after_assignment_is_already_processed(self) -> None:
        req = _submit(self.item, 2)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())

        with self.assertRaises(AlreadyProcessed):
            lifecycle.reject(req.request_id, ADMIN)
        self.assertEqual(_available(self.item), 3)

    def test_failed_transition_rolls_back_reservation(self) -> None:
        req = _submit(self.item, 2)

        with patch(
            "requisitions.services.lifecycle._record_transition",
            side_effect=RuntimeError("history write failed"),
        ):
            with self.assertRaises(RuntimeError):
                lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())

        req.refresh_from_db()
        self.assertEqual(req.status, Request.STATUS_PENDING)
        self.assertEqual(_available(self.item), 5)
        self.assertFalse(Reservation.objects.exists())

    def test_return_requires_owner(self) -> None:
        req = _submit(self.item, 1)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())

        with self.assertRaises(PermissionDenied):
            lifecycle.teacher_return(req.request_id, OTHER_TEACHER)

    def test_return_before_assignment_is_invalid(self) -> None:
        req = _submit(self.item, 1)

        with self.assertRaises(InvalidTransition):
            lifecycle.teacher_return(req.request_id, TEACHER)

    def test_return_records_damage_flag_and_notes(self) -> None:
        req = _submit(self.item, 1)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())

        req = lifecycle.teacher_return(
            req.request_id, TEACHER, reported_damaged=True, notes="Cracked lens"
        )

        self.assertEqual(req.status, Request.STATUS_RETURNED_PENDING_INSPECTION)
        self.assertEqual(req.inspection_status, Request.INSPECTION_PENDING)
        self.assertTrue(req.reported_damaged)
        self.assertEqual(req.return_notes, "Cracked lens")
        self.assertIsNotNone(req.returned_at)

    def test_failed_inspection_keeps_stock_held(self) -> None:
        req = _submit(self.item, 2)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())
        lifecycle.teacher_return(req.request_id, TEACHER)

        outcome = lifecycle.inspect(
            req.request_id, ADMIN, result=lifecycle.INSPECTION_FAIL, remarks="Screen broken"
        )

        self.assertEqual(outcome.request.status, Request.STATUS_CLOSED)
        self.assertEqual(outcome.request.inspection_status, Request.INSPECTION_FAILED)
        self.assertEqual(_available(self.item), 3)
        self.assertEqual(outcome.suggested_report["report_kind"], Request.REPORT_DAMAGED)
        self.assertEqual(outcome.suggested_report["related_request_id"], req.request_id)
        self.assertEqual(outcome.suggested_report["reported_item_name"], "Projector")

    def test_passed_inspection_records_item_condition(self) -> None:
        req = _submit(self.item, 1)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())
        lifecycle.teacher_return(req.request_id, TEACHER)

        lifecycle.inspect(req.request_id, ADMIN, result="pass", condition="under_maintenance")

        self.item.refresh_from_db()
        self.assertEqual(self.item.status, InventoryItem.STATUS_UNDER_MAINTENANCE)
        self.assertEqual(self.item.quantity_available, 5)

    def test_reported_damage_defaults_condition_to_damaged(self) -> None:
        req = _submit(self.item, 1)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())
        lifecycle.teacher_return(req.request_id, TEACHER, reported_damaged=True)

        lifecycle.inspect(req.request_id, ADMIN, result="pass")

        self.item.refresh_from_db()
        self.assertEqual(self.item.status, InventoryItem.STATUS_DAMAGED)

    def test_inspect_twice_is_already_processed(self) -> None:
        req = _submit(self.item, 1)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())
        lifecycle.teacher_return(req.request_id, TEACHER)
        lifecycle.inspect(req.request_id, ADMIN, result="pass")

        with self.assertRaises(AlreadyProcessed):
            lifecycle.inspect(req.request_id, ADMIN, result="pass")
        self.assertEqual(_available(self.item), 5)

    def test_inspect_rejects_non_string_condition(self) -> None:
        req = _submit(self.item, 1)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())
        lifecycle.teacher_return(req.request_id, TEACHER)

        with self.assertRaises(ValidationError) as ctx:
            lifecycle.inspect(req.request_id, ADMIN, result="pass", condition=["damaged"])

        self.assertEqual(ctx.exception.field, "condition")
        req.refresh_from_db()
        self.assertEqual(req.status, Request.STATUS_RETURNED_PENDING_INSPECTION)
        self.assertEqual(_available(self.item), 4)

    def test_inspect_rejects_unknown_result(self) -> None:
        req = _submit(self.item, 1)

        with self.assertRaises(ValidationError):
            lifecycle.inspect(req.request_id, ADMIN, result="maybe")

    def test_adjust_assignment_moves_difference(self) -> None:
        req = _submit(self.item, 4)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due(), quantity=2)

        req = lifecycle.adjust_assignment(req.request_id, ADMIN, 4)
        self.assertEqual(req.quantity_assigned, 4)
        self.assertEqual(_available(self.item), 1)

        with self.assertRaises(ValidationError):
            lifecycle.adjust_assignment(req.request_id, ADMIN, 5)
        self.assertEqual(_available(self.item), 1)

    def test_delete_assigned_request_releases_stock(self) -> None:
        req = _submit(self.item, 3)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())

        result = lifecycle.delete_request(req.request_id, ADMIN)

        self.assertEqual(result["released_quantity"], 3)
        self.assertFalse(Request.objects.filter(pk=req.request_id).exists())
        self.assertEqual(_available(self.item), 5)
        self.assertEqual(inventory.find_counter_drift(), [])

    def test_delete_after_failed_inspection_keeps_hold(self) -> None:
        req = _submit(self.item, 2)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())
        lifecycle.teacher_return(req.request_id, TEACHER)
        lifecycle.inspect(req.request_id, ADMIN, result="fail")

        lifecycle.delete_request(req.request_id, ADMIN)

        reservation = Reservation.objects.get()
        self.assertIsNone(reservation.request_id)
        self.assertTrue(reservation.is_active)
        self.assertEqual(_available(self.item), 3)
        self.assertEqual(inventory.find_counter_drift(), [])

    def test_delete_unknown_request(self) -> None:
        with self.assertRaises(NotFound):
            lifecycle.delete_request(12345, ADMIN)

    def test_status_history_tracks_each_transition(self) -> None:
        req = _submit(self.item, 1)
        lifecycle.approve_and_assign(req.request_id, ADMIN, due_date=_due())
        lifecycle.teacher_return(req.request_id, TEACHER)
        lifecycle.inspect(req.request_id, ADMIN, result="pass")

        history = list(
            RequestStatusHistory.objects.filter(request_id=req.request_id).values_list(
                "from_status", "to_status"
            )
        )
        self.assertEqual(
            history,
            [
                (None, Request.STATUS_PENDING),
                (Request.STATUS_PENDING, Request.STATUS_ASSIGNED),
                (Request.STATUS_ASSIGNED, Request.STATUS_RETURNED_PENDING_INSPECTION),
                (Request.STATUS_RETURNED_PENDING_INSPECTION, Request.STATUS_CLOSED),
            ],
        )

    def test_submit_refuses_damaged_item(self) -> None:
        item = _make_item(name="Tablet", total=3, status=InventoryItem.STATUS_DAMAGED)

        with self.assertRaises(ValidationError) as ctx:
            _submit(item, 1)
        self.assertEqual(ctx.exception.code, "item_unavailable")

    def test_submit_requires_location(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            lifecycle.submit_item_request(TEACHER, "T", self.item.item_id, 1, location="  ")
        self.assertEqual(ctx.exception.field, "location")
        self.assertFalse(Request.objects.exists())

    def test_listings(self) -> None:
        overdue = _submit(self.item, 1)
        lifecycle.approve_and_assign(overdue.request_id, ADMIN, due_date=_due(1))
        Request.objects.filter(pk=overdue.request_id).update(due_date=_due(-2))

        returned = _submit(self.item, 1)
        lifecycle.approve_and_assign(returned.request_id, ADMIN, due_date=_due())
        lifecycle.teacher_return(returned.request_id, TEACHER)

        current = _submit(self.item, 2)
        lifecycle.approve_and_assign(current.request_id, ADMIN, due_date=_due())

        self.assertEqual(
            [req.request_id for req in lifecycle.list_overdue()], [overdue.request_id]
        )
        self.assertEqual(
            [req.request_id for req in lifecycle.list_pending_inspection()],
            [returned.request_id],
        )
        summary = lifecycle.assigned_summary(TEACHER)
        self.assertEqual(len(summary), 1)
        self.assertEqual(summary[0]["quantity_assigned"], 3)
        self.assertEqual(
            [a["is_overdue"] for a in summary[0]["assignments"]], [True, False]
        )


class CustomAndReportLifecycleTests(TestCase):
    def _custom(self, cost="100.00", actor=TEACHER):
        return lifecycle.submit_custom_request(
            actor_id=actor,
            actor_name="Teacher",
            item_name="Lab goggles",
            quantity=10,
            location="Science lab",
            estimated_cost=cost,
        )

    def test_custom_approval_recalculates_budget(self) -> None:
        budget_service.set_total_budget("1000", ADMIN)
        req = self._custom("100")

        lifecycle.respond_custom(req.request_id, ADMIN, "approved", "Ordered.")

        budget = budget_service.get_budget()
        self.assertEqual(budget.total_spent, Decimal("100.00"))
        self.assertEqual(budget.remaining_balance, Decimal("900.00"))
        self.assertEqual(budget_service.serialize_budget(budget)["percentage_used"], 10.0)
        req.refresh_from_db()
        self.assertIsNotNone(req.approved_at)
        self.assertFalse(Reservation.objects.exists())

    def test_custom_moves_freely_until_decided(self) -> None:
        req = self._custom()

        lifecycle.respond_custom(req.request_id, ADMIN, "purchasing")
        lifecycle.respond_custom(req.request_id, ADMIN, "under_review")
        lifecycle.respond_custom(req.request_id, ADMIN, "approved")

        with self.assertRaises(AlreadyProcessed):
            lifecycle.respond_custom(req.request_id, ADMIN, "rejected")
        req.refresh_from_db()
        self.assertEqual(req.status, Request.STATUS_APPROVED)

    def test_custom_repeat_response_is_already_processed(self) -> None:
        req = self._custom()
        lifecycle.respond_custom(req.request_id, ADMIN, "purchasing")

        with self.assertRaises(AlreadyProcessed):
            lifecycle.respond_custom(req.request_id, ADMIN, "purchasing")

    def test_custom_rejects_unknown_status(self) -> None:
        req = self._custom()

        with self.assertRaises(ValidationError):
            lifecycle.respond_custom(req.request_id, ADMIN, "assigned")

    def test_admin_response_length_is_bounded(self) -> None:
        req = self._custom()

        with self.assertRaises(ValidationError) as ctx:
            lifecycle.respond_custom(req.request_id, ADMIN, "rejected", "x" * 1001)
        self.assertEqual(ctx.exception.field, "admin_response")

    def test_respond_refuses_item_requests(self) -> None:
        item = _make_item()
        req = _submit(item, 1)

        with self.assertRaises(ValidationError):
            lifecycle.respond_custom(req.request_id, ADMIN, "approved")

    def test_custom_rejects_negative_cost(self) -> None:
        with self.assertRaises(ValidationError):
            self._custom("-5")

    def test_report_flow(self) -> None:
        req = lifecycle.submit_report(TEACHER, "Teacher", "Projector", "missing")

        for status in ("under_review", "in_progress", "resolved"):
            req = lifecycle.update_report_status(req.request_id, ADMIN, status)
        self.assertEqual(req.status, Request.STATUS_RESOLVED)

        with self.assertRaises(AlreadyProcessed):
            lifecycle.update_report_status(req.request_id, ADMIN, "rejected")

    def test_report_cannot_skip_states(self) -> None:
        req = lifecycle.submit_report(TEACHER, "Teacher", "Projector", "damaged")

        with self.assertRaises(InvalidTransition):
            lifecycle.update_report_status(req.request_id, ADMIN, "resolved")

    def test_report_rejectable_while_open(self) -> None:
        req = lifecycle.submit_report(TEACHER, "Teacher", "Projector", "other")
        lifecycle.update_report_status(req.request_id, ADMIN, "under_review")
        lifecycle.update_report_status(req.request_id, ADMIN, "in_progress")

        req = lifecycle.update_report_status(req.request_id, ADMIN, "rejected", "Duplicate report.")
        self.assertEqual(req.status, Request.STATUS_REJECTED)

    def test_report_must_reference_own_assignment(self) -> None:
        item = _make_item()
        assignment = _submit(item, 1)

        with self.assertRaises(PermissionDenied):
            lifecycle.submit_report(
                OTHER_TEACHER,
                "Other",
                "Projector",
                "missing",
                related_request_id=assignment.request_id,
            )

    def test_report_rejects_unknown_kind(self) -> None:
        with self.assertRaises(ValidationError):
            lifecycle.submit_report(TEACHER, "Teacher", "Projector", "stolen")


class BudgetLedgerTests(TestCase):
    def _approved_custom(self, cost):
        req = lifecycle.submit_custom_request(TEACHER, "Teacher", "Easel", 1, estimated_cost=cost)
        lifecycle.respond_custom(req.request_id, ADMIN, "approved")
        return req

    def test_budget_is_created_with_zero_defaults(self) -> None:
        budget = budget_service.get_budget()

        self.assertEqual(budget.total_budget, Decimal("0"))
        self.assertEqual(budget_service.serialize_budget(budget)["percentage_used"], 0.0)
        self.assertEqual(SchoolBudget.objects.count(), 1)

    def test_negative_total_is_invalid_amount(self) -> None:
        budget_service.set_total_budget("500", ADMIN)

        with self.assertRaises(InvalidAmount):
            budget_service.set_total_budget("-1", ADMIN)
        self.assertEqual(budget_service.get_budget().total_budget, Decimal("500.00"))

    def test_non_numeric_total_is_invalid_amount(self) -> None:
        with self.assertRaises(InvalidAmount):
            budget_service.set_total_budget("lots", ADMIN)

    def test_recalculate_ignores_unapproved_requests(self) -> None:
        budget_service.set_total_budget("1000", ADMIN)
        self._approved_custom("250")
        pending = lifecycle.submit_custom_request(TEACHER, "Teacher", "Kiln", 1, estimated_cost="400")
        lifecycle.respond_custom(pending.request_id, ADMIN, "purchasing")

        budget = budget_service.recalculate(ADMIN)

        self.assertEqual(budget.total_spent, Decimal("250.00"))

    def test_remaining_may_go_negative(self) -> None:
        budget_service.set_total_budget("100", ADMIN)
        self._approved_custom("150")

        budget = budget_service.get_budget()
        self.assertEqual(budget.remaining_balance, Decimal("-50.00"))
        self.assertEqual(budget_service.serialize_budget(budget)["percentage_used"], 150.0)

    def test_reset_starts_new_period(self) -> None:
        budget_service.set_total_budget("1000", ADMIN)
        self._approved_custom("300")

        budget = budget_service.reset(ADMIN)
        self.assertEqual(budget.total_spent, Decimal("0"))
        self.assertEqual(budget.total_budget, Decimal("1000.00"))

        budget = budget_service.recalculate(ADMIN)
        self.assertEqual(budget.total_spent, Decimal("0.00"))

        self._approved_custom("40")
        self.assertEqual(budget_service.get_budget().total_spent, Decimal("40.00"))

    def test_deleting_approved_custom_request_refreshes_spend(self) -> None:
        budget_service.set_total_budget("1000", ADMIN)
        req = self._approved_custom("100")
        self.assertEqual(budget_service.get_budget().total_spent, Decimal("100.00"))

        lifecycle.delete_request(req.request_id, ADMIN)

        budget = budget_service.get_budget()
        self.assertEqual(budget.total_spent, Decimal("0.00"))
        self.assertEqual(budget.remaining_balance, Decimal("1000.00"))

    def test_deleting_pending_custom_request_leaves_spend(self) -> None:
        budget_service.set_total_budget("1000", ADMIN)
        self._approved_custom("100")
        pending = lifecycle.submit_custom_request(TEACHER, "Teacher", "Kiln", 1, estimated_cost="400")

        lifecycle.delete_request(pending.request_id, ADMIN)

        self.assertEqual(budget_service.get_budget().total_spent, Decimal("100.00"))

    def test_reset_with_new_amount(self) -> None:
        budget_service.set_total_budget("1000", ADMIN)

        budget = budget_service.reset(ADMIN, new_amount="2500")

        self.assertEqual(budget.total_budget, Decimal("2500.00"))


class BudgetMathTests(SimpleTestCase):
    def test_percentage_used_with_zero_budget(self) -> None:
        self.assertEqual(budget_service.percentage_used(Decimal("0"), Decimal("500")), 0.0)

    def test_percentage_used_rounds_to_two_places(self) -> None:
        self.assertEqual(budget_service.percentage_used(Decimal("300"), Decimal("100")), 33.33)


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=dt_timezone.utc)
PROJECTOR = InventoryItem(item_id=1, name="Projector", quantity_total=5, quantity_available=5)


def _req(request_id, **fields):
    values = {
        "request_id": request_id,
        "request_type": Request.TYPE_ITEM,
        "status": Request.STATUS_PENDING,
        "requester_id": TEACHER,
        "requester_name": "Teacher One",
        "priority": Request.PRIORITY_NORMAL,
        "item": PROJECTOR,
        "quantity_requested": 1,
        "created_at": NOW - timedelta(hours=1),
        "updated_at": NOW - timedelta(hours=1),
    }
    values.update(fields)
    return Request(**values)


def _assigned(request_id, due_days, assigned_hours_ago=2, **fields):
    return _req(
        request_id,
        status=Request.STATUS_ASSIGNED,
        quantity_assigned=1,
        due_date=NOW.date() + timedelta(days=due_days),
        assigned_at=NOW - timedelta(hours=assigned_hours_ago),
        **fields,
    )


@override_settings(
    NOTIFICATION_COMPACT_LIMIT=15,
    NOTIFICATION_TEACHER_LIMIT=10,
    NOTIFICATION_ASSIGNED_WINDOW_HOURS=24,
    NOTIFICATION_DUE_SOON_DAYS=3,
    TIME_ZONE="UTC",
)
class NotificationDeriverTests(SimpleTestCase):
    def test_overdue_assignment_emits_overdue_not_pending(self) -> None:
        result = [n.id for n in notifications.derive([_assigned(7, due_days=-1)], NOW)]

        self.assertEqual(result.count("overdue-7"), 1)
        self.assertNotIn("pending-7", result)

    def test_old_overdue_assignment_in_compact_feed(self) -> None:
        result = notifications.derive([_assigned(7, due_days=-1, assigned_hours_ago=72)], NOW)

        self.assertEqual([n.id for n in result], ["overdue-7"])

    def test_full_feed_lists_overdue_assignment_as_assigned_too(self) -> None:
        result = notifications.derive(
            [_assigned(7, due_days=-1, assigned_hours_ago=72)],
            NOW,
            feed=notifications.FEED_FULL,
        )

        self.assertEqual({n.id for n in result}, {"overdue-7", "assigned-7"})

    def test_urgent_takes_precedence_over_pending(self) -> None:
        result = notifications.derive(
            [_req(1, priority=Request.PRIORITY_URGENT), _req(2)], NOW
        )

        self.assertEqual(sorted(n.id for n in result), ["pending-2", "urgent-1"])

    def test_inspection_pending_uses_return_time(self) -> None:
        returned_at = NOW - timedelta(minutes=5)
        req = _req(
            3,
            status=Request.STATUS_RETURNED_PENDING_INSPECTION,
            inspection_status=Request.INSPECTION_PENDING,
            returned_at=returned_at,
        )

        result = notifications.derive([req], NOW)

        self.assertEqual(result[0].id, "inspection-3")
        self.assertEqual(result[0].timestamp, returned_at)

    def test_assigned_is_windowed_only_in_compact_feed(self) -> None:
        requests = [_assigned(4, due_days=5, assigned_hours_ago=48), _assigned(5, due_days=5)]

        compact = notifications.derive(requests, NOW)
        full = notifications.derive(requests, NOW, feed=notifications.FEED_FULL)

        self.assertEqual([n.id for n in compact], ["assigned-5"])
        self.assertEqual([n.id for n in full], ["assigned-5", "assigned-4"])

    def test_compact_feed_is_capped_and_sorted(self) -> None:
        requests = [
            _req(i, created_at=NOW - timedelta(minutes=i)) for i in range(1, 21)
        ]

        compact = notifications.derive(requests, NOW)
        full = notifications.derive(requests, NOW, feed=notifications.FEED_FULL)

        self.assertEqual(len(compact), 15)
        self.assertEqual(len(full), 20)
        self.assertEqual(compact[0].id, "pending-1")
        timestamps = [n.timestamp for n in full]
        self.assertEqual(timestamps, sorted(timestamps, reverse=True))

    def test_derive_is_deterministic(self) -> None:
        requests = [_req(1), _assigned(2, due_days=-3), _req(3, priority=Request.PRIORITY_URGENT)]

        self.assertEqual(
            notifications.derive(requests, NOW, read_ids={"pending-1"}),
            notifications.derive(requests, NOW, read_ids={"pending-1"}),
        )

    def test_marking_one_read_leaves_others_unread(self) -> None:
        requests = [_req(1), _req(2, priority=Request.PRIORITY_URGENT)]
        read_ids = frozenset()

        updated = notifications.mark_read(read_ids, "pending-1")
        result = {n.id: n.read for n in notifications.derive(requests, NOW, read_ids=updated)}

        self.assertEqual(read_ids, frozenset())
        self.assertEqual(result, {"pending-1": True, "urgent-2": False})
        self.assertEqual(notifications.unread_count(notifications.derive(requests, NOW), updated), 1)

    def test_mark_all_read(self) -> None:
        feed = notifications.derive([_req(1), _req(2)], NOW)

        read_ids = notifications.mark_all_read({"stale-9"}, feed)

        self.assertEqual(read_ids, {"stale-9", "pending-1", "pending-2"})
        self.assertEqual(notifications.unread_count(feed, read_ids), 0)

    def test_requests_preference_disables_feed(self) -> None:
        prefs = notifications.NotificationPrefs(requests=False)

        self.assertEqual(notifications.derive([_req(1)], NOW, prefs=prefs), [])
        self.assertEqual(notifications.derive_teacher([_req(1)], NOW, TEACHER, prefs=prefs), [])

    def test_closed_and_rejected_requests_are_silent(self) -> None:
        requests = [
            _req(1, status=Request.STATUS_CLOSED, inspection_status=Request.INSPECTION_PASSED),
            _req(2, status=Request.STATUS_REJECTED),
        ]

        self.assertEqual(notifications.derive(requests, NOW), [])

    def test_unknown_feed_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            notifications.derive([], NOW, feed="digest")

    def test_fetch_failure_yields_empty_feed(self) -> None:
        def failing_fetch():
            raise DatabaseError("connection lost")

        result = notifications.load_feed(failing_fetch, notifications.derive, now=NOW)

        self.assertEqual(result, [])

    def test_teacher_feed(self) -> None:
        custom = _req(
            20,
            request_type=Request.TYPE_CUSTOM,
            status=Request.STATUS_APPROVED,
            item=None,
            item_name="Microscope",
            admin_response="Ordered from supplier.",
        )
        requests = [
            _assigned(10, due_days=-1),
            _assigned(11, due_days=2),
            _assigned(12, due_days=10),
            _assigned(13, due_days=10, assigned_hours_ago=72),
            _req(14, status=Request.STATUS_REJECTED),
            custom,
            _assigned(30, due_days=-1, requester_id=OTHER_TEACHER),
        ]

        result = {n.id: n for n in notifications.derive_teacher(requests, NOW, TEACHER)}

        self.assertEqual(
            set(result),
            {"overdue-10", "due-soon-11", "assigned-12", "rejected-14", "custom-approved-20"},
        )
        self.assertEqual(result["custom-approved-20"].message, "Ordered from supplier.")

    def test_teacher_feed_is_capped(self) -> None:
        requests = [_assigned(i, due_days=1) for i in range(1, 15)]

        self.assertEqual(len(notifications.derive_teacher(requests, NOW, TEACHER)), 10)


@override_settings(AUTH_ENABLED=False, DEV_AUTH_ENABLED=True, DEBUG=True)
class RequisitionApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        self.item = _make_item(total=5)

    def _as_teacher(self, user_id=TEACHER):
        return self.settings(DEV_AUTH_USER_ID=user_id, DEV_AUTH_USERNAME="", DEV_AUTH_ROLES=["TEACHER"])

    def _as_admin(self):
        return self.settings(DEV_AUTH_USER_ID=ADMIN, DEV_AUTH_USERNAME="", DEV_AUTH_ROLES=["ADMIN"])

    def _submit_via_api(self, quantity=3, user_id=TEACHER):
        with self._as_teacher(user_id):
            response = self.client.post(
                "/api/v1/requisitions/requests/item",
                {"item_id": self.item.item_id, "quantity_requested": quantity, "location": "Room 4"},
                format="json",
            )
        self.assertEqual(response.status_code, 201)
        return response.json()["request_id"]

    def test_full_item_flow(self) -> None:
        request_id = self._submit_via_api(3)
        base = f"/api/v1/requisitions/requests/{request_id}"

        with self._as_admin():
            response = self.client.post(
                f"{base}/approve", {"due_date": _due().isoformat()}, format="json"
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "assigned")
        self.assertEqual(_available(self.item), 2)

        with self._as_teacher():
            response = self.client.post(f"{base}/return", {"notes": "All good"}, format="json")
        self.assertEqual(response.status_code, 200)

        with self._as_admin():
            response = self.client.post(f"{base}/inspect", {"result": "pass"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["suggested_report"])
        self.assertEqual(_available(self.item), 5)

        with self._as_teacher():
            response = self.client.get(base)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["history"]), 4)

    def test_teacher_cannot_approve(self) -> None:
        request_id = self._submit_via_api(1)

        with self._as_teacher():
            response = self.client.post(
                f"/api/v1/requisitions/requests/{request_id}/approve",
                {"due_date": _due().isoformat()},
                format="json",
            )

        self.assertEqual(response.status_code, 403)

    def test_admin_cannot_submit(self) -> None:
        with self._as_admin():
            response = self.client.post(
                "/api/v1/requisitions/requests/item",
                {"item_id": self.item.item_id, "quantity_requested": 1, "location": "Office"},
                format="json",
            )

        self.assertEqual(response.status_code, 403)

    def test_approve_insufficient_stock_is_conflict(self) -> None:
        request_id = self._submit_via_api(5)
        InventoryItem.objects.filter(pk=self.item.item_id).update(quantity_available=2)

        with self._as_admin():
            response = self.client.post(
                f"/api/v1/requisitions/requests/{request_id}/approve",
                {"due_date": _due().isoformat()},
                format="json",
            )

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "insufficient_stock")
        self.assertEqual(body["available"], 2)

    def test_repeat_approve_is_conflict(self) -> None:
        request_id = self._submit_via_api(1)
        url = f"/api/v1/requisitions/requests/{request_id}/approve"

        with self._as_admin():
            self.client.post(url, {"due_date": _due().isoformat()}, format="json")
            response = self.client.post(url, {"due_date": _due().isoformat()}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "already_processed")

    def test_approve_requires_due_date(self) -> None:
        request_id = self._submit_via_api(1)

        with self._as_admin():
            response = self.client.post(
                f"/api/v1/requisitions/requests/{request_id}/approve", {}, format="json"
            )

        self.assertEqual(response.status_code, 400)
        self.assertIn("due_date", response.json()["errors"])

    def test_submit_rejects_non_integer_quantity(self) -> None:
        with self._as_teacher():
            response = self.client.post(
                "/api/v1/requisitions/requests/item",
                {"item_id": self.item.item_id, "quantity_requested": "2.5", "location": "Room 4"},
                format="json",
            )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["errors"]["quantity_requested"], "Must be an integer.")

    def test_teacher_sees_only_own_requests(self) -> None:
        own = self._submit_via_api(1)
        other = self._submit_via_api(1, user_id=OTHER_TEACHER)

        with self._as_teacher():
            listing = self.client.get("/api/v1/requisitions/requests/")
            detail = self.client.get(f"/api/v1/requisitions/requests/{other}")

        self.assertEqual([r["request_id"] for r in listing.json()["requests"]], [own])
        self.assertEqual(detail.status_code, 404)

        with self._as_admin():
            listing = self.client.get("/api/v1/requisitions/requests/")
        self.assertEqual(len(listing.json()["requests"]), 2)

    def test_admin_delete_releases_stock(self) -> None:
        request_id = self._submit_via_api(2)
        with self._as_admin():
            self.client.post(
                f"/api/v1/requisitions/requests/{request_id}/approve",
                {"due_date": _due().isoformat()},
                format="json",
            )
            response = self.client.delete(f"/api/v1/requisitions/requests/{request_id}")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["released_quantity"], 2)
        self.assertEqual(_available(self.item), 5)

    def test_custom_respond_returns_catalog_flag_and_budget(self) -> None:
        with self._as_teacher():
            response = self.client.post(
                "/api/v1/requisitions/requests/custom",
                {"item_name": "Globe", "quantity_requested": 2, "estimated_cost": "100"},
                format="json",
            )
        request_id = response.json()["request_id"]

        with self._as_admin():
            self.client.put("/api/v1/requisitions/budget/", {"total_budget": "1000"}, format="json")
            response = self.client.post(
                f"/api/v1/requisitions/requests/{request_id}/respond",
                {"status": "approved", "admin_response": "Buying this week."},
                format="json",
            )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["catalog_addition_required"])
        self.assertEqual(body["budget"]["total_spent"], "100.00")
        self.assertEqual(body["budget"]["remaining_balance"], "900.00")
        self.assertEqual(body["budget"]["percentage_used"], 10.0)

    def test_inspect_with_list_condition_is_bad_request(self) -> None:
        request_id = self._submit_via_api(1)
        base = f"/api/v1/requisitions/requests/{request_id}"
        with self._as_admin():
            self.client.post(f"{base}/approve", {"due_date": _due().isoformat()}, format="json")
        with self._as_teacher():
            self.client.post(f"{base}/return", {}, format="json")

        with self._as_admin():
            response = self.client.post(
                f"{base}/inspect", {"result": "pass", "condition": ["damaged"]}, format="json"
            )

        self.assertEqual(response.status_code, 400)
        self.assertIn("condition", response.json()["errors"])

    def test_report_submission_and_status(self) -> None:
        with self._as_teacher():
            response = self.client.post(
                "/api/v1/requisitions/requests/report",
                {"reported_item_name": "Projector", "report_kind": "missing"},
                format="json",
            )
        self.assertEqual(response.status_code, 201)
        request_id = response.json()["request_id"]

        with self._as_admin():
            response = self.client.post(
                f"/api/v1/requisitions/requests/{request_id}/report-status",
                {"status": "resolved"},
                format="json",
            )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_transition")

    def test_budget_validation_and_reset(self) -> None:
        with self._as_admin():
            response = self.client.put(
                "/api/v1/requisitions/budget/", {"total_budget": "-10"}, format="json"
            )
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["code"], "invalid_amount")

            response = self.client.post("/api/v1/requisitions/budget/reset", {}, format="json")
            self.assertEqual(response.status_code, 400)
            self.assertIn("confirm", response.json()["errors"])

            response = self.client.post(
                "/api/v1/requisitions/budget/reset",
                {"confirm": True, "new_amount": "750"},
                format="json",
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total_budget"], "750.00")
        self.assertEqual(response.json()["total_spent"], "0.00")

    def test_teacher_cannot_manage_budget(self) -> None:
        with self._as_teacher():
            response = self.client.get("/api/v1/requisitions/budget/")

        self.assertEqual(response.status_code, 403)

    def test_admin_notifications(self) -> None:
        first = self._submit_via_api(1)
        self._submit_via_api(1, user_id=OTHER_TEACHER)

        with self._as_admin():
            response = self.client.get(
                "/api/v1/requisitions/notifications/", {"read_ids": f"pending-{first}"}
            )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(len(body["notifications"]), 2)
        self.assertEqual(body["unread_count"], 1)
        self.assertEqual(body["poll_interval_seconds"], rules.poll_interval_seconds())

    def test_teacher_notifications_follow_assignment(self) -> None:
        request_id = self._submit_via_api(1)
        with self._as_admin():
            self.client.post(
                f"/api/v1/requisitions/requests/{request_id}/approve",
                {"due_date": _due(10).isoformat()},
                format="json",
            )

        with self._as_teacher():
            response = self.client.get("/api/v1/requisitions/notifications/")

        ids = [n["id"] for n in response.json()["notifications"]]
        self.assertEqual(ids, [f"assigned-{request_id}"])

    def test_notifications_survive_database_errors(self) -> None:
        self._submit_via_api(1)

        with self._as_admin(), patch(
            "requisitions.services.notifications.logger"
        ) as mock_logger, patch(
            "requisitions.views.Request.objects.select_related",
            side_effect=DatabaseError("down"),
        ):
            response = self.client.get("/api/v1/requisitions/notifications/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["notifications"], [])
        mock_logger.warning.assert_called_once()

    def test_notifications_reject_unknown_feed(self) -> None:
        with self._as_admin():
            response = self.client.get("/api/v1/requisitions/notifications/", {"feed": "digest"})

        self.assertEqual(response.status_code, 400)

    def test_inventory_listing_and_consistency(self) -> None:
        with self._as_teacher():
            response = self.client.get("/api/v1/requisitions/inventory/")
        self.assertEqual(response.json()["items"][0]["quantity_available"], 5)

        with self._as_admin():
            response = self.client.get("/api/v1/requisitions/inventory/consistency")
        self.assertTrue(response.json()["consistent"])

    def test_assigned_summary_for_teacher(self) -> None:
        request_id = self._submit_via_api(2)
        with self._as_admin():
            self.client.post(
                f"/api/v1/requisitions/requests/{request_id}/approve",
                {"due_date": _due().isoformat()},
                format="json",
            )

        with self._as_teacher():
            response = self.client.get("/api/v1/requisitions/requests/assigned-summary")

        items = response.json()["items"]
        self.assertEqual(items[0]["item_name"], "Projector")
        self.assertEqual(items[0]["quantity_assigned"], 2)
