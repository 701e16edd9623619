import os
import threading
import unittest
from datetime import timedelta

from django.db import connection, connections
from django.test import TransactionTestCase
from django.utils import timezone

from requisitions.exceptions import AlreadyProcessed, InsufficientStock
from requisitions.models import InventoryItem, Reservation
from requisitions.services import inventory, lifecycle


@unittest.skipUnless(
    os.getenv("DJANGO_USE_POSTGRES_TEST") == "1",
    "Postgres integration test disabled (set DJANGO_USE_POSTGRES_TEST=1).",
)
class ConcurrentApprovalTest(TransactionTestCase):
    """Row locks only serialize writers on a real server; SQLite is skipped."""

    def setUp(self) -> None:
        if connection.vendor != "postgresql":
            self.skipTest("Concurrency test requires Postgres.")
        self.item = InventoryItem.objects.create(
            name="Laptop cart",
            category="IT",
            quantity_total=5,
            quantity_available=5,
            create_by_id="catalog",
            update_by_id="catalog",
        )

    def _race(self, targets):
        barrier = threading.Barrier(len(targets))
        outcomes = [None] * len(targets)

        def run(index, func):
            try:
                barrier.wait()
                outcomes[index] = func()
            except (AlreadyProcessed, InsufficientStock) as exc:
                outcomes[index] = exc
            finally:
                connections.close_all()

        threads = [
            threading.Thread(target=run, args=(index, func))
            for index, func in enumerate(targets)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_two_admins_approving_same_request(self) -> None:
        req = lifecycle.submit_item_request("teacher-1", "T", self.item.item_id, 2, "Room 1")
        due = timezone.localdate() + timedelta(days=5)

        outcomes = self._race(
            [
                lambda: lifecycle.approve_and_assign(req.request_id, "admin-1", due_date=due),
                lambda: lifecycle.approve_and_assign(req.request_id, "admin-2", due_date=due),
            ]
        )

        self.assertEqual(sum(isinstance(o, AlreadyProcessed) for o in outcomes), 1)
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity_available, 3)
        self.assertEqual(Reservation.objects.filter(request_id=req.request_id).count(), 1)

    def test_reservations_racing_for_last_units(self) -> None:
        first = lifecycle.submit_item_request("teacher-1", "T", self.item.item_id, 3, "Room 1")
        second = lifecycle.submit_item_request("teacher-2", "T", self.item.item_id, 3, "Room 2")
        due = timezone.localdate() + timedelta(days=5)

        outcomes = self._race(
            [
                lambda: lifecycle.approve_and_assign(first.request_id, "admin-1", due_date=due),
                lambda: lifecycle.approve_and_assign(second.request_id, "admin-2", due_date=due),
            ]
        )

        self.assertEqual(sum(isinstance(o, InsufficientStock) for o in outcomes), 1)
        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity_available, 2)
        self.assertEqual(inventory.find_counter_drift(), [])
