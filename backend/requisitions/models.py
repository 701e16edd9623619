"""
Django models for school property requisitions.

Catalog items carry their own availability counters; every unit handed to a
teacher is backed by a Reservation row so the counters can always be
reconciled against outstanding holds.
"""

from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models


# =============================================================================
# Base Model with Audit Fields
# =============================================================================

class AuditedModel(models.Model):
    """
    Abstract base model providing common audit fields.
    """
    create_by_id = models.CharField(max_length=50)
    create_dtime = models.DateTimeField(auto_now_add=True)
    update_by_id = models.CharField(max_length=50)
    update_dtime = models.DateTimeField(auto_now=True)
    version_nbr = models.IntegerField(default=1)

    class Meta:
        abstract = True


# =============================================================================
# Inventory
# =============================================================================

class InventoryItem(AuditedModel):
    """
    Catalog entry with total and currently available quantities.
    Maintained by catalog management; requisitions only move the counter.
    """
    STATUS_AVAILABLE = 'Available'
    STATUS_UNDER_MAINTENANCE = 'UnderMaintenance'
    STATUS_DAMAGED = 'Damaged'
    STATUS_CHOICES = [
        (STATUS_AVAILABLE, 'Available'),
        (STATUS_UNDER_MAINTENANCE, 'Under Maintenance'),
        (STATUS_DAMAGED, 'Damaged'),
    ]

    item_id = models.AutoField(primary_key=True)
    name = models.CharField(max_length=150)
    category = models.CharField(max_length=80, blank=True, default='')
    quantity_total = models.IntegerField(validators=[MinValueValidator(0)])
    quantity_available = models.IntegerField(validators=[MinValueValidator(0)])
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_AVAILABLE)

    class Meta:
        db_table = 'inventory_item'
        ordering = ['name']
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity_available__gte=0),
                name='inventory_item_available_non_negative',
            ),
            models.CheckConstraint(
                condition=models.Q(quantity_available__lte=models.F('quantity_total')),
                name='inventory_item_available_within_total',
            ),
        ]
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['category']),
        ]

    def __str__(self):
        return f"{self.name} ({self.quantity_available}/{self.quantity_total})"


# =============================================================================
# Requests
# =============================================================================

class Request(AuditedModel):
    """
    A teacher's requisition. One row per request with a dedicated set of
    columns for each request type (item, custom purchase, issue report).
    """
    TYPE_ITEM = 'item'
    TYPE_CUSTOM = 'custom'
    TYPE_REPORT = 'report'
    TYPE_CHOICES = [
        (TYPE_ITEM, 'Item'),
        (TYPE_CUSTOM, 'Custom'),
        (TYPE_REPORT, 'Report'),
    ]

    STATUS_PENDING = 'pending'
    STATUS_UNDER_REVIEW = 'under_review'
    STATUS_PURCHASING = 'purchasing'
    STATUS_APPROVED = 'approved'
    STATUS_REJECTED = 'rejected'
    STATUS_ASSIGNED = 'assigned'
    STATUS_RETURNED_PENDING_INSPECTION = 'returned_pending_inspection'
    STATUS_CLOSED = 'closed'
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_RESOLVED = 'resolved'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_UNDER_REVIEW, 'Under Review'),
        (STATUS_PURCHASING, 'Purchasing'),
        (STATUS_APPROVED, 'Approved'),
        (STATUS_REJECTED, 'Rejected'),
        (STATUS_ASSIGNED, 'Assigned'),
        (STATUS_RETURNED_PENDING_INSPECTION, 'Returned - Pending Inspection'),
        (STATUS_CLOSED, 'Closed'),
        (STATUS_IN_PROGRESS, 'In Progress'),
        (STATUS_RESOLVED, 'Resolved'),
    ]

    PRIORITY_NORMAL = 'normal'
    PRIORITY_URGENT = 'urgent'
    PRIORITY_CHOICES = [
        (PRIORITY_NORMAL, 'Normal'),
        (PRIORITY_URGENT, 'Urgent'),
    ]

    INSPECTION_NONE = 'none'
    INSPECTION_PENDING = 'pending'
    INSPECTION_PASSED = 'passed'
    INSPECTION_FAILED = 'failed'
    INSPECTION_CHOICES = [
        (INSPECTION_NONE, 'None'),
        (INSPECTION_PENDING, 'Pending'),
        (INSPECTION_PASSED, 'Passed'),
        (INSPECTION_FAILED, 'Failed'),
    ]

    REPORT_MISSING = 'missing'
    REPORT_DAMAGED = 'damaged'
    REPORT_OTHER = 'other'
    REPORT_KIND_CHOICES = [
        (REPORT_MISSING, 'Missing'),
        (REPORT_DAMAGED, 'Damaged'),
        (REPORT_OTHER, 'Other'),
    ]

    request_id = models.AutoField(primary_key=True)
    request_type = models.CharField(max_length=10, choices=TYPE_CHOICES)
    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default=STATUS_PENDING)
    requester_id = models.CharField(max_length=50)
    requester_name = models.CharField(max_length=150, blank=True, default='')
    location = models.CharField(max_length=150, blank=True, default='')
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, null=True, blank=True)
    description = models.TextField(blank=True, default='')
    admin_response = models.CharField(max_length=1000, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    # Item requests
    item = models.ForeignKey(
        InventoryItem,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='requests',
    )
    quantity_requested = models.IntegerField(null=True, blank=True, validators=[MinValueValidator(1)])
    quantity_assigned = models.IntegerField(null=True, blank=True)
    due_date = models.DateField(null=True, blank=True)
    assigned_at = models.DateTimeField(null=True, blank=True)
    assigned_by = models.CharField(max_length=50, null=True, blank=True)
    returned_at = models.DateTimeField(null=True, blank=True)
    reported_damaged = models.BooleanField(default=False)
    return_notes = models.CharField(max_length=1000, null=True, blank=True)
    inspection_status = models.CharField(
        max_length=10, choices=INSPECTION_CHOICES, default=INSPECTION_NONE
    )
    inspected_at = models.DateTimeField(null=True, blank=True)
    inspected_by = models.CharField(max_length=50, null=True, blank=True)
    inspection_remarks = models.CharField(max_length=1000, null=True, blank=True)

    # Custom purchase requests
    item_name = models.CharField(max_length=150, null=True, blank=True)
    estimated_cost = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0'))],
    )
    photo_ref = models.CharField(max_length=500, null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)

    # Issue reports
    reported_item_name = models.CharField(max_length=150, null=True, blank=True)
    report_kind = models.CharField(max_length=10, choices=REPORT_KIND_CHOICES, null=True, blank=True)
    related_request = models.ForeignKey(
        'self',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='reports',
    )

    class Meta:
        db_table = 'request'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['request_type', 'status']),
            models.Index(fields=['requester_id']),
            models.Index(fields=['due_date']),
            models.Index(fields=['created_at']),
        ]

    def __str__(self):
        return f"{self.request_type} request {self.request_id} ({self.status})"


class Reservation(models.Model):
    """
    A committed decrement of an item's available quantity.
    Active while released_at is null.
    """
    reservation_id = models.AutoField(primary_key=True)
    item = models.ForeignKey(
        InventoryItem,
        on_delete=models.PROTECT,
        related_name='reservations',
    )
    request = models.ForeignKey(
        Request,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='reservations',
    )
    quantity = models.IntegerField(validators=[MinValueValidator(1)])
    created_at = models.DateTimeField(auto_now_add=True)
    created_by = models.CharField(max_length=50)
    released_at = models.DateTimeField(null=True, blank=True)
    released_by = models.CharField(max_length=50, null=True, blank=True)

    class Meta:
        db_table = 'reservation'
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['item', 'released_at']),
        ]

    @property
    def is_active(self) -> bool:
        return self.released_at is None

    def __str__(self):
        state = "active" if self.is_active else "released"
        return f"Reservation {self.reservation_id}: {self.quantity} x item {self.item_id} ({state})"


class RequestStatusHistory(models.Model):
    """
    Immutable audit trail of request status transitions.
    """
    history_id = models.AutoField(primary_key=True)
    request = models.ForeignKey(
        Request,
        on_delete=models.CASCADE,
        related_name='status_history',
    )
    from_status = models.CharField(max_length=30, choices=Request.STATUS_CHOICES, null=True, blank=True)
    to_status = models.CharField(max_length=30, choices=Request.STATUS_CHOICES)
    actor_id = models.CharField(max_length=50)
    reason = models.CharField(max_length=1000, null=True, blank=True)
    changed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'request_status_history'
        ordering = ['changed_at', 'history_id']
        indexes = [
            models.Index(fields=['request']),
        ]

    def __str__(self):
        return f"Request {self.request_id}: {self.from_status or 'Initial'} → {self.to_status}"


# =============================================================================
# Budget
# =============================================================================

class SchoolBudget(AuditedModel):
    """
    Singleton row holding the purchasing budget for the current period.
    """
    SINGLETON_ID = 1

    budget_id = models.IntegerField(primary_key=True, default=SINGLETON_ID)
    total_budget = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0'))],
    )
    total_spent = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0'))],
    )
    period_started_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'school_budget'

    @property
    def remaining_balance(self) -> Decimal:
        return self.total_budget - self.total_spent

    def __str__(self):
        return f"Budget {self.total_spent}/{self.total_budget}"
