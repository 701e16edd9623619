from django.urls import path

from requisitions.views import (
    budget_detail,
    budget_recalculate,
    budget_reset,
    inventory_consistency,
    inventory_detail,
    inventory_list,
    notifications_feed,
    request_adjust,
    request_approve,
    request_custom_submit,
    request_detail,
    request_inspect,
    request_item_submit,
    request_reject,
    request_report_status,
    request_report_submit,
    request_respond,
    request_return,
    requests_assigned_summary,
    requests_list,
    requests_overdue,
    requests_pending_inspection,
)

urlpatterns = [
    path("requests/", requests_list, name="requests_list"),
    path("requests/item", request_item_submit, name="request_item_submit"),
    path("requests/custom", request_custom_submit, name="request_custom_submit"),
    path("requests/report", request_report_submit, name="request_report_submit"),
    path("requests/overdue", requests_overdue, name="requests_overdue"),
    path(
        "requests/pending-inspection",
        requests_pending_inspection,
        name="requests_pending_inspection",
    ),
    path(
        "requests/assigned-summary",
        requests_assigned_summary,
        name="requests_assigned_summary",
    ),
    path("requests/<int:request_id>", request_detail, name="request_detail"),
    path("requests/<int:request_id>/approve", request_approve, name="request_approve"),
    path("requests/<int:request_id>/reject", request_reject, name="request_reject"),
    path("requests/<int:request_id>/respond", request_respond, name="request_respond"),
    path("requests/<int:request_id>/adjust", request_adjust, name="request_adjust"),
    path("requests/<int:request_id>/return", request_return, name="request_return"),
    path("requests/<int:request_id>/inspect", request_inspect, name="request_inspect"),
    path(
        "requests/<int:request_id>/report-status",
        request_report_status,
        name="request_report_status",
    ),
    path("inventory/", inventory_list, name="inventory_list"),
    path("inventory/consistency", inventory_consistency, name="inventory_consistency"),
    path("inventory/<int:item_id>", inventory_detail, name="inventory_detail"),
    path("notifications/", notifications_feed, name="notifications_feed"),
    path("budget/", budget_detail, name="budget_detail"),
    path("budget/recalculate", budget_recalculate, name="budget_recalculate"),
    path("budget/reset", budget_reset, name="budget_reset"),
]
