from django.urls import path

from dues.views import (
    DueByStockMovementView,
    DueCancelView,
    DueDetailView,
    DueListCreateView,
    DueOverdueView,
    DuePaymentBulkView,
    DuePaymentDetailView,
    DuePaymentListCreateView,
    DuePaymentSummaryView,
    DueSummaryView,
)

urlpatterns = [
    path("due-payments/", DuePaymentListCreateView.as_view(), name="due-payment-list"),
    path("due-payments/bulk/", DuePaymentBulkView.as_view(), name="due-payment-bulk"),
    path("due-payments/summary/", DuePaymentSummaryView.as_view(), name="due-payment-summary"),
    path("due-payments/<uuid:payment_id>/", DuePaymentDetailView.as_view(), name="due-payment-detail"),
    path("dues/<str:due_type>/", DueListCreateView.as_view(), name="due-list"),
    path("dues/<str:due_type>/summary/", DueSummaryView.as_view(), name="due-summary"),
    path("dues/<str:due_type>/overdue/", DueOverdueView.as_view(), name="due-overdue"),
    path(
        "dues/<str:due_type>/by-stock-movement/<uuid:movement_id>/",
        DueByStockMovementView.as_view(),
        name="due-by-stock-movement",
    ),
    path("dues/<str:due_type>/<uuid:due_id>/", DueDetailView.as_view(), name="due-detail"),
    path("dues/<str:due_type>/<uuid:due_id>/cancel/", DueCancelView.as_view(), name="due-cancel"),
]
