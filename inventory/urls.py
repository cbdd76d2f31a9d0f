from django.urls import path

from inventory.views import (
    StockLevelView,
    StockMovementDetailView,
    StockMovementListCreateView,
    StockMovementSummaryView,
)

urlpatterns = [
    path("stock-movements/", StockMovementListCreateView.as_view(), name="stock-movement-list"),
    path("stock-movements/summary/", StockMovementSummaryView.as_view(), name="stock-movement-summary"),
    path("stock-movements/levels/", StockLevelView.as_view(), name="stock-level-list"),
    path("stock-movements/<uuid:movement_id>/", StockMovementDetailView.as_view(), name="stock-movement-detail"),
]
