from django.urls import path
from rest_framework.routers import DefaultRouter

from orders.reports import (
    DashboardSummaryReportView,
    MonthlyIncomeReportView,
    PaymentMethodSplitReportView,
    PendingBalancesReportView,
)
from orders.views import OrderViewSet, PaymentViewSet

router = DefaultRouter()
router.register(r"orders", OrderViewSet, basename="order")
router.register(r"payments", PaymentViewSet, basename="payment")

urlpatterns = router.urls + [
    path("reports/monthly-income/", MonthlyIncomeReportView.as_view(), name="report-monthly-income"),
    path("reports/payment-method-split/", PaymentMethodSplitReportView.as_view(), name="report-payment-method-split"),
    path("reports/pending-balances/", PendingBalancesReportView.as_view(), name="report-pending-balances"),
    path("reports/dashboard-summary/", DashboardSummaryReportView.as_view(), name="report-dashboard-summary"),
]
