from collections import OrderedDict
from datetime import date, datetime, time
from decimal import Decimal

from django.db.models import Count, Sum
from django.db.models.functions import Coalesce, TruncMonth
from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.cache import CollectionCacheMixin
from common.permissions import RoleCapabilityPermission
from common.renderers import csv_response, wants_csv
from common.utils import ZERO
from journal.models import JournalEntry
from orders.models import Payment
from orders.services import pending_orders

MONTH_LABELS = ["Ene", "Feb", "Mar", "Abr", "May", "Jun", "Jul", "Ago", "Sep", "Oct", "Nov", "Dic"]


def _shift_month(day, months):
    index = day.year * 12 + day.month - 1 + months
    return date(index // 12, index % 12 + 1, 1)


def last_n_months(count, today=None):
    """First day of each of the last `count` months, oldest first, current month included."""
    first = (today or timezone.localdate()).replace(day=1)
    return [_shift_month(first, -offset) for offset in range(count - 1, -1, -1)]


def _local_start(day):
    return timezone.make_aware(datetime.combine(day, time.min))


def _month_key(value):
    if isinstance(value, datetime):
        value = timezone.localtime(value) if timezone.is_aware(value) else value
    return f"{value.year}-{value.month:02d}"


class BaseReportView(CollectionCacheMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "reports.view"}
    # Collections whose writes invalidate this report.
    collections = ("payments", "orders")

    def _parse_int(self, request, name, default, minimum, maximum):
        raw_value = request.query_params.get(name)
        if raw_value is None:
            return default

        try:
            value = int(raw_value)
        except (TypeError, ValueError):
            raise ValidationError({name: f"Must be an integer between {minimum} and {maximum}."})

        if not minimum <= value <= maximum:
            raise ValidationError({name: f"Must be between {minimum} and {maximum}."})
        return value

    def _date_range(self, request):
        date_from = parse_date(request.query_params.get("date_from", ""))
        date_to = parse_date(request.query_params.get("date_to", ""))
        if not date_from and not date_to:
            return None, None

        if not date_from or not date_to:
            raise ValidationError({"date_range": "Both date_from and date_to are required."})
        if date_from > date_to:
            raise ValidationError({"date_range": "date_from must be before or equal to date_to."})

        return _local_start(date_from), timezone.make_aware(datetime.combine(date_to, time.max))

    def _cached(self, request, key, callback):
        primary, *depends_on = self.collections
        return self.get_collection_cache().get_or_load(
            primary,
            f"reports:{key}:{timezone.localdate().isoformat()}:{request.get_full_path()}",
            callback,
            depends_on=depends_on,
        )


class MonthlyIncomeReportView(BaseReportView):
    """Payments (ingresos) and journal expenses (gastos) per month."""

    collections = ("payments", "journal")

    def get(self, request):
        months = self._parse_int(request, "months", default=6, minimum=1, maximum=24)

        def run():
            buckets = last_n_months(months)
            start = _local_start(buckets[0])
            tz = timezone.get_current_timezone()

            income = {
                _month_key(row["month"]): row["amount"]
                for row in Payment.objects.filter(date__gte=start)
                .annotate(month=TruncMonth("date", tzinfo=tz))
                .values("month")
                .annotate(amount=Coalesce(Sum("amount"), Decimal("0.00")))
            }
            expenses = {
                _month_key(row["month"]): row["amount"]
                for row in JournalEntry.objects.filter(type=JournalEntry.Type.EXPENSE, date__gte=start)
                .annotate(month=TruncMonth("date", tzinfo=tz))
                .values("month")
                .annotate(amount=Coalesce(Sum("amount"), Decimal("0.00")))
            }

            rows = []
            for first_day in buckets:
                key = _month_key(first_day)
                ingresos = income.get(key, ZERO)
                gastos = expenses.get(key, ZERO)
                rows.append(
                    {
                        "month": key,
                        "label": MONTH_LABELS[first_day.month - 1],
                        "ingresos": ingresos,
                        "gastos": gastos,
                        "neto": ingresos - gastos,
                    }
                )
            return rows

        rows = self._cached(request, "monthly-income", run)
        if wants_csv(request):
            return csv_response("monthly_income.csv", rows)
        return Response({"timezone": str(timezone.get_current_timezone()), "results": rows})


class PaymentMethodSplitReportView(BaseReportView):
    collections = ("payments",)

    def get(self, request):
        start, end = self._date_range(request)

        def run():
            qs = Payment.objects.all()
            if start and end:
                qs = qs.filter(date__gte=start, date__lte=end)
            rows = list(
                qs.values("payment_method")
                .annotate(amount=Coalesce(Sum("amount"), Decimal("0.00")), count=Count("id"))
                .order_by("-amount")
            )
            total = sum((row["amount"] for row in rows), Decimal("0.00"))
            formatted = []
            for row in rows:
                pct = Decimal("0.00") if total == 0 else (row["amount"] / total * Decimal("100"))
                formatted.append({**row, "percentage": round(pct, 2)})
            return formatted

        rows = self._cached(request, "payment-split", run)
        if wants_csv(request):
            return csv_response("payment_method_split.csv", rows)
        return Response({"results": rows})


class PendingBalancesReportView(BaseReportView):
    """Accounts receivable: every order with something still owed."""

    collections = ("orders", "clients", "services")

    def get(self, request):
        def run():
            today = timezone.localdate()
            rows = []
            for order in pending_orders().order_by("-balance", "start_date"):
                rows.append(
                    {
                        "order_id": str(order.id),
                        "order_name": order.display_name,
                        "client": order.client.name,
                        "phone": order.client.phone,
                        "status": order.status,
                        "start_date": order.start_date.isoformat(),
                        "expected_end_date": order.expected_end_date.isoformat() if order.expected_end_date else "",
                        "total": order.total,
                        "deposit": order.deposit,
                        "balance": order.balance,
                        "age_days": max((today - order.start_date).days, 0),
                        "is_partial_payment": order.deposit > 0,
                    }
                )
            return rows

        rows = self._cached(request, "pending-balances", run)
        if wants_csv(request):
            return csv_response("pending_balances.csv", rows)
        total = sum((row["balance"] for row in rows), Decimal("0.00"))
        return Response({"count": len(rows), "balance_total": total, "results": rows})


class DashboardSummaryReportView(BaseReportView):
    collections = ("payments", "orders", "journal")

    def get(self, request):
        today = timezone.localdate()
        month_start = today.replace(day=1)
        previous_month_start = _shift_month(month_start, -1)

        def income_between(start_day, end_day):
            return Payment.objects.filter(
                date__gte=_local_start(start_day),
                date__lt=_local_start(end_day),
            ).aggregate(total=Coalesce(Sum("amount"), Decimal("0.00")))["total"]

        def run():
            tomorrow = date.fromordinal(today.toordinal() + 1)
            pending = pending_orders()
            current_month = income_between(month_start, tomorrow)
            previous_month = income_between(previous_month_start, month_start)
            growth = None
            if previous_month:
                growth = round((current_month - previous_month) / previous_month * Decimal("100"), 2)

            return OrderedDict(
                date=today.isoformat(),
                today_income=income_between(today, tomorrow),
                today_manual_income=JournalEntry.objects.filter(
                    type=JournalEntry.Type.INCOME,
                    date__gte=_local_start(today),
                    date__lt=_local_start(tomorrow),
                ).aggregate(total=Coalesce(Sum("amount"), Decimal("0.00")))["total"],
                pending_orders=pending.count(),
                pending_balance=pending.aggregate(total=Coalesce(Sum("balance"), Decimal("0.00")))["total"],
                month_income=current_month,
                previous_month_income=previous_month,
                monthly_growth_pct=growth,
            )

        payload = self._cached(request, "dashboard-summary", run)
        if wants_csv(request):
            return csv_response("dashboard_summary.csv", [payload])
        return Response(payload)
