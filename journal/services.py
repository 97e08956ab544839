"""Cash journal: manual entries, daily summaries and day closures.

A business day runs from local midnight to local midnight in ``TIME_ZONE``.
The income side of a day combines the payments dated that day with the
manual ``ingreso`` entries; the expense side only has manual ``egreso``
entries.
"""

import logging
from datetime import datetime, time, timedelta
from decimal import InvalidOperation

from django.db.models import Sum
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.utils import ZERO, to_json_compatible, to_money
from journal.models import JournalDayClosure, JournalEntry
from orders.documents import parse_timestamp
from orders.models import Payment

logger = logging.getLogger(__name__)


def day_bounds(day):
    start = timezone.make_aware(datetime.combine(day, time.min))
    return start, start + timedelta(days=1)


def add_entry(entry_type, amount, concept, date=None, notes=""):
    if entry_type not in JournalEntry.Type.values:
        raise ValidationError({"type": "Type must be ingreso or egreso."})
    try:
        amount = to_money(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({"amount": "A valid amount is required."})
    if amount <= 0:
        raise ValidationError({"amount": "Amount must be greater than zero."})
    concept = (concept or "").strip()
    if not concept:
        raise ValidationError({"concept": "Concept is required."})

    moment = timezone.now()
    if date not in (None, ""):
        moment = parse_timestamp(date)
        if moment is None:
            raise ValidationError({"date": "A valid date is required."})

    entry = JournalEntry.objects.create(type=entry_type, amount=amount, concept=concept, date=moment, notes=notes or "")
    logger.info("journal_entry_added", extra={"entity": "journal", "action": entry_type, "amount": amount})
    return entry


def totals_for(queryset):
    sums = {
        row["type"]: row["amount"]
        for row in queryset.order_by().values("type").annotate(amount=Sum("amount"))
    }
    ingresos = sums.get(JournalEntry.Type.INCOME) or ZERO
    egresos = sums.get(JournalEntry.Type.EXPENSE) or ZERO
    return {"ingresos": ingresos, "egresos": egresos, "neto": ingresos - egresos}


def list_entries(date_from=None, date_to=None):
    """Entries newest first, optionally limited to local days, with their totals."""
    qs = JournalEntry.objects.all()
    if date_from:
        qs = qs.filter(date__gte=day_bounds(date_from)[0])
    if date_to:
        qs = qs.filter(date__lt=day_bounds(date_to)[1])
    qs = qs.order_by("-date", "-created_at")
    return qs, totals_for(qs)


def daily_summary(day):
    start, end = day_bounds(day)

    ingresos = []
    payments = (
        Payment.objects.filter(date__gte=start, date__lt=end)
        .select_related("order__service")
        .order_by("date")
    )
    for payment in payments:
        ingresos.append(
            {
                "source": "payment",
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "order_name": payment.order.display_name if payment.order else "Orden",
                "concept": payment.concept,
                "payment_method": payment.payment_method,
                "amount": payment.amount,
                "date": timezone.localtime(payment.date),
            }
        )

    egresos = []
    for entry in JournalEntry.objects.filter(date__gte=start, date__lt=end).order_by("date"):
        if entry.type == JournalEntry.Type.INCOME:
            ingresos.append(
                {
                    "source": "manual",
                    "journal_id": entry.id,
                    "concept": entry.concept,
                    "amount": entry.amount,
                    "date": timezone.localtime(entry.date),
                }
            )
        else:
            egresos.append(
                {
                    "journal_id": entry.id,
                    "concept": entry.concept,
                    "amount": entry.amount,
                    "date": timezone.localtime(entry.date),
                }
            )

    total_ingresos = sum((line["amount"] for line in ingresos), ZERO)
    total_egresos = sum((line["amount"] for line in egresos), ZERO)
    return {
        "date": day,
        "ingresos": ingresos,
        "egresos": egresos,
        "totals": {"ingresos": total_ingresos, "egresos": total_egresos, "neto": total_ingresos - total_egresos},
    }


def close_day(day, closed_by=None):
    """Archive the day's summary. Closing the same day again stores another snapshot."""
    summary = to_json_compatible(daily_summary(day))
    closure = JournalDayClosure.objects.create(
        date=day,
        ingresos=summary["ingresos"],
        egresos=summary["egresos"],
        totals=summary["totals"],
        closed_by=closed_by if closed_by is not None and closed_by.is_authenticated else None,
    )
    logger.info("journal_day_closed", extra={"entity": "journal_days", "action": day.isoformat()})
    return closure
