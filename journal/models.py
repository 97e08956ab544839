import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone

from core.models import User


class JournalEntry(models.Model):
    """Manual cash movement, independent of orders and payments."""

    class Type(models.TextChoices):
        INCOME = "ingreso", "Ingreso"
        EXPENSE = "egreso", "Egreso"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    type = models.CharField(max_length=16, choices=Type.choices)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    concept = models.CharField(max_length=255)
    notes = models.TextField(blank=True, default="")
    date = models.DateTimeField(default=timezone.now)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "journal"
        ordering = ["-date"]
        indexes = [
            models.Index(fields=["date"], name="journal_date_idx"),
            models.Index(fields=["type", "date"], name="journal_type_date_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="journal_amount_positive"),
        ]


class JournalDayClosure(models.Model):
    """Append-only snapshot of one business day's income and expense lines."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    date = models.DateField()
    ingresos = models.JSONField(default=list)
    egresos = models.JSONField(default=list)
    totals = models.JSONField(default=dict)
    closed_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "journal_days"
        ordering = ["-date", "-created_at"]
        indexes = [
            models.Index(fields=["date", "created_at"], name="journal_day_date_idx"),
        ]
