import uuid

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from catalog.models import Client, Service


class Order(models.Model):
    class Status(models.TextChoices):
        PENDING = "pendiente", "Pendiente"
        COMPLETED = "completado", "Completado"
        CANCELLED = "cancelado", "Cancelado"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="orders")
    service = models.ForeignKey(Service, on_delete=models.PROTECT, related_name="orders")
    start_date = models.DateField(default=timezone.localdate)
    expected_end_date = models.DateField(null=True, blank=True)
    details = models.TextField(blank=True, default="")
    total = models.DecimalField(max_digits=12, decimal_places=2)
    deposit = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    balance = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    quantity = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="order_status_created_idx"),
            models.Index(fields=["client", "created_at"], name="order_client_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(total__gte=0), name="order_total_non_negative"),
            models.CheckConstraint(
                condition=Q(deposit__gte=0) & Q(deposit__lte=F("total")),
                name="order_deposit_within_total",
            ),
            models.CheckConstraint(condition=Q(balance__gte=0), name="order_balance_non_negative"),
            models.CheckConstraint(condition=Q(quantity__gte=1), name="order_quantity_positive"),
        ]

    def __str__(self):
        return f"{self.service} - {self.details}" if self.details else str(self.service)

    @property
    def display_name(self):
        """Label used in receipts and the cash journal: "<service> - <details>"."""
        service_name = self.service.name if self.service_id else ""
        return f"{service_name} - {self.details}" if self.details else service_name


class Payment(models.Model):
    class Method(models.TextChoices):
        CASH = "efectivo", "Efectivo"
        TRANSFER = "transferencia", "Transferencia"
        QR = "qr", "QR"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # Payments outlive their order so the cash history stays intact.
    order = models.ForeignKey(Order, on_delete=models.SET_NULL, null=True, blank=True, related_name="payments")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_method = models.CharField(max_length=16, choices=Method.choices, default=Method.CASH)
    notes = models.TextField(blank=True, default="")
    date = models.DateTimeField(default=timezone.now)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "payments"
        ordering = ["-date"]
        indexes = [
            models.Index(fields=["order", "date"], name="payment_order_date_idx"),
            models.Index(fields=["date"], name="payment_date_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="payment_amount_positive"),
        ]

    @property
    def concept(self):
        return self.notes or f"Pago {self.payment_method}"
