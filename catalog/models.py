import unicodedata
import uuid

from django.db import models
from django.db.models import Q


def normalize_service_name(raw_name):
    """Trimmed, lower-cased form of a service name with diacritics removed.

    "Cambio de Aceite", "  cambio de aceite " and "Cambio de Acéite" all
    normalize to "cambio de aceite".
    """
    decomposed = unicodedata.normalize("NFD", (raw_name or "").strip().lower())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


class Client(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=64, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "clients"
        ordering = ["name"]
        indexes = [
            models.Index(fields=["name"], name="client_name_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["phone"],
                condition=~Q(phone=""),
                name="uniq_client_phone",
            ),
        ]

    def save(self, *args, **kwargs):
        self.name = (self.name or "").strip()
        self.phone = (self.phone or "").strip()
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.name} ({self.phone})" if self.phone else self.name


class Service(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    normalized_name = models.CharField(max_length=255, unique=True)
    price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    description = models.TextField(blank=True, default="")
    active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "services"
        ordering = ["name"]
        constraints = [
            models.CheckConstraint(
                condition=Q(price__isnull=True) | Q(price__gte=0),
                name="service_price_non_negative",
            ),
        ]

    def save(self, *args, **kwargs):
        self.name = (self.name or "").strip()
        self.normalized_name = normalize_service_name(self.name)
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name
