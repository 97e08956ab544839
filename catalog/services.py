"""Find-or-create resolvers for the client and service catalogs.

Duplicates are prevented by the storage layer: `Service.normalized_name` is
unique and so is every non-empty `Client.phone`. The resolvers rely on those
constraints instead of a read-then-write check, so two concurrent requests for
the same name or phone settle on a single row.
"""

import logging
from decimal import InvalidOperation

from django.db import IntegrityError, transaction
from rest_framework.exceptions import ValidationError

from catalog.models import Client, Service, normalize_service_name
from common.utils import to_money

logger = logging.getLogger(__name__)

__all__ = [
    "create_client",
    "create_service",
    "find_client_by_phone",
    "get_or_create_client",
    "get_or_create_service_by_name",
    "normalize_service_name",
    "search_services",
]


def _clean_price(price):
    if price is None or price == "":
        return None
    try:
        value = to_money(price)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({"price": "A valid price is required."})
    if value < 0:
        raise ValidationError({"price": "Price cannot be negative."})
    return value


def get_or_create_service_by_name(raw_name, default_price=None):
    """Return `(service, created)` for a free-text service name."""
    name = (raw_name or "").strip()
    normalized = normalize_service_name(name)
    if not normalized:
        raise ValidationError({"service_name": "Service name is required."})

    service, created = Service.objects.get_or_create(
        normalized_name=normalized,
        defaults={"name": name, "price": _clean_price(default_price), "active": True},
    )
    if created:
        logger.info("service_created_from_name", extra={"service_id": service.id, "entity": "service"})
    return service, created


def create_service(name, price=None, description="", active=True):
    name = (name or "").strip()
    normalized = normalize_service_name(name)
    if not normalized:
        raise ValidationError({"name": "Service name is required."})
    if Service.objects.filter(normalized_name=normalized).exists():
        raise ValidationError({"name": "A service with this name already exists."})

    try:
        with transaction.atomic():
            service = Service.objects.create(
                name=name,
                price=_clean_price(price),
                description=description or "",
                active=active,
            )
    except IntegrityError:
        raise ValidationError({"name": "A service with this name already exists."})
    return service


def search_services(term, include_inactive=False):
    qs = Service.objects.all()
    if not include_inactive:
        qs = qs.filter(active=True)
    normalized = normalize_service_name(term)
    if normalized:
        qs = qs.filter(normalized_name__contains=normalized)
    return qs.order_by("name")


def find_client_by_phone(phone):
    phone = (phone or "").strip()
    if not phone:
        return None
    return Client.objects.filter(phone=phone).order_by("created_at").first()


def create_client(name, phone=""):
    name = (name or "").strip()
    phone = (phone or "").strip()
    if not name:
        raise ValidationError({"name": "Client name is required."})

    try:
        with transaction.atomic():
            client = Client.objects.create(name=name, phone=phone)
    except IntegrityError:
        raise ValidationError({"phone": "A client with this phone already exists."})
    logger.info("client_created", extra={"client_id": client.id, "entity": "client"})
    return client


def get_or_create_client(name, phone):
    """Return `(client, created)`, looking the client up by phone first.

    A client without a phone cannot be matched, so a new one is always created.
    """
    existing = find_client_by_phone(phone)
    if existing is not None:
        return existing, False

    try:
        return create_client(name, phone), True
    except ValidationError:
        # Lost the race against a concurrent insert of the same phone.
        existing = find_client_by_phone(phone)
        if existing is None:
            raise
        return existing, False
