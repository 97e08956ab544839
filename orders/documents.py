"""Typed records for loosely shaped order-book documents.

Exports of the original document store carry optional fields (`quantity`,
`status`, `deposit`), camelCase keys and timestamps that are either
`{"seconds": ...}` maps or ISO strings. Every document is passed through one of
the `from_document` constructors below before it reaches the ORM, so defaults
are filled in a single place.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from datetime import timezone as dt_timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from common.utils import ZERO, to_money
from orders.models import Order, Payment

logger = logging.getLogger(__name__)


class DocumentError(ValueError):
    """A document is missing data that has no sensible default."""


def parse_timestamp(value) -> Optional[datetime]:
    """Aware datetime from a store timestamp, a date, an ISO string or epoch seconds."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if timezone.is_aware(value) else timezone.make_aware(value)
    if isinstance(value, date):
        return timezone.make_aware(datetime.combine(value, time.min))
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, (int, float)):
            return datetime.fromtimestamp(seconds, tz=dt_timezone.utc)
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=dt_timezone.utc)
    if isinstance(value, str):
        parsed = parse_datetime(value.strip())
        if parsed is not None:
            return parsed if timezone.is_aware(parsed) else timezone.make_aware(parsed)
        parsed_date = parse_date(value.strip())
        if parsed_date is not None:
            return timezone.make_aware(datetime.combine(parsed_date, time.min))
    return None


def parse_day(value) -> Optional[date]:
    """Calendar day of a timestamp, in the business time zone."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, str):
        parsed_date = parse_date(value.strip())
        if parsed_date is not None:
            return parsed_date
    moment = parse_timestamp(value)
    return timezone.localdate(moment) if moment else None


def _pick(document: Dict[str, Any], *keys, default=None):
    for key in keys:
        value = document.get(key)
        if value not in (None, ""):
            return value
    return default


def _money(value, default=ZERO) -> Decimal:
    try:
        return to_money(value) if value not in (None, "") else default
    except (InvalidOperation, TypeError, ValueError):
        return default


@dataclass
class ClientRecord:
    id: Optional[str]
    name: str
    phone: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, document):
        name = str(_pick(document, "name", default="")).strip()
        if not name:
            raise DocumentError("client without a name")
        return cls(
            id=_pick(document, "id"),
            name=name,
            phone=str(_pick(document, "phone", default="")).strip(),
            created_at=parse_timestamp(_pick(document, "created_at", "createdAt")),
        )


@dataclass
class ServiceRecord:
    id: Optional[str]
    name: str
    price: Optional[Decimal] = None
    description: str = ""
    active: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, document):
        name = str(_pick(document, "name", default="")).strip()
        if not name:
            raise DocumentError("service without a name")
        raw_price = _pick(document, "price")
        return cls(
            id=_pick(document, "id"),
            name=name,
            price=_money(raw_price, default=None),
            description=str(_pick(document, "description", default="")),
            active=bool(document.get("active", True)),
            created_at=parse_timestamp(_pick(document, "created_at", "createdAt")),
        )


@dataclass
class OrderRecord:
    id: Optional[str]
    client_id: str
    service_id: str
    total: Decimal
    deposit: Decimal = ZERO
    status: str = Order.Status.PENDING
    quantity: int = 1
    details: str = ""
    start_date: Optional[date] = None
    expected_end_date: Optional[date] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, document):
        client_id = _pick(document, "client_id", "clientId")
        service_id = _pick(document, "service_id", "serviceId")
        if not client_id or not service_id:
            raise DocumentError("order without client or service reference")

        total = max(_money(_pick(document, "total")), ZERO)
        deposit = min(max(_money(_pick(document, "deposit")), ZERO), total)

        status = _pick(document, "status", default=Order.Status.PENDING)
        if status not in Order.Status.values:
            logger.warning("document_status_defaulted", extra={"order_id": _pick(document, "id"), "entity": "order"})
            status = Order.Status.PENDING

        try:
            quantity = max(int(_pick(document, "quantity", default=1)), 1)
        except (TypeError, ValueError):
            quantity = 1

        created_at = parse_timestamp(_pick(document, "created_at", "createdAt"))
        start_date = parse_day(_pick(document, "start_date", "startDate", "fechaInicio"))
        if start_date is None and created_at is not None:
            start_date = timezone.localdate(created_at)

        return cls(
            id=_pick(document, "id"),
            client_id=str(client_id),
            service_id=str(service_id),
            total=total,
            deposit=deposit,
            status=status,
            quantity=quantity,
            details=str(_pick(document, "details", default="")),
            start_date=start_date,
            expected_end_date=parse_day(_pick(document, "expected_end_date", "expectedEndDate", "fechaFinal")),
            created_at=created_at,
        )


@dataclass
class PaymentRecord:
    id: Optional[str]
    order_id: Optional[str]
    amount: Decimal
    payment_method: str = Payment.Method.CASH
    notes: str = ""
    date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, document):
        amount = _money(_pick(document, "amount"))
        if amount <= 0:
            raise DocumentError("payment without a positive amount")

        method = _pick(document, "payment_method", "paymentMethod", default=Payment.Method.CASH)
        if method not in Payment.Method.values:
            logger.warning("document_payment_method_defaulted", extra={"payment_id": _pick(document, "id")})
            method = Payment.Method.CASH

        created_at = parse_timestamp(_pick(document, "created_at", "createdAt"))
        order_id = _pick(document, "order_id", "orderId")
        return cls(
            id=_pick(document, "id"),
            order_id=str(order_id) if order_id else None,
            amount=amount,
            payment_method=method,
            notes=str(_pick(document, "notes", default="")),
            date=parse_timestamp(_pick(document, "date")) or created_at,
            created_at=created_at,
        )


@dataclass
class JournalRecord:
    id: Optional[str]
    type: str
    amount: Decimal
    concept: str
    notes: str = ""
    date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, document):
        entry_type = _pick(document, "type")
        if entry_type not in ("ingreso", "egreso"):
            raise DocumentError("journal entry with unknown type")
        amount = _money(_pick(document, "amount"))
        if amount <= 0:
            raise DocumentError("journal entry without a positive amount")
        created_at = parse_timestamp(_pick(document, "created_at", "createdAt"))
        return cls(
            id=_pick(document, "id"),
            type=entry_type,
            amount=amount,
            concept=str(_pick(document, "concept", default="")).strip() or "Sin concepto",
            notes=str(_pick(document, "notes", default="")),
            date=parse_timestamp(_pick(document, "date")) or created_at,
            created_at=created_at,
        )


@dataclass
class DocumentBundle:
    """All collections of one export, already default-filled."""

    clients: List[ClientRecord] = field(default_factory=list)
    services: List[ServiceRecord] = field(default_factory=list)
    orders: List[OrderRecord] = field(default_factory=list)
    payments: List[PaymentRecord] = field(default_factory=list)
    journal: List[JournalRecord] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    RECORD_TYPES = {
        "clients": ClientRecord,
        "services": ServiceRecord,
        "orders": OrderRecord,
        "payments": PaymentRecord,
        "journal": JournalRecord,
    }

    @classmethod
    def from_export(cls, export):
        bundle = cls()
        for collection, record_type in cls.RECORD_TYPES.items():
            documents = export.get(collection) or []
            if isinstance(documents, dict):
                # {"<id>": {...}} exports keep the identifier as the key.
                documents = [{"id": key, **value} for key, value in documents.items()]
            target = getattr(bundle, collection)
            for document in documents:
                try:
                    target.append(record_type.from_document(document))
                except DocumentError as exc:
                    bundle.skipped.append(f"{collection}/{document.get('id', '?')}: {exc}")
        return bundle
