"""Order book operations.

Every operation that moves money keeps the order invariant:

* ``balance == max(0, total - deposit)`` and ``0 <= deposit <= total``;
* ``status == "completado"`` exactly when the balance is zero;
* an order with a positive balance is ``"pendiente"`` or ``"cancelado"``.

Cancelled orders do not accept payments through :func:`register_payment`.
Payments never exceed the outstanding balance.

Each operation runs inside one database transaction with the order row
locked, and is retried as a whole when the database reports a write conflict.
"""

import logging
from contextlib import contextmanager
from decimal import InvalidOperation

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import OperationalError, transaction
from django.db.models import Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from catalog.models import Client, Service
from catalog.services import get_or_create_client, get_or_create_service_by_name
from common.exceptions import TransientStoreError, WriteConflict
from common.utils import ZERO, to_money
from orders.documents import parse_day, parse_timestamp
from orders.models import Order, Payment

logger = logging.getLogger(__name__)

INITIAL_DEPOSIT_NOTE = "Abono inicial"

# SQLSTATEs: serialization_failure, deadlock_detected, lock_not_available.
CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}
CONFLICT_MARKERS = (
    "could not serialize access",
    "deadlock detected",
    "lock timeout",
    "could not obtain lock",
    "database is locked",
    "database table is locked",
)


def _is_write_conflict(exc):
    cause = exc.__cause__
    sqlstate = getattr(cause, "sqlstate", None) or getattr(cause, "pgcode", None)
    if sqlstate in CONFLICT_SQLSTATES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in CONFLICT_MARKERS)


@contextmanager
def _store_errors(operation, **context):
    try:
        yield
    except OperationalError as exc:
        if _is_write_conflict(exc):
            raise WriteConflict() from exc
        logger.exception("store_unavailable", extra={"action": operation, **context})
        raise TransientStoreError("The database is unavailable. Try again.") from exc


def _log_retry(operation, context):
    def before_sleep(retry_state):
        logger.warning(
            "store_conflict_retry",
            extra={"action": operation, "attempt": retry_state.attempt_number, **context},
        )

    return before_sleep


def run_in_transaction(operation, func, *args, log_context=None, **kwargs):
    """Run `func` in a transaction, retrying the whole of it on write conflicts.

    The attempt count and backoff come from the ``RECONCILIATION_*`` settings.
    Once the attempts are exhausted the `WriteConflict` propagates.
    """
    context = log_context or {}
    retrying = Retrying(
        stop=stop_after_attempt(max(settings.RECONCILIATION_MAX_ATTEMPTS, 1)),
        wait=wait_exponential(
            multiplier=settings.RECONCILIATION_BACKOFF_MIN,
            min=settings.RECONCILIATION_BACKOFF_MIN,
            max=settings.RECONCILIATION_BACKOFF_MAX,
        ),
        retry=retry_if_exception_type(WriteConflict),
        before_sleep=_log_retry(operation, context),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            with _store_errors(operation, **context):
                with transaction.atomic():
                    return func(*args, **kwargs)


def derive_balance_and_status(total, deposit, current_status=None):
    """Balance and status implied by `total` and `deposit`.

    A cancelled order stays cancelled while something is still owed.
    """
    balance = max(ZERO, to_money(total) - to_money(deposit))
    if balance == ZERO:
        return balance, Order.Status.COMPLETED
    if current_status == Order.Status.CANCELLED:
        return balance, Order.Status.CANCELLED
    return balance, Order.Status.PENDING


def _clean_amount(amount, field="amount"):
    try:
        value = to_money(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({field: "A valid amount is required."})
    if value <= 0:
        raise ValidationError({field: "Amount must be greater than zero."})
    return value


def _clean_money(value, field, required=False):
    if value in (None, ""):
        if required:
            raise ValidationError({field: "This field is required."})
        return ZERO
    try:
        money = to_money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({field: "A valid amount is required."})
    if money < 0:
        raise ValidationError({field: "Amount cannot be negative."})
    return money


def _clean_method(method):
    method = method or Payment.Method.CASH
    if method not in Payment.Method.values:
        raise ValidationError({"payment_method": f"Unknown payment method {method!r}."})
    return method


def _clean_payment_date(value):
    if value in (None, ""):
        return timezone.now()
    moment = parse_timestamp(value)
    if moment is None:
        raise ValidationError({"date": "A valid date is required."})
    return moment


def _clean_quantity(value):
    if value in (None, ""):
        return 1
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise ValidationError({"quantity": "Quantity must be a whole number."})
    if quantity < 1:
        raise ValidationError({"quantity": "Quantity must be greater than zero."})
    return quantity


def _clean_day(value, field):
    if value in (None, ""):
        return None
    day = parse_day(value)
    if day is None:
        raise ValidationError({field: "A valid date is required."})
    return day


def _lock_order(order_id):
    try:
        return Order.objects.select_for_update().get(pk=order_id)
    except (Order.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFound("Order was not found.")


def _get_client(client_id):
    try:
        return Client.objects.get(pk=client_id)
    except (Client.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFound("Client was not found.")


def _get_service(service_id):
    try:
        return Service.objects.get(pk=service_id)
    except (Service.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFound("Service was not found.")


def paid_total(order_id):
    return Payment.objects.filter(order_id=order_id).aggregate(total=Sum("amount"))["total"] or ZERO


# Reconciliation


def register_payment(order_id, amount, method=Payment.Method.CASH, notes="", date=None):
    """Record a payment against an order and apply it to the order's deposit.

    The payment insert and the order update commit together or not at all.
    Returns the new payment's id.
    """
    amount = _clean_amount(amount)
    method = _clean_method(method)
    paid_at = _clean_payment_date(date)

    def apply():
        order = _lock_order(order_id)
        if order.status == Order.Status.CANCELLED:
            raise ValidationError({"order": "Cancelled orders do not accept payments."})
        if amount > order.balance:
            raise ValidationError({"amount": f"Payment exceeds the outstanding balance of {order.balance}."})

        payment = Payment.objects.create(
            order=order,
            amount=amount,
            payment_method=method,
            notes=(notes or "").strip(),
            date=paid_at,
        )

        order.deposit = to_money(order.deposit + amount)
        order.balance, order.status = derive_balance_and_status(order.total, order.deposit, order.status)
        order.save(update_fields=["deposit", "balance", "status", "updated_at"])
        return payment

    payment = run_in_transaction("register_payment", apply, log_context={"order_id": order_id})
    logger.info(
        "payment_registered",
        extra={"order_id": order_id, "payment_id": payment.id, "amount": amount},
    )
    return payment.id


def recalc_order_from_payments(order_id):
    """Rebuild deposit, balance and status from the order's payments.

    The order row is locked while the payments are summed, so a payment
    registered concurrently is either counted or waits for this to finish.
    """

    def apply():
        order = _lock_order(order_id)
        paid = to_money(paid_total(order.pk))
        if paid > order.total:
            raise ValidationError(
                {"order": f"Payments ({paid}) exceed the order total ({order.total}); fix the payments first."}
            )

        balance, status = derive_balance_and_status(order.total, paid, order.status)
        changed = (order.deposit, order.balance, order.status) != (paid, balance, status)
        if changed:
            order.deposit, order.balance, order.status = paid, balance, status
            order.save(update_fields=["deposit", "balance", "status", "updated_at"])
        return order, changed

    order, changed = run_in_transaction("recalc_order", apply, log_context={"order_id": order_id})
    logger.info("order_recalculated" if changed else "order_already_consistent", extra={"order_id": order.pk})
    return order


def register_payment_only(order_id, amount, method=Payment.Method.CASH, notes="", date=None):
    """Insert a payment without touching the order.

    The order's deposit, balance and status stay stale until
    `recalc_order_from_payments` runs. Used to backfill historical payments.
    """
    amount = _clean_amount(amount)
    method = _clean_method(method)
    paid_at = _clean_payment_date(date)

    def apply():
        order = _lock_order(order_id)
        outstanding = order.total - paid_total(order.pk)
        if amount > outstanding:
            raise ValidationError({"amount": f"Payment exceeds the unpaid amount of {max(outstanding, ZERO)}."})
        return Payment.objects.create(
            order=order,
            amount=amount,
            payment_method=method,
            notes=(notes or "").strip(),
            date=paid_at,
        )

    payment = run_in_transaction("register_payment_only", apply, log_context={"order_id": order_id})
    logger.info(
        "detached_payment_registered",
        extra={"order_id": order_id, "payment_id": payment.id, "amount": amount},
    )
    return payment.id


# Order lifecycle


def _clean_order_input(data):
    errors = {}

    client_id = data.get("client_id")
    client_name = (data.get("client_name") or "").strip()
    client_phone = (data.get("client_phone") or "").strip()
    if not client_id and not (client_name and client_phone):
        errors["client_id"] = "Either client_id or client_name and client_phone are required."

    service_id = data.get("service_id")
    service_name = (data.get("service_name") or "").strip()
    if not service_id and not service_name:
        errors["service_id"] = "Either service_id or service_name is required."

    if errors:
        raise ValidationError(errors)

    total = _clean_money(data.get("total"), "total", required=True)
    deposit = _clean_money(data.get("deposit"), "deposit")
    if deposit > total:
        raise ValidationError({"deposit": "Deposit cannot exceed the total."})

    start_date = _clean_day(data.get("start_date"), "start_date") or timezone.localdate()
    expected_end_date = _clean_day(data.get("expected_end_date"), "expected_end_date")
    if expected_end_date and expected_end_date < start_date:
        raise ValidationError({"expected_end_date": "Expected end date cannot be before the start date."})

    requested_status = data.get("status")
    if requested_status and requested_status not in Order.Status.values:
        raise ValidationError({"status": f"Unknown status {requested_status!r}."})

    balance, status = derive_balance_and_status(total, deposit, requested_status)
    if requested_status:
        if requested_status == Order.Status.COMPLETED and balance > ZERO:
            raise ValidationError({"status": "An order with an outstanding balance cannot be completed."})
        if requested_status == Order.Status.CANCELLED and balance == ZERO:
            raise ValidationError({"status": "A fully paid order cannot be cancelled."})

    return {
        "client_id": client_id,
        "client_name": client_name,
        "client_phone": client_phone,
        "service_id": service_id,
        "service_name": service_name,
        "service_price": data.get("service_price"),
        "total": total,
        "deposit": deposit,
        "balance": balance,
        "status": status,
        "quantity": _clean_quantity(data.get("quantity")),
        "details": (data.get("details") or "").strip(),
        "start_date": start_date,
        "expected_end_date": expected_end_date,
        "payment_method": _clean_method(data.get("payment_method")),
    }


def create_order_with_service_resolution(data):
    """Create an order, resolving its client and service in the same transaction.

    `data` names the client by `client_id` or by `client_name` + `client_phone`
    (find-or-create by phone), and the service by `service_id` or by
    `service_name` (find-or-create by normalized name). A positive `deposit`
    is recorded as an initial payment so the deposit always matches the sum
    of the order's payments.
    """
    cleaned = _clean_order_input(data)

    def apply():
        if cleaned["client_id"]:
            client = _get_client(cleaned["client_id"])
        else:
            client, _ = get_or_create_client(cleaned["client_name"], cleaned["client_phone"])

        if cleaned["service_id"]:
            service = _get_service(cleaned["service_id"])
        else:
            service, _ = get_or_create_service_by_name(cleaned["service_name"], default_price=cleaned["service_price"])

        order = Order.objects.create(
            client=client,
            service=service,
            start_date=cleaned["start_date"],
            expected_end_date=cleaned["expected_end_date"],
            details=cleaned["details"],
            total=cleaned["total"],
            deposit=cleaned["deposit"],
            balance=cleaned["balance"],
            status=cleaned["status"],
            quantity=cleaned["quantity"],
        )
        if cleaned["deposit"] > ZERO:
            Payment.objects.create(
                order=order,
                amount=cleaned["deposit"],
                payment_method=cleaned["payment_method"],
                notes=INITIAL_DEPOSIT_NOTE,
            )
        return order

    order = run_in_transaction("create_order", apply)
    logger.info(
        "order_created",
        extra={"order_id": order.pk, "client_id": order.client_id, "service_id": order.service_id, "amount": order.total},
    )
    return order


EDITABLE_ORDER_FIELDS = ("total", "start_date", "expected_end_date", "details", "quantity", "client_id", "service_id")


def update_order(order_id, changes):
    """Edit an order's descriptive fields and total.

    The deposit only moves through payments; balance and status are derived
    again from the new total.
    """
    unknown = set(changes) - set(EDITABLE_ORDER_FIELDS) - {"service_name"}
    if unknown:
        raise ValidationError({field: "This field cannot be edited." for field in sorted(unknown)})

    cleaned = {}
    if "total" in changes:
        cleaned["total"] = _clean_money(changes["total"], "total", required=True)
    if "quantity" in changes:
        cleaned["quantity"] = _clean_quantity(changes["quantity"])
    if "details" in changes:
        cleaned["details"] = (changes["details"] or "").strip()
    if "start_date" in changes:
        cleaned["start_date"] = _clean_day(changes["start_date"], "start_date") or timezone.localdate()
    if "expected_end_date" in changes:
        cleaned["expected_end_date"] = _clean_day(changes["expected_end_date"], "expected_end_date")

    def apply():
        order = _lock_order(order_id)

        if changes.get("client_id"):
            order.client = _get_client(changes["client_id"])
        if changes.get("service_id"):
            order.service = _get_service(changes["service_id"])
        elif (changes.get("service_name") or "").strip():
            order.service, _ = get_or_create_service_by_name(changes["service_name"])

        for field, value in cleaned.items():
            setattr(order, field, value)

        if order.expected_end_date and order.expected_end_date < order.start_date:
            raise ValidationError({"expected_end_date": "Expected end date cannot be before the start date."})
        if order.total < order.deposit:
            raise ValidationError({"total": f"Total cannot be lower than the amount already paid ({order.deposit})."})

        order.balance, order.status = derive_balance_and_status(order.total, order.deposit, order.status)
        order.save()
        return order

    order = run_in_transaction("update_order", apply, log_context={"order_id": order_id})
    logger.info("order_updated", extra={"order_id": order.pk})
    return order


def set_order_status(order_id, status):
    """Manual status change; only transitions that keep the invariant are accepted."""
    if status not in Order.Status.values:
        raise ValidationError({"status": f"Unknown status {status!r}."})

    def apply():
        order = _lock_order(order_id)
        if status == Order.Status.COMPLETED and order.balance > ZERO:
            raise ValidationError({"status": "An order with an outstanding balance cannot be completed."})
        if status != Order.Status.COMPLETED and order.balance == ZERO:
            raise ValidationError({"status": "A fully paid order is always completed."})
        if order.status != status:
            order.status = status
            order.save(update_fields=["status", "updated_at"])
        return order

    order = run_in_transaction("set_order_status", apply, log_context={"order_id": order_id})
    logger.info("order_status_set", extra={"order_id": order.pk, "action": status})
    return order


def delete_order(order_id):
    """Delete an order; its payments stay in the ledger without an order."""

    def apply():
        order = _lock_order(order_id)
        detached = order.payments.count()
        order.delete()
        return detached

    detached = run_in_transaction("delete_order", apply, log_context={"order_id": order_id})
    logger.info("order_deleted payments_detached=%s", detached, extra={"order_id": order_id})
    return detached


def pending_orders():
    """Orders with something still owed, oldest first; cancelled orders are excluded."""
    return (
        Order.objects.filter(balance__gt=0)
        .exclude(status=Order.Status.CANCELLED)
        .select_related("client", "service")
        .order_by("start_date", "created_at")
    )
