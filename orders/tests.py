import json
import os
import tempfile
import threading
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.apps import apps
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.db import OperationalError, connection, transaction
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.test import APIClient

from catalog.models import Client, Service
from common.exceptions import TransientStoreError, WriteConflict
from core.models import AccessEntry, AuditLog
from journal.services import add_entry
from orders import services
from orders.documents import DocumentBundle, DocumentError, OrderRecord, PaymentRecord, parse_day, parse_timestamp
from orders.models import Order, Payment
from orders.services import (
    INITIAL_DEPOSIT_NOTE,
    create_order_with_service_resolution,
    delete_order,
    paid_total,
    pending_orders,
    recalc_order_from_payments,
    register_payment,
    register_payment_only,
    set_order_status,
    update_order,
)


def make_order(total, deposit="0", phone="70010001", service="Cambio de Aceite", **extra):
    return create_order_with_service_resolution(
        {
            "client_name": "Juan Pérez",
            "client_phone": phone,
            "service_name": service,
            "total": total,
            "deposit": deposit,
            **extra,
        }
    )


class OrderInvariantMixin:
    def assertOrderConsistent(self, order):
        order.refresh_from_db()
        self.assertGreaterEqual(order.deposit, 0)
        self.assertLessEqual(order.deposit, order.total)
        self.assertEqual(order.balance, max(Decimal("0.00"), order.total - order.deposit))
        self.assertEqual(order.deposit, paid_total(order.pk))
        if order.balance == 0:
            self.assertEqual(order.status, Order.Status.COMPLETED)
        else:
            self.assertIn(order.status, {Order.Status.PENDING, Order.Status.CANCELLED})


class RegisterPaymentTests(OrderInvariantMixin, TestCase):
    def test_full_cash_payment_completes_order(self):
        order = make_order("500")

        payment_id = register_payment(order.pk, "500", method="efectivo")

        order.refresh_from_db()
        self.assertEqual(order.deposit, Decimal("500.00"))
        self.assertEqual(order.balance, Decimal("0.00"))
        self.assertEqual(order.status, Order.Status.COMPLETED)
        payment = Payment.objects.get(pk=payment_id)
        self.assertEqual(payment.order_id, order.pk)
        self.assertEqual(payment.payment_method, "efectivo")

    def test_partial_qr_payment_after_initial_deposit(self):
        order = make_order("300", deposit="100")

        register_payment(order.pk, "50", method="qr")

        order.refresh_from_db()
        self.assertEqual(order.deposit, Decimal("150.00"))
        self.assertEqual(order.balance, Decimal("150.00"))
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(Payment.objects.filter(order=order).count(), 2)
        self.assertOrderConsistent(order)

    def test_invariant_holds_after_every_payment(self):
        order = make_order("1000")

        for amount in ["100", "250.50", "0.50", "600", "49"]:
            register_payment(order.pk, amount, method="transferencia")
            self.assertOrderConsistent(order)

        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertEqual(order.balance, Decimal("0.00"))

    def test_payment_equal_to_balance_completes_and_one_cent_more_is_rejected(self):
        order = make_order("80", deposit="30")

        with self.assertRaises(ValidationError) as ctx:
            register_payment(order.pk, "50.01")
        self.assertIn("amount", ctx.exception.detail)
        self.assertOrderConsistent(order)
        self.assertEqual(order.balance, Decimal("50.00"))

        register_payment(order.pk, "50.00")
        self.assertOrderConsistent(order)
        self.assertEqual(order.status, Order.Status.COMPLETED)

    def test_non_positive_amounts_are_rejected(self):
        order = make_order("100")

        for amount in ["0", "-5", "abc", None]:
            with self.assertRaises(ValidationError):
                register_payment(order.pk, amount)

        self.assertEqual(Payment.objects.count(), 0)

    def test_non_finite_amounts_are_rejected(self):
        order = make_order("100")

        for amount in ["NaN", "Infinity", "-Infinity", "sNaN"]:
            with self.assertRaises(ValidationError) as ctx:
                register_payment(order.pk, amount)
            self.assertIn("amount", ctx.exception.detail)
            with self.assertRaises(ValidationError):
                register_payment_only(order.pk, amount)

        self.assertEqual(Payment.objects.count(), 0)
        self.assertOrderConsistent(order)

    def test_order_totals_must_be_finite(self):
        for field, value in [("total", "NaN"), ("total", "Infinity"), ("deposit", "NaN"), ("total", "abc")]:
            data = {"total": "100", field: value}
            with self.assertRaises(ValidationError) as ctx:
                make_order(**data)
            self.assertIn(field, ctx.exception.detail)

        self.assertEqual(Order.objects.count(), 0)

    def test_unknown_method_is_rejected(self):
        order = make_order("100")

        with self.assertRaises(ValidationError):
            register_payment(order.pk, "10", method="tarjeta")

    def test_cancelled_order_does_not_accept_payments(self):
        order = make_order("100")
        set_order_status(order.pk, Order.Status.CANCELLED)

        with self.assertRaises(ValidationError):
            register_payment(order.pk, "10")

        self.assertEqual(Payment.objects.count(), 0)

    def test_missing_order_is_not_found(self):
        with self.assertRaises(NotFound):
            register_payment("00000000-0000-0000-0000-000000000000", "10")
        with self.assertRaises(NotFound):
            register_payment("not-a-uuid", "10")

    def test_payment_and_order_update_are_atomic(self):
        order = make_order("100")

        with patch.object(Order, "save", side_effect=RuntimeError("disk full")):
            with self.assertRaises(RuntimeError):
                register_payment(order.pk, "40")

        self.assertEqual(Payment.objects.count(), 0)
        order.refresh_from_db()
        self.assertEqual(order.deposit, Decimal("0.00"))
        self.assertEqual(order.balance, Decimal("100.00"))


class WriteConflictRetryTests(OrderInvariantMixin, TestCase):
    def setUp(self):
        self.order = make_order("100")
        self.real_lock = services._lock_order
        self.calls = 0

    def _failing_lock(self, failures, message="could not serialize access due to concurrent update"):
        def lock(order_id):
            self.calls += 1
            if failures is None or self.calls <= failures:
                raise OperationalError(message)
            return self.real_lock(order_id)

        return lock

    def test_conflict_is_retried_and_applied_once(self):
        with patch("orders.services._lock_order", side_effect=self._failing_lock(2)):
            with self.assertLogs("orders.services", level="WARNING") as logs:
                register_payment(self.order.pk, "25")

        self.assertEqual(self.calls, 3)
        self.assertEqual(Payment.objects.count(), 1)
        self.assertTrue(any("store_conflict_retry" in line for line in logs.output))
        self.assertOrderConsistent(self.order)
        self.assertEqual(self.order.deposit, Decimal("25.00"))

    @override_settings(RECONCILIATION_MAX_ATTEMPTS=3)
    def test_exhausted_retries_raise_write_conflict_without_changes(self):
        with patch("orders.services._lock_order", side_effect=self._failing_lock(None)):
            with self.assertRaises(WriteConflict):
                register_payment(self.order.pk, "25")

        self.assertEqual(self.calls, 3)
        self.assertEqual(Payment.objects.count(), 0)
        self.assertOrderConsistent(self.order)

    def test_other_operational_errors_are_not_retried(self):
        lock = self._failing_lock(None, message="server closed the connection unexpectedly")
        with patch("orders.services._lock_order", side_effect=lock):
            with self.assertRaises(TransientStoreError) as ctx:
                register_payment(self.order.pk, "25")

        self.assertNotIsInstance(ctx.exception, WriteConflict)
        self.assertEqual(self.calls, 1)

    def test_recalc_is_retried_too(self):
        Payment.objects.create(order=self.order, amount="30")

        with patch("orders.services._lock_order", side_effect=self._failing_lock(1, message="deadlock detected")):
            order = recalc_order_from_payments(self.order.pk)

        self.assertEqual(order.deposit, Decimal("30.00"))
        self.assertEqual(self.calls, 2)


class RecalcTests(OrderInvariantMixin, TestCase):
    def test_detached_payment_is_applied_by_recalc(self):
        order = make_order("200")

        register_payment_only(order.pk, "200", method="qr")

        order.refresh_from_db()
        self.assertEqual(order.deposit, Decimal("0.00"))
        self.assertEqual(order.status, Order.Status.PENDING)

        order = recalc_order_from_payments(order.pk)
        self.assertEqual(order.deposit, Decimal("200.00"))
        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertOrderConsistent(order)

    def test_recalc_is_idempotent(self):
        order = make_order("120", deposit="20")
        Payment.objects.create(order=order, amount="30", payment_method="qr")

        first = recalc_order_from_payments(order.pk)
        stamp = Order.objects.get(pk=order.pk).updated_at
        second = recalc_order_from_payments(order.pk)

        self.assertEqual((first.deposit, first.balance, first.status), (second.deposit, second.balance, second.status))
        self.assertEqual(Order.objects.get(pk=order.pk).updated_at, stamp)
        self.assertEqual(second.deposit, Decimal("50.00"))

    def test_detached_payment_cannot_exceed_unpaid_amount(self):
        order = make_order("100", deposit="60")
        register_payment_only(order.pk, "30")

        with self.assertRaises(ValidationError):
            register_payment_only(order.pk, "10.01")

        self.assertEqual(paid_total(order.pk), Decimal("90.00"))

    def test_recalc_keeps_cancelled_order_cancelled_while_owed(self):
        order = make_order("100")
        set_order_status(order.pk, Order.Status.CANCELLED)
        Payment.objects.create(order=order, amount="40")

        order = recalc_order_from_payments(order.pk)

        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertEqual(order.balance, Decimal("60.00"))

    def test_recalc_rejects_payments_above_total(self):
        order = make_order("100")
        Payment.objects.create(order=order, amount="150")

        with self.assertRaises(ValidationError):
            recalc_order_from_payments(order.pk)


class OrderLifecycleTests(OrderInvariantMixin, TestCase):
    def test_create_records_initial_deposit_as_payment(self):
        order = make_order("300", deposit="100", payment_method="qr", details="Toyota 1234-ABC")

        self.assertEqual(order.balance, Decimal("200.00"))
        self.assertEqual(order.status, Order.Status.PENDING)
        payment = Payment.objects.get(order=order)
        self.assertEqual(payment.amount, Decimal("100.00"))
        self.assertEqual(payment.notes, INITIAL_DEPOSIT_NOTE)
        self.assertEqual(payment.payment_method, "qr")
        self.assertEqual(order.display_name, "Cambio de Aceite - Toyota 1234-ABC")
        self.assertOrderConsistent(order)

    def test_unknown_status_is_rejected_before_anything_is_derived(self):
        with patch("orders.services.derive_balance_and_status") as derive:
            with self.assertRaises(ValidationError) as ctx:
                make_order("100", status="archivado")

        self.assertIn("status", ctx.exception.detail)
        derive.assert_not_called()
        self.assertFalse(Order.objects.exists())

    def test_create_resolves_existing_client_and_service(self):
        first = make_order("100", service="Cambio de Aceite")
        second = make_order("150", service="  cambio de acéite ")

        self.assertEqual(first.client_id, second.client_id)
        self.assertEqual(first.service_id, second.service_id)
        self.assertEqual(Client.objects.count(), 1)
        self.assertEqual(Service.objects.count(), 1)

    def test_create_with_ids(self):
        client = Client.objects.create(name="Ana", phone="70010002")
        service = Service.objects.create(name="Pintura")

        order = create_order_with_service_resolution({"client_id": client.pk, "service_id": service.pk, "total": "90"})

        self.assertEqual(order.client_id, client.pk)
        self.assertEqual(order.quantity, 1)
        self.assertEqual(order.start_date, timezone.localdate())

    def test_create_with_unknown_client_id_is_not_found_and_creates_nothing(self):
        with self.assertRaises(NotFound):
            create_order_with_service_resolution(
                {"client_id": "00000000-0000-0000-0000-000000000000", "service_name": "Nuevo", "total": "10"}
            )

        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(Service.objects.count(), 0)

    def test_create_requires_client_and_service(self):
        with self.assertRaises(ValidationError) as ctx:
            create_order_with_service_resolution({"client_name": "Sin teléfono", "total": "10"})

        self.assertIn("client_id", ctx.exception.detail)
        self.assertIn("service_id", ctx.exception.detail)

    def test_fully_paid_order_is_created_completed(self):
        order = make_order("75", deposit="75", status=Order.Status.PENDING)

        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertOrderConsistent(order)

    def test_free_order_is_completed(self):
        order = make_order("0")

        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertEqual(Payment.objects.count(), 0)

    def test_create_rejects_inconsistent_requested_status(self):
        with self.assertRaises(ValidationError):
            make_order("100", deposit="10", status=Order.Status.COMPLETED)
        with self.assertRaises(ValidationError):
            make_order("100", deposit="100", status=Order.Status.CANCELLED)
        with self.assertRaises(ValidationError):
            make_order("100", deposit="120")

    def test_update_total_reopens_completed_order(self):
        order = make_order("100", deposit="100")

        order = update_order(order.pk, {"total": "150", "details": "Con filtro"})

        self.assertEqual(order.balance, Decimal("50.00"))
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.details, "Con filtro")
        self.assertOrderConsistent(order)

    def test_update_total_below_paid_amount_is_rejected(self):
        order = make_order("100", deposit="60")

        with self.assertRaises(ValidationError):
            update_order(order.pk, {"total": "50"})

        order.refresh_from_db()
        self.assertEqual(order.total, Decimal("100.00"))

    def test_update_rejects_money_fields(self):
        order = make_order("100")

        with self.assertRaises(ValidationError):
            update_order(order.pk, {"deposit": "50"})

    def test_update_service_by_name(self):
        order = make_order("100")

        order = update_order(order.pk, {"service_name": "Alineación"})

        self.assertEqual(order.service.name, "Alineación")

    def test_status_transitions(self):
        order = make_order("100", deposit="40")

        order = set_order_status(order.pk, Order.Status.CANCELLED)
        self.assertEqual(order.status, Order.Status.CANCELLED)

        order = set_order_status(order.pk, Order.Status.PENDING)
        self.assertEqual(order.status, Order.Status.PENDING)

        with self.assertRaises(ValidationError):
            set_order_status(order.pk, Order.Status.COMPLETED)
        with self.assertRaises(ValidationError):
            set_order_status(order.pk, "archivado")

    def test_paid_order_cannot_be_cancelled(self):
        order = make_order("100", deposit="100")

        with self.assertRaises(ValidationError):
            set_order_status(order.pk, Order.Status.CANCELLED)

    def test_delete_keeps_payments_without_order(self):
        order = make_order("100", deposit="40")
        register_payment(order.pk, "10")

        detached = delete_order(order.pk)

        self.assertEqual(detached, 2)
        self.assertFalse(Order.objects.filter(pk=order.pk).exists())
        self.assertEqual(Payment.objects.filter(order__isnull=True).count(), 2)

    def test_pending_orders_exclude_cancelled_and_paid(self):
        pending = make_order("100", phone="70010010")
        cancelled = make_order("100", phone="70010011")
        set_order_status(cancelled.pk, Order.Status.CANCELLED)
        make_order("100", deposit="100", phone="70010012")

        self.assertEqual([order.pk for order in pending_orders()], [pending.pk])


class OrderApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.employee = user_model.objects.create_user(username="empleado", email="empleado@taller.bo", password="pass1234")
        self.admin = user_model.objects.create_user(username="jefe", email="jefe@taller.bo", password="pass1234")
        AccessEntry.objects.create(email="empleado@taller.bo", role=AccessEntry.Role.EMPLOYEE)
        AccessEntry.objects.create(email="jefe@taller.bo", role=AccessEntry.Role.ADMIN)
        self.client.force_authenticate(user=self.employee)

    def _create_order(self, **overrides):
        payload = {
            "client_name": "Juan Pérez",
            "client_phone": "70020001",
            "service_name": "Cambio de Aceite",
            "total": "300.00",
            "deposit": "100.00",
            "payment_method": "qr",
            **overrides,
        }
        return self.client.post("/api/v1/orders/", payload, format="json", HTTP_X_REQUEST_ID="req-order")

    def test_create_order_with_names(self):
        response = self._create_order()

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["client_name"], "Juan Pérez")
        self.assertEqual(payload["service_name"], "Cambio de Aceite")
        self.assertEqual(payload["deposit"], "100.00")
        self.assertEqual(payload["balance"], "200.00")
        self.assertEqual(payload["status"], "pendiente")
        self.assertTrue(AuditLog.objects.filter(action="order.create", entity_id=payload["id"], request_id="req-order").exists())

    def test_create_order_validation_error_envelope(self):
        response = self._create_order(client_phone="", deposit="400.00")

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertIn("client_id", payload["errors"])

    def test_register_payment_on_order(self):
        order_id = self._create_order().json()["id"]

        response = self.client.post(
            f"/api/v1/orders/{order_id}/payments/",
            {"amount": "200.00", "payment_method": "efectivo"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["order"]["status"], "completado")
        self.assertEqual(response.json()["order"]["balance"], "0.00")
        self.assertEqual(response.json()["payment"]["concept"], "Pago efectivo")
        self.assertTrue(AuditLog.objects.filter(action="payment.create", entity="payment").exists())

        listing = self.client.get(f"/api/v1/orders/{order_id}/payments/")
        self.assertEqual(len(listing.json()), 2)

    def test_overpayment_is_rejected(self):
        order_id = self._create_order().json()["id"]

        response = self.client.post(f"/api/v1/orders/{order_id}/payments/", {"amount": "200.01"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("amount", response.json()["errors"])
        self.assertEqual(Payment.objects.count(), 1)

    def test_payment_through_ledger_endpoint(self):
        order_id = self._create_order().json()["id"]

        response = self.client.post(
            "/api/v1/payments/", {"order": order_id, "amount": "50", "payment_method": "transferencia"}, format="json"
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(Order.objects.get(pk=order_id).deposit, Decimal("150.00"))

    def test_write_conflict_surfaces_as_service_unavailable(self):
        order_id = self._create_order().json()["id"]

        with patch("orders.views.register_payment", side_effect=WriteConflict()):
            response = self.client.post(f"/api/v1/orders/{order_id}/payments/", {"amount": "10"}, format="json")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "transient_store_error")

    def test_status_change(self):
        order_id = self._create_order().json()["id"]

        response = self.client.post(f"/api/v1/orders/{order_id}/status/", {"status": "cancelado"}, format="json")
        rejected = self.client.post(f"/api/v1/orders/{order_id}/payments/", {"amount": "10"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "cancelado")
        self.assertEqual(rejected.status_code, 400)

    def test_update_order(self):
        order_id = self._create_order().json()["id"]

        response = self.client.patch(f"/api/v1/orders/{order_id}/", {"total": "350.00"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["balance"], "250.00")
        self.assertTrue(AuditLog.objects.filter(action="order.update", entity_id=order_id).exists())

    def test_list_filters(self):
        self._create_order()
        self._create_order(client_phone="70020002", client_name="Ana", total="100.00", deposit="100.00")

        pending = self.client.get("/api/v1/orders/?status=pendiente")
        search = self.client.get("/api/v1/orders/?search=ana")

        self.assertEqual(pending.json()["count"], 1)
        self.assertEqual(search.json()["results"][0]["client_name"], "Ana")

    def test_employee_cannot_delete_or_backfill(self):
        order_id = self._create_order().json()["id"]

        delete = self.client.delete(f"/api/v1/orders/{order_id}/")
        detached = self.client.post("/api/v1/payments/detached/", {"order": order_id, "amount": "10"}, format="json")
        recalc = self.client.post(f"/api/v1/orders/{order_id}/recalc/")

        self.assertEqual(delete.status_code, 403)
        self.assertEqual(detached.status_code, 403)
        self.assertEqual(recalc.status_code, 403)

    def test_admin_backfill_then_recalc(self):
        order_id = self._create_order().json()["id"]
        self.client.force_authenticate(user=self.admin)

        detached = self.client.post(
            "/api/v1/payments/detached/", {"order": order_id, "amount": "200", "payment_method": "qr"}, format="json"
        )
        stale = Order.objects.get(pk=order_id)
        recalc = self.client.post(f"/api/v1/orders/{order_id}/recalc/")

        self.assertEqual(detached.status_code, 201)
        self.assertEqual(stale.balance, Decimal("200.00"))
        self.assertEqual(recalc.status_code, 200)
        self.assertEqual(recalc.json()["status"], "completado")
        self.assertTrue(AuditLog.objects.filter(action="payment.create_detached").exists())

    def test_admin_delete_keeps_payment_history(self):
        order_id = self._create_order().json()["id"]
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/orders/{order_id}/")
        unassigned = self.client.get("/api/v1/payments/?unassigned=1")

        self.assertEqual(response.status_code, 204)
        self.assertEqual(unassigned.json()["count"], 1)
        log = AuditLog.objects.get(action="order.delete")
        self.assertEqual(log.before_snapshot["payments_detached"], 1)

    def test_payments_csv_export(self):
        self._create_order()

        response = self.client.get("/api/v1/payments/?format=csv")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        lines = response.content.decode().strip().splitlines()
        self.assertEqual(lines[0], "date,order,order_name,client,payment_method,amount,concept")
        self.assertIn("Abono inicial", lines[1])


class ReportTests(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        user = get_user_model().objects.create_user(username="empleado", email="empleado@taller.bo", password="pass1234")
        AccessEntry.objects.create(email="empleado@taller.bo", role=AccessEntry.Role.EMPLOYEE)
        self.client.force_authenticate(user=user)

    def test_monthly_income_includes_payments_and_expenses(self):
        make_order("500", deposit="200")
        add_entry("egreso", "80", "Repuestos")

        response = self.client.get("/api/v1/reports/monthly-income/?months=3")

        self.assertEqual(response.status_code, 200)
        rows = response.json()["results"]
        self.assertEqual(len(rows), 3)
        current = rows[-1]
        self.assertEqual(current["month"], timezone.localdate().strftime("%Y-%m"))
        self.assertEqual(Decimal(current["ingresos"]), Decimal("200.00"))
        self.assertEqual(Decimal(current["gastos"]), Decimal("80.00"))
        self.assertEqual(Decimal(current["neto"]), Decimal("120.00"))
        self.assertEqual(Decimal(rows[0]["ingresos"]), Decimal("0.00"))

    def test_monthly_income_months_are_bounded(self):
        response = self.client.get("/api/v1/reports/monthly-income/?months=30")

        self.assertEqual(response.status_code, 400)
        self.assertIn("months", response.json()["errors"])

    def test_payment_method_split(self):
        order = make_order("400", deposit="100", payment_method="qr")
        register_payment(order.pk, "300", method="efectivo")

        response = self.client.get("/api/v1/reports/payment-method-split/")

        rows = {row["payment_method"]: row for row in response.json()["results"]}
        self.assertEqual(Decimal(rows["efectivo"]["amount"]), Decimal("300.00"))
        self.assertEqual(Decimal(rows["efectivo"]["percentage"]), Decimal("75.00"))
        self.assertEqual(rows["qr"]["count"], 1)

    def test_pending_balances_and_cache_invalidation(self):
        order = make_order("250", deposit="50", phone="70030001")
        cancelled = make_order("90", phone="70030002")
        set_order_status(cancelled.pk, Order.Status.CANCELLED)

        first = self.client.get("/api/v1/reports/pending-balances/")
        self.assertEqual(first.json()["count"], 1)
        self.assertEqual(Decimal(first.json()["balance_total"]), Decimal("200.00"))
        self.assertTrue(first.json()["results"][0]["is_partial_payment"])

        with self.captureOnCommitCallbacks(execute=True):
            register_payment(order.pk, "200")

        second = self.client.get("/api/v1/reports/pending-balances/")
        self.assertEqual(second.json()["count"], 0)

    def test_rolled_back_write_keeps_cached_listing_consistent(self):
        order = make_order("100", phone="70030003")
        collection_cache = apps.get_app_config("common").collection_cache

        def load_totals():
            return [str(total) for total in Order.objects.values_list("total", flat=True)]

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.assertEqual(collection_cache.get_or_load("orders", "totals", load_totals), ["100.00"])
            with self.assertRaises(RuntimeError):
                with transaction.atomic():
                    order.total = Decimal("999.00")
                    order.save()
                    collection_cache.get_or_load("orders", "totals", load_totals)
                    raise RuntimeError("rollback")

        self.assertEqual(callbacks, [])
        self.assertEqual(load_totals(), ["100.00"])
        self.assertEqual(collection_cache.get_or_load("orders", "totals", load_totals), ["100.00"])

    def test_committed_write_invalidates_cached_listing(self):
        order = make_order("100", phone="70030004")
        collection_cache = apps.get_app_config("common").collection_cache

        def load_totals():
            return [str(total) for total in Order.objects.values_list("total", flat=True)]

        collection_cache.get_or_load("orders", "totals", load_totals)
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            update_order(order.pk, {"total": "150"})

        self.assertTrue(callbacks)
        self.assertEqual(collection_cache.get_or_load("orders", "totals", load_totals), ["150.00"])

    def test_dashboard_summary(self):
        order = make_order("300", deposit="100")
        register_payment(order.pk, "50", method="qr")
        add_entry("ingreso", "20", "Venta de aceite usado")

        response = self.client.get("/api/v1/reports/dashboard-summary/")

        payload = response.json()
        self.assertEqual(Decimal(payload["today_income"]), Decimal("150.00"))
        self.assertEqual(Decimal(payload["today_manual_income"]), Decimal("20.00"))
        self.assertEqual(payload["pending_orders"], 1)
        self.assertEqual(Decimal(payload["pending_balance"]), Decimal("150.00"))
        self.assertEqual(Decimal(payload["month_income"]), Decimal("150.00"))

    def test_report_csv_export(self):
        make_order("100", deposit="10")

        response = self.client.get("/api/v1/reports/pending-balances/?format=csv")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        self.assertTrue(response.content.decode().startswith("order_id,order_name,client"))


class DocumentParsingTests(TestCase):
    def test_order_defaults_are_filled(self):
        record = OrderRecord.from_document(
            {
                "id": "abc",
                "clientId": "c1",
                "serviceId": "s1",
                "total": 300,
                "deposit": 500,
                "status": "archivado",
                "fechaInicio": {"seconds": 1704067200},
            }
        )

        self.assertEqual(record.quantity, 1)
        self.assertEqual(record.status, Order.Status.PENDING)
        self.assertEqual(record.deposit, Decimal("300.00"))
        self.assertEqual(record.start_date.year, 2023)

    def test_order_without_references_is_rejected(self):
        with self.assertRaises(DocumentError):
            OrderRecord.from_document({"id": "x", "total": 10})

    def test_payment_defaults(self):
        record = PaymentRecord.from_document({"orderId": "o1", "amount": "25.5", "paymentMethod": "tarjeta"})

        self.assertEqual(record.amount, Decimal("25.50"))
        self.assertEqual(record.payment_method, Payment.Method.CASH)
        self.assertEqual(record.order_id, "o1")

    def test_timestamps(self):
        self.assertEqual(parse_timestamp({"_seconds": 0}).year, 1970)
        self.assertIsNotNone(parse_timestamp("2024-03-01T10:00:00"))
        self.assertIsNone(parse_timestamp("not a date"))
        self.assertEqual(parse_day("2024-03-01").day, 1)

    def test_bundle_collects_skipped_documents(self):
        bundle = DocumentBundle.from_export(
            {
                "clients": {"c1": {"name": "Ana"}, "c2": {"name": ""}},
                "payments": [{"id": "p1", "amount": 0}],
            }
        )

        self.assertEqual([client.id for client in bundle.clients], ["c1"])
        self.assertEqual(len(bundle.skipped), 2)


class ManagementCommandTests(TestCase):
    def _write_export(self, export):
        handle, path = tempfile.mkstemp(suffix=".json")
        with os.fdopen(handle, "w", encoding="utf-8") as fp:
            json.dump(export, fp)
        self.addCleanup(os.remove, path)
        return path

    def test_import_documents_rebuilds_orders_from_payments(self):
        path = self._write_export(
            {
                "clients": [{"id": "c1", "name": "Ana", "phone": "70040001"}],
                "services": [{"id": "s1", "name": "Cambio de Aceite", "price": 150}],
                "orders": [
                    {"id": "o1", "clientId": "c1", "serviceId": "s1", "total": 300, "deposit": 150},
                    {"id": "o2", "clientId": "c1", "serviceId": "missing", "total": 10},
                ],
                "payments": [
                    {"id": "p1", "orderId": "o1", "amount": 100, "paymentMethod": "qr"},
                    {"id": "p2", "orderId": "o1", "amount": 50},
                    {"id": "p3", "orderId": "gone", "amount": 20},
                    {"id": "p4", "amount": -1},
                ],
                "journal": [{"id": "j1", "type": "egreso", "amount": 30, "concept": "Luz"}],
            }
        )
        out = StringIO()

        call_command("import_documents", path, stdout=out)

        order = Order.objects.get()
        self.assertEqual(order.deposit, Decimal("150.00"))
        self.assertEqual(order.balance, Decimal("150.00"))
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(Payment.objects.count(), 3)
        self.assertEqual(Payment.objects.filter(order__isnull=True).count(), 1)
        output = out.getvalue()
        self.assertIn("skipped payments/p4", output)
        self.assertIn("skipped orders/o2", output)

    def test_import_dry_run_writes_nothing(self):
        path = self._write_export({"clients": [{"id": "c1", "name": "Ana"}]})
        out = StringIO()

        call_command("import_documents", path, "--dry-run", stdout=out)

        self.assertIn("Parsed 1 client(s)", out.getvalue())
        self.assertEqual(Client.objects.count(), 0)

    def test_recalc_orders_repairs_stale_orders(self):
        stale = make_order("100", phone="70040002")
        make_order("100", deposit="100", phone="70040003")
        Payment.objects.create(order=stale, amount="100")
        out = StringIO()

        call_command("recalc_orders", stdout=out)

        stale.refresh_from_db()
        self.assertEqual(stale.status, Order.Status.COMPLETED)
        self.assertIn("Checked 2 order(s); repaired 1; failed 0.", out.getvalue())


@override_settings(RECONCILIATION_MAX_ATTEMPTS=50)
class ConcurrentPaymentTests(TransactionTestCase):
    def _pay_concurrently(self, order, amounts, errors):
        barrier = threading.Barrier(len(amounts))

        def pay(amount):
            try:
                barrier.wait()
                register_payment(order.pk, amount)
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=pay, args=(amount,)) for amount in amounts]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def test_two_payments_settle_the_order_exactly(self):
        order = make_order("200")
        errors = []

        self._pay_concurrently(order, ["100", "100"], errors)

        order.refresh_from_db()
        self.assertEqual(errors, [])
        self.assertEqual(order.deposit, Decimal("200.00"))
        self.assertEqual(order.balance, Decimal("0.00"))
        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertEqual(Payment.objects.filter(order=order).count(), 2)

    def test_concurrent_payments_are_serialized(self):
        order = make_order("100")
        errors = []

        def pay():
            try:
                register_payment(order.pk, "10")
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=pay) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        order.refresh_from_db()
        self.assertEqual(errors, [])
        self.assertEqual(order.deposit, Decimal("100.00"))
        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertEqual(paid_total(order.pk), Decimal("100.00"))

    def test_overlapping_overpayments_leave_one_winner(self):
        order = make_order("100")
        errors = []

        def pay():
            try:
                register_payment(order.pk, "60")
            except ValidationError as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=pay) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        order.refresh_from_db()
        self.assertEqual(len(errors), 1)
        self.assertEqual(order.deposit, Decimal("60.00"))
        self.assertEqual(Payment.objects.filter(order=order).count(), 1)
