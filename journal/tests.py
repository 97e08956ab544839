from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from core.models import AccessEntry, AuditLog
from journal.models import JournalDayClosure, JournalEntry
from journal.services import add_entry, close_day, daily_summary, day_bounds, list_entries
from orders.services import create_order_with_service_resolution, delete_order, register_payment


def make_order(total, deposit="0", phone="70050001", details=""):
    return create_order_with_service_resolution(
        {
            "client_name": "Carla",
            "client_phone": phone,
            "service_name": "Alineación",
            "total": total,
            "deposit": deposit,
            "details": details,
        }
    )


class JournalServiceTests(TestCase):
    def test_add_entry_validates_input(self):
        with self.assertRaises(ValidationError):
            add_entry("gasto", "10", "Luz")
        with self.assertRaises(ValidationError):
            add_entry("egreso", "0", "Luz")
        with self.assertRaises(ValidationError):
            add_entry("egreso", "10", "   ")
        for amount in ["NaN", "Infinity", "abc"]:
            with self.assertRaises(ValidationError) as ctx:
                add_entry("egreso", amount, "Luz")
            self.assertIn("amount", ctx.exception.detail)
        self.assertFalse(JournalEntry.objects.exists())

        entry = add_entry("egreso", "10.5", " Luz ")
        self.assertEqual(entry.amount, Decimal("10.50"))
        self.assertEqual(entry.concept, "Luz")

    def test_list_entries_totals_by_type(self):
        add_entry("ingreso", "100", "Venta de chatarra")
        add_entry("egreso", "30", "Limpieza")
        add_entry("egreso", "20", "Agua")

        entries, totals = list_entries()

        self.assertEqual(entries.count(), 3)
        self.assertEqual(totals, {"ingresos": Decimal("100.00"), "egresos": Decimal("50.00"), "neto": Decimal("50.00")})

    def test_list_entries_by_local_day(self):
        today = timezone.localdate()
        yesterday = today - timedelta(days=1)
        add_entry("egreso", "30", "Hoy")
        add_entry("egreso", "40", "Ayer", date=day_bounds(yesterday)[0] + timedelta(hours=12))

        entries, totals = list_entries(date_from=today, date_to=today)

        self.assertEqual([entry.concept for entry in entries], ["Hoy"])
        self.assertEqual(totals["egresos"], Decimal("30.00"))

    def test_daily_summary_combines_payments_and_manual_entries(self):
        order = make_order("300", deposit="100", details="Hilux")
        register_payment(order.pk, "50", method="qr")
        add_entry("ingreso", "20", "Propina")
        add_entry("egreso", "15", "Almuerzo")

        summary = daily_summary(timezone.localdate())

        sources = [line["source"] for line in summary["ingresos"]]
        self.assertEqual(sources.count("payment"), 2)
        self.assertEqual(sources.count("manual"), 1)
        qr_line = next(line for line in summary["ingresos"] if line.get("payment_method") == "qr")
        self.assertEqual(qr_line["concept"], "Pago qr")
        self.assertEqual(qr_line["order_name"], "Alineación - Hilux")
        self.assertEqual(qr_line["order_id"], order.pk)
        self.assertEqual(summary["totals"]["ingresos"], Decimal("170.00"))
        self.assertEqual(summary["totals"]["egresos"], Decimal("15.00"))
        self.assertEqual(summary["totals"]["neto"], Decimal("155.00"))

    def test_payments_of_deleted_orders_stay_in_summary(self):
        order = make_order("100", deposit="40")
        delete_order(order.pk)

        summary = daily_summary(timezone.localdate())

        self.assertEqual(summary["ingresos"][0]["order_name"], "Orden")
        self.assertIsNone(summary["ingresos"][0]["order_id"])
        self.assertEqual(summary["totals"]["ingresos"], Decimal("40.00"))

    def test_other_days_are_excluded(self):
        yesterday = timezone.localdate() - timedelta(days=1)
        add_entry("egreso", "40", "Ayer", date=day_bounds(yesterday)[1] - timedelta(seconds=1))

        summary = daily_summary(timezone.localdate())

        self.assertEqual(summary["egresos"], [])

    def test_close_day_stores_json_snapshot(self):
        make_order("100", deposit="60")
        add_entry("egreso", "10", "Bolsas")

        closure = close_day(timezone.localdate())

        closure.refresh_from_db()
        self.assertEqual(closure.totals, {"ingresos": "60.00", "egresos": "10.00", "neto": "50.00"})
        self.assertEqual(closure.ingresos[0]["amount"], "60.00")
        self.assertEqual(closure.ingresos[0]["concept"], "Abono inicial")
        self.assertIsNone(closure.closed_by)


class JournalApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="caja", email="caja@taller.bo", password="pass1234")
        AccessEntry.objects.create(email="caja@taller.bo", role=AccessEntry.Role.EMPLOYEE)
        self.client.force_authenticate(user=self.user)

    def test_create_entry_is_audited(self):
        response = self.client.post(
            "/api/v1/journal/entries/",
            {"type": "egreso", "amount": "25.00", "concept": "Gasolina"},
            format="json",
            HTTP_X_REQUEST_ID="req-journal",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["concept"], "Gasolina")
        entry = JournalEntry.objects.get()
        self.assertTrue(
            AuditLog.objects.filter(action="journal.create", entity_id=str(entry.id), request_id="req-journal").exists()
        )

    def test_create_entry_rejects_non_positive_amount(self):
        response = self.client.post(
            "/api/v1/journal/entries/", {"type": "egreso", "amount": "0", "concept": "Nada"}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("amount", response.json()["errors"])

    def test_list_entries_includes_totals(self):
        add_entry("ingreso", "100", "Venta")
        add_entry("egreso", "40", "Compra")

        response = self.client.get("/api/v1/journal/entries/")
        expenses = self.client.get("/api/v1/journal/entries/?type=egreso")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 2)
        self.assertEqual(response.json()["totals"], {"ingresos": "100.00", "egresos": "40.00", "neto": "60.00"})
        self.assertEqual(expenses.json()["count"], 1)

    def test_invalid_date_filter(self):
        response = self.client.get("/api/v1/journal/entries/?date_from=ayer")

        self.assertEqual(response.status_code, 400)
        self.assertIn("date_from", response.json()["errors"])

    def test_daily_summary_endpoint_and_csv(self):
        make_order("200", deposit="80")
        add_entry("egreso", "5", "Café")
        today = timezone.localdate().isoformat()

        response = self.client.get(f"/api/v1/journal/daily-summary/?date={today}")
        export = self.client.get(f"/api/v1/journal/daily-summary/?date={today}&format=csv")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["date"], today)
        self.assertEqual(payload["totals"]["neto"], "75.00")
        self.assertEqual(payload["ingresos"][0]["source"], "payment")
        self.assertEqual(export["Content-Type"], "text/csv")
        self.assertTrue(export.content.decode().startswith("side,source,date,concept,order_name,payment_method,amount"))

    def test_close_day_records_user_and_audit(self):
        add_entry("ingreso", "10", "Venta")

        response = self.client.post("/api/v1/journal/closures/", {"date": timezone.localdate().isoformat()}, format="json")
        listing = self.client.get("/api/v1/journal/closures/")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["closed_by_username"], "caja")
        self.assertEqual(response.json()["totals"]["ingresos"], "10.00")
        self.assertEqual(listing.json()["count"], 1)
        closure = JournalDayClosure.objects.get()
        self.assertTrue(AuditLog.objects.filter(action="journal.close_day", entity_id=str(closure.id)).exists())
