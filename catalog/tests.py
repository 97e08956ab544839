from datetime import timedelta
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from catalog.models import Client, Service
from catalog.services import (
    create_client,
    create_service,
    get_or_create_client,
    get_or_create_service_by_name,
    normalize_service_name,
    search_services,
)
from core.models import AccessEntry
from orders.models import Order


class ServiceResolverTests(TestCase):
    def test_normalization_ignores_case_spacing_and_accents(self):
        self.assertEqual(normalize_service_name("  Cambio de Acéite "), "cambio de aceite")
        self.assertEqual(normalize_service_name(""), "")
        self.assertEqual(normalize_service_name(None), "")

    def test_same_service_is_returned_for_equivalent_names(self):
        first, created = get_or_create_service_by_name("Cambio de Aceite", default_price="120")
        second, second_created = get_or_create_service_by_name("cambio de aceite")
        third, third_created = get_or_create_service_by_name("  CAMBIO DE ACÉITE ")

        self.assertTrue(created)
        self.assertFalse(second_created)
        self.assertFalse(third_created)
        self.assertEqual({first.pk, second.pk, third.pk}, {first.pk})
        self.assertEqual(Service.objects.count(), 1)
        self.assertEqual(str(first.price), "120.00")
        self.assertEqual(first.name, "Cambio de Aceite")

    def test_blank_name_is_rejected(self):
        with self.assertRaises(ValidationError):
            get_or_create_service_by_name("   ")

    def test_create_service_rejects_normalized_duplicate(self):
        create_service("Alineación", price="80")

        with self.assertRaises(ValidationError):
            create_service("alineacion")

    def test_invalid_prices_are_rejected(self):
        for price in ["abc", "NaN", "Infinity", "-1"]:
            with self.assertRaises(ValidationError) as ctx:
                create_service("Pulido", price=price)
            self.assertIn("price", ctx.exception.detail)
            with self.assertRaises(ValidationError):
                get_or_create_service_by_name("Pulido", default_price=price)

        self.assertFalse(Service.objects.exists())

    def test_search_matches_normalized_substring_and_hides_inactive(self):
        create_service("Balanceo de llantas")
        create_service("Lavado", active=False)

        self.assertEqual([service.name for service in search_services("LLANTAS")], ["Balanceo de llantas"])
        self.assertEqual([service.name for service in search_services("lav")], [])
        self.assertEqual([service.name for service in search_services("lav", include_inactive=True)], ["Lavado"])


class ClientResolverTests(TestCase):
    def test_client_is_found_by_phone(self):
        existing = create_client("Juan Pérez", "70000001")

        client, created = get_or_create_client("Otro Nombre", " 70000001 ")

        self.assertFalse(created)
        self.assertEqual(client.pk, existing.pk)
        self.assertEqual(client.name, "Juan Pérez")

    def test_client_without_phone_is_always_created(self):
        first, _ = get_or_create_client("Sin Teléfono", "")
        second, created = get_or_create_client("Sin Teléfono", "")

        self.assertTrue(created)
        self.assertNotEqual(first.pk, second.pk)

    def test_duplicate_phone_is_rejected(self):
        create_client("Ana", "70000002")

        with self.assertRaises(ValidationError) as ctx:
            create_client("Ana Duplicada", "70000002")

        self.assertIn("phone", ctx.exception.detail)


class CatalogApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user = get_user_model().objects.create_user(username="empleado", email="empleado@taller.bo", password="pass1234")
        AccessEntry.objects.create(email="empleado@taller.bo", role=AccessEntry.Role.EMPLOYEE)
        self.client.force_authenticate(user=user)

    def test_create_client_and_lookup_by_phone(self):
        response = self.client.post("/api/v1/clients/", {"name": " Luis ", "phone": "70000003"}, format="json")
        lookup = self.client.get("/api/v1/clients/by-phone/?phone=70000003")
        missing = self.client.get("/api/v1/clients/by-phone/?phone=79999999")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["name"], "Luis")
        self.assertEqual(lookup.status_code, 200)
        self.assertEqual(lookup.json()["id"], response.json()["id"])
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["code"], "not_found")

    def test_duplicate_client_phone_returns_validation_error(self):
        Client.objects.create(name="Luis", phone="70000004")

        response = self.client.post("/api/v1/clients/", {"name": "Luis 2", "phone": "70000004"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("phone", response.json()["errors"])

    def test_client_search(self):
        Client.objects.create(name="Carla Rojas", phone="70000005")
        Client.objects.create(name="Pedro Vaca", phone="70000006")

        response = self.client.get("/api/v1/clients/?search=rojas")

        self.assertEqual([item["name"] for item in response.json()["results"]], ["Carla Rojas"])

    def test_resolve_endpoint_creates_once(self):
        first = self.client.post("/api/v1/services/resolve/", {"name": "Cambio de Aceite", "default_price": "150"}, format="json")
        second = self.client.post("/api/v1/services/resolve/", {"name": "cambio de aceite"}, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertTrue(first.json()["created"])
        self.assertEqual(second.status_code, 200)
        self.assertFalse(second.json()["created"])
        self.assertEqual(first.json()["service"]["id"], second.json()["service"]["id"])

    def test_service_create_rejects_normalized_duplicate(self):
        Service.objects.create(name="Pintura")

        response = self.client.post("/api/v1/services/", {"name": "PINTURA "}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("name", response.json()["errors"])

    def test_service_list_search(self):
        Service.objects.create(name="Cambio de Aceite")
        Service.objects.create(name="Alineación")

        response = self.client.get("/api/v1/services/?search=alineacion")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["name"] for item in response.json()["results"]], ["Alineación"])


class FindCatalogDuplicatesCommandTests(TestCase):
    def setUp(self):
        self.keeper = Client.objects.create(name="Rosa", phone="700-00007")
        self.duplicate = Client.objects.create(name="Rosa M.", phone="70000007")
        self.service = Service.objects.create(name="Lavado")
        self.service_duplicate = Service.objects.create(name="Lavado.")
        later = timezone.now() + timedelta(minutes=1)
        Client.objects.filter(pk=self.duplicate.pk).update(created_at=later)
        Service.objects.filter(pk=self.service_duplicate.pk).update(created_at=later)
        self.order = Order.objects.create(
            client=self.duplicate, service=self.service_duplicate, total="100.00", balance="100.00"
        )

    def test_dry_run_only_reports(self):
        out = StringIO()

        call_command("find_catalog_duplicates", stdout=out)

        self.assertIn("1 duplicate client group(s) and 1 duplicate service group(s)", out.getvalue())
        self.assertEqual(Client.objects.count(), 2)

    def test_apply_moves_orders_to_oldest_record(self):
        out = StringIO()

        call_command("find_catalog_duplicates", "--apply", stdout=out)

        self.order.refresh_from_db()
        self.assertEqual(self.order.client_id, self.keeper.pk)
        self.assertEqual(self.order.service_id, self.service.pk)
        self.assertFalse(Client.objects.filter(pk=self.duplicate.pk).exists())
        self.assertFalse(Service.objects.filter(pk=self.service_duplicate.pk).exists())
