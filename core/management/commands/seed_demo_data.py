from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.utils import timezone

from catalog.services import get_or_create_client, get_or_create_service_by_name
from core.models import AccessEntry
from journal.models import JournalEntry
from journal.services import add_entry
from orders.models import Order
from orders.services import create_order_with_service_resolution, register_payment

SERVICES = [
    ("Cambio de Aceite", Decimal("150.00")),
    ("Alineación y Balanceo", Decimal("120.00")),
    ("Revisión de Frenos", Decimal("200.00")),
    ("Diagnóstico Electrónico", Decimal("90.00")),
]

CLIENTS = [
    ("María Quispe", "70010001"),
    ("Juan Mamani", "70010002"),
    ("Ana Flores", "70010003"),
]


class Command(BaseCommand):
    help = "Seed demo users, access entries, catalog, orders and payments for local development."

    def _user(self, username, email, password, display_name, role, superuser=False):
        User = get_user_model()
        user, created = User.objects.get_or_create(
            username=username,
            defaults={
                "email": email,
                "first_name": display_name,
                "is_staff": superuser,
                "is_superuser": superuser,
                "is_active": True,
            },
        )
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])

        AccessEntry.objects.update_or_create(
            email=email,
            defaults={"role": role, "active": True, "display_name": display_name},
        )
        return user, created

    def handle(self, *args, **options):
        _, admin_created = self._user(
            "admin", "admin@example.com", "admin1234", "Administrador", AccessEntry.Role.ADMIN, superuser=True
        )
        _, employee_created = self._user(
            "empleado", "empleado@example.com", "empleado1234", "Empleado", AccessEntry.Role.EMPLOYEE
        )

        services = [get_or_create_service_by_name(name, default_price=price)[0] for name, price in SERVICES]
        clients = [get_or_create_client(name, phone)[0] for name, phone in CLIENTS]

        orders_created = 0
        if not Order.objects.exists():
            today = timezone.localdate()
            plans = [
                (clients[0], services[0], Decimal("150.00"), Decimal("150.00"), []),
                (clients[1], services[2], Decimal("480.00"), Decimal("100.00"), [Decimal("80.00")]),
                (clients[2], services[1], Decimal("240.00"), Decimal("0.00"), []),
                (clients[0], services[3], Decimal("90.00"), Decimal("0.00"), [Decimal("40.00"), Decimal("50.00")]),
            ]
            for index, (client, service, total, deposit, payments) in enumerate(plans):
                order = create_order_with_service_resolution(
                    {
                        "client_id": client.id,
                        "service_id": service.id,
                        "total": total,
                        "deposit": deposit,
                        "start_date": today - timedelta(days=7 * index),
                        "expected_end_date": today + timedelta(days=3),
                        "details": f"Vehículo demo {index + 1}",
                    }
                )
                for amount in payments:
                    register_payment(order.id, amount, "qr", notes="")
                orders_created += 1

            add_entry(JournalEntry.Type.INCOME, Decimal("35.00"), "Venta de repuestos")
            add_entry(JournalEntry.Type.EXPENSE, Decimal("60.00"), "Compra de insumos")

        self.stdout.write(
            self.style.SUCCESS(
                "Demo data ready "
                f"(admin created: {admin_created}, employee created: {employee_created}, "
                f"services: {len(services)}, clients: {len(clients)}, orders created: {orders_created})."
            )
        )
        if admin_created:
            self.stdout.write("Admin credentials: admin / admin1234")
        if employee_created:
            self.stdout.write("Employee credentials: empleado / empleado1234")
