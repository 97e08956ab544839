import json
import uuid
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import APIException

from catalog.models import Client, Service
from catalog.services import get_or_create_client, get_or_create_service_by_name
from journal.models import JournalEntry
from orders.documents import DocumentBundle
from orders.models import Order, Payment
from orders.services import derive_balance_and_status, recalc_order_from_payments


class Command(BaseCommand):
    help = (
        "Import a JSON export of the clients, services, orders, payments and journal collections. "
        "Payments are stored as detached records and every imported order is then recalculated from them."
    )

    def add_arguments(self, parser):
        parser.add_argument("path", help="JSON file with one key per collection.")
        parser.add_argument("--dry-run", action="store_true", help="Parse and report without writing.")

    def handle(self, *args, **options):
        path = Path(options["path"])
        try:
            export = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise CommandError(f"Cannot read {path}: {exc}")
        if not isinstance(export, dict):
            raise CommandError("The export must be a JSON object keyed by collection name.")

        bundle = DocumentBundle.from_export(export)
        for reason in bundle.skipped:
            self.stdout.write(self.style.WARNING(f"skipped {reason}"))

        if options["dry_run"]:
            self.stdout.write(
                f"Parsed {len(bundle.clients)} client(s), {len(bundle.services)} service(s), "
                f"{len(bundle.orders)} order(s), {len(bundle.payments)} payment(s), "
                f"{len(bundle.journal)} journal entr(y/ies)."
            )
            return

        with transaction.atomic():
            summary = self._import(bundle)

        style = self.style.SUCCESS if not summary["failed"] else self.style.WARNING
        self.stdout.write(
            style(
                f"Imported {summary['clients']} client(s), {summary['services']} service(s), "
                f"{summary['orders']} order(s), {summary['payments']} payment(s), {summary['journal']} journal entr(y/ies); "
                f"{summary['failed']} order(s) could not be reconciled."
            )
        )

    def _import(self, bundle):
        summary = {"clients": 0, "services": 0, "orders": 0, "payments": 0, "journal": 0, "failed": 0}

        clients = {}
        for record in bundle.clients:
            client, created = get_or_create_client(record.name, record.phone)
            clients[record.id] = client
            summary["clients"] += int(created)

        services = {}
        for record in bundle.services:
            service, created = get_or_create_service_by_name(record.name, default_price=record.price)
            if created and (record.description or not record.active):
                service.description = record.description
                service.active = record.active
                service.save()
            services[record.id] = service
            summary["services"] += int(created)

        orders = {}
        for record in bundle.orders:
            client = clients.get(record.client_id) or Client.objects.filter(pk=_as_uuid(record.client_id)).first()
            service = services.get(record.service_id) or Service.objects.filter(pk=_as_uuid(record.service_id)).first()
            if client is None or service is None:
                self.stdout.write(self.style.WARNING(f"skipped orders/{record.id}: unknown client or service"))
                continue
            # Deposit, balance and status are rebuilt from the payments below.
            balance, status = derive_balance_and_status(record.total, 0, record.status)
            order = Order.objects.create(
                client=client,
                service=service,
                total=record.total,
                deposit=0,
                balance=balance,
                status=status,
                quantity=record.quantity,
                details=record.details,
                start_date=record.start_date or timezone.localdate(),
                expected_end_date=record.expected_end_date,
            )
            orders[record.id] = (order, record)
            summary["orders"] += 1

        for record in bundle.payments:
            entry = orders.get(record.order_id)
            Payment.objects.create(
                order=entry[0] if entry else None,
                amount=record.amount,
                payment_method=record.payment_method,
                notes=record.notes,
                **({"date": record.date} if record.date else {}),
            )
            summary["payments"] += 1

        for record in bundle.journal:
            JournalEntry.objects.create(
                type=record.type,
                amount=record.amount,
                concept=record.concept,
                notes=record.notes,
                **({"date": record.date} if record.date else {}),
            )
            summary["journal"] += 1

        for document_id, (order, record) in orders.items():
            try:
                order = recalc_order_from_payments(order.pk)
            except APIException as exc:
                summary["failed"] += 1
                self.stdout.write(self.style.ERROR(f"- orders/{document_id}: {exc.detail}"))
                continue
            if order.deposit != record.deposit:
                self.stdout.write(
                    self.style.WARNING(
                        f"- orders/{document_id}: document deposit {record.deposit} differs from payments {order.deposit}"
                    )
                )
        return summary


def _as_uuid(value):
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None
