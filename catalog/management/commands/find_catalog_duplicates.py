import re
from collections import defaultdict

from django.apps import apps
from django.core.management.base import BaseCommand
from django.db import transaction

from catalog.models import Client, Service
from orders.models import Order


def phone_key(phone):
    return re.sub(r"\D", "", phone or "")


def service_key(normalized_name):
    return re.sub(r"[\W_]+", "", normalized_name or "")


class Command(BaseCommand):
    help = (
        "Detect clients whose phones only differ in formatting and services whose names only differ "
        "in spacing or punctuation. With --apply the oldest record of each group is kept and the "
        "orders of the others are moved to it."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--apply",
            action="store_true",
            help="Merge each duplicate group into its oldest record.",
        )

    def _groups(self, records, key):
        grouped = defaultdict(list)
        for record in records:
            value = key(record)
            if value:
                grouped[value].append(record)
        return {value: group for value, group in grouped.items() if len(group) > 1}

    def _merge(self, groups, order_field):
        moved = removed = 0
        for group in groups.values():
            keeper, *duplicates = group
            for duplicate in duplicates:
                moved += Order.objects.filter(**{order_field: duplicate}).update(**{order_field: keeper})
                duplicate.delete()
                removed += 1
        return moved, removed

    def handle(self, *args, **options):
        client_groups = self._groups(
            Client.objects.exclude(phone="").order_by("created_at", "id"),
            lambda client: phone_key(client.phone),
        )
        service_groups = self._groups(
            Service.objects.order_by("created_at", "id"),
            lambda service: service_key(service.normalized_name),
        )

        if not client_groups and not service_groups:
            self.stdout.write(self.style.SUCCESS("No duplicate clients or services found."))
            return

        self.stdout.write(
            self.style.WARNING(
                f"Found {len(client_groups)} duplicate client group(s) and {len(service_groups)} duplicate service group(s)."
            )
        )
        for digits, group in client_groups.items():
            self.stdout.write(f"- phone {digits}: " + ", ".join(str(client) for client in group))
        for key, group in service_groups.items():
            self.stdout.write(f"- service {key}: " + ", ".join(service.name for service in group))

        if not options["apply"]:
            self.stdout.write(self.style.WARNING("Dry run only. Re-run with --apply to merge duplicates."))
            return

        with transaction.atomic():
            clients_moved, clients_removed = self._merge(client_groups, "client")
            services_moved, services_removed = self._merge(service_groups, "service")
        # Bulk updates bypass the model signals that drop cached listings.
        apps.get_app_config("common").collection_cache.invalidate("orders")

        self.stdout.write(
            self.style.SUCCESS(
                f"Merged {clients_removed} client(s) and {services_removed} service(s); "
                f"moved {clients_moved + services_moved} order(s)."
            )
        )
