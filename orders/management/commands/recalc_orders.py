from django.core.management.base import BaseCommand, CommandError
from rest_framework.exceptions import APIException

from orders.models import Order
from orders.services import recalc_order_from_payments


class Command(BaseCommand):
    help = "Rebuild deposit, balance and status of orders from their payments."

    def add_arguments(self, parser):
        parser.add_argument("--order", dest="order_id", help="Only recalculate this order id.")

    def handle(self, *args, **options):
        order_id = options.get("order_id")
        qs = Order.objects.order_by("created_at")
        if order_id:
            qs = qs.filter(pk=order_id)
            if not qs.exists():
                raise CommandError(f"Order {order_id} was not found.")

        checked = repaired = failed = 0
        for before in qs.iterator():
            checked += 1
            try:
                after = recalc_order_from_payments(before.pk)
            except APIException as exc:
                failed += 1
                self.stdout.write(self.style.ERROR(f"- {before.pk}: {exc.detail}"))
                continue
            if (before.deposit, before.balance, before.status) != (after.deposit, after.balance, after.status):
                repaired += 1
                self.stdout.write(
                    f"- {before.pk}: deposit {before.deposit} -> {after.deposit}, "
                    f"balance {before.balance} -> {after.balance}, status {before.status} -> {after.status}"
                )

        style = self.style.SUCCESS if not failed else self.style.WARNING
        self.stdout.write(style(f"Checked {checked} order(s); repaired {repaired}; failed {failed}."))
