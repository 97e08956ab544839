import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="JournalEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("type", models.CharField(choices=[("ingreso", "Ingreso"), ("egreso", "Egreso")], max_length=16)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("concept", models.CharField(max_length=255)),
                ("notes", models.TextField(blank=True, default="")),
                ("date", models.DateTimeField(default=django.utils.timezone.now)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "journal",
                "ordering": ["-date"],
                "indexes": [
                    models.Index(fields=["date"], name="journal_date_idx"),
                    models.Index(fields=["type", "date"], name="journal_type_date_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="journal_amount_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="JournalDayClosure",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("date", models.DateField()),
                ("ingresos", models.JSONField(default=list)),
                ("egresos", models.JSONField(default=list)),
                ("totals", models.JSONField(default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "closed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "db_table": "journal_days",
                "ordering": ["-date", "-created_at"],
                "indexes": [
                    models.Index(fields=["date", "created_at"], name="journal_day_date_idx"),
                ],
            },
        ),
    ]
