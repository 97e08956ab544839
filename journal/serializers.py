from decimal import Decimal

from rest_framework import serializers

from journal.models import JournalDayClosure, JournalEntry


class JournalEntrySerializer(serializers.ModelSerializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    date = serializers.DateTimeField(required=False)

    class Meta:
        model = JournalEntry
        fields = ["id", "type", "amount", "concept", "notes", "date", "created_at"]
        read_only_fields = ["id", "created_at"]

    def validate_concept(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Concept is required.")
        return value


class SummaryLineSerializer(serializers.Serializer):
    source = serializers.CharField(required=False)
    payment_id = serializers.UUIDField(required=False, allow_null=True)
    order_id = serializers.UUIDField(required=False, allow_null=True)
    order_name = serializers.CharField(required=False)
    journal_id = serializers.UUIDField(required=False, allow_null=True)
    payment_method = serializers.CharField(required=False)
    concept = serializers.CharField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    date = serializers.DateTimeField()


class TotalsSerializer(serializers.Serializer):
    ingresos = serializers.DecimalField(max_digits=14, decimal_places=2)
    egresos = serializers.DecimalField(max_digits=14, decimal_places=2)
    neto = serializers.DecimalField(max_digits=14, decimal_places=2)


class DailySummarySerializer(serializers.Serializer):
    date = serializers.DateField()
    ingresos = SummaryLineSerializer(many=True)
    egresos = SummaryLineSerializer(many=True)
    totals = TotalsSerializer()


class JournalDayClosureSerializer(serializers.ModelSerializer):
    closed_by_username = serializers.CharField(source="closed_by.username", read_only=True, default=None)

    class Meta:
        model = JournalDayClosure
        fields = ["id", "date", "ingresos", "egresos", "totals", "closed_by", "closed_by_username", "created_at"]
        read_only_fields = ["id", "ingresos", "egresos", "totals", "closed_by", "created_at"]
