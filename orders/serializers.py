from decimal import Decimal

from rest_framework import serializers

from orders.models import Order, Payment
from orders.services import create_order_with_service_resolution, update_order

MONEY_FIELD = {"max_digits": 12, "decimal_places": 2}


class OrderSerializer(serializers.ModelSerializer):
    client_name = serializers.CharField(source="client.name", read_only=True)
    client_phone = serializers.CharField(source="client.phone", read_only=True)
    service_name = serializers.CharField(source="service.name", read_only=True)
    display_name = serializers.CharField(read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "client",
            "client_name",
            "client_phone",
            "service",
            "service_name",
            "display_name",
            "start_date",
            "expected_end_date",
            "details",
            "total",
            "deposit",
            "balance",
            "status",
            "quantity",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class OrderCreateSerializer(serializers.Serializer):
    client_id = serializers.UUIDField(required=False, allow_null=True)
    client_name = serializers.CharField(required=False, allow_blank=True, max_length=255)
    client_phone = serializers.CharField(required=False, allow_blank=True, max_length=64)
    service_id = serializers.UUIDField(required=False, allow_null=True)
    service_name = serializers.CharField(required=False, allow_blank=True, max_length=255)
    service_price = serializers.DecimalField(required=False, allow_null=True, min_value=Decimal("0"), **MONEY_FIELD)
    start_date = serializers.DateField(required=False, allow_null=True)
    expected_end_date = serializers.DateField(required=False, allow_null=True)
    details = serializers.CharField(required=False, allow_blank=True, default="")
    total = serializers.DecimalField(min_value=Decimal("0"), **MONEY_FIELD)
    deposit = serializers.DecimalField(required=False, min_value=Decimal("0"), default=Decimal("0.00"), **MONEY_FIELD)
    quantity = serializers.IntegerField(required=False, min_value=1, default=1)
    status = serializers.ChoiceField(choices=Order.Status.choices, required=False)
    payment_method = serializers.ChoiceField(choices=Payment.Method.choices, required=False, default=Payment.Method.CASH)

    def validate(self, attrs):
        if not attrs.get("client_id") and not (
            (attrs.get("client_name") or "").strip() and (attrs.get("client_phone") or "").strip()
        ):
            raise serializers.ValidationError(
                {"client_id": "Either client_id or client_name and client_phone are required."}
            )
        if not attrs.get("service_id") and not (attrs.get("service_name") or "").strip():
            raise serializers.ValidationError({"service_id": "Either service_id or service_name is required."})
        if attrs.get("deposit", Decimal("0")) > attrs["total"]:
            raise serializers.ValidationError({"deposit": "Deposit cannot exceed the total."})
        return attrs

    def create(self, validated_data):
        return create_order_with_service_resolution(validated_data)

    def to_representation(self, instance):
        return OrderSerializer(instance, context=self.context).data


class OrderUpdateSerializer(serializers.Serializer):
    client_id = serializers.UUIDField(required=False)
    service_id = serializers.UUIDField(required=False)
    service_name = serializers.CharField(required=False, allow_blank=False, max_length=255)
    start_date = serializers.DateField(required=False)
    expected_end_date = serializers.DateField(required=False, allow_null=True)
    details = serializers.CharField(required=False, allow_blank=True)
    total = serializers.DecimalField(required=False, min_value=Decimal("0"), **MONEY_FIELD)
    quantity = serializers.IntegerField(required=False, min_value=1)

    def update(self, instance, validated_data):
        return update_order(instance.pk, validated_data)

    def to_representation(self, instance):
        return OrderSerializer(instance, context=self.context).data


class OrderStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.Status.choices)


class PaymentSerializer(serializers.ModelSerializer):
    order_name = serializers.CharField(source="order.display_name", read_only=True, default="")
    client_name = serializers.CharField(source="order.client.name", read_only=True, default="")
    concept = serializers.CharField(read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "order",
            "order_name",
            "client_name",
            "amount",
            "payment_method",
            "notes",
            "concept",
            "date",
            "created_at",
        ]
        read_only_fields = fields


class PaymentRegisterSerializer(serializers.Serializer):
    amount = serializers.DecimalField(min_value=Decimal("0.01"), **MONEY_FIELD)
    payment_method = serializers.ChoiceField(choices=Payment.Method.choices, default=Payment.Method.CASH)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    date = serializers.DateTimeField(required=False, allow_null=True)


class PaymentCreateSerializer(PaymentRegisterSerializer):
    order = serializers.UUIDField()
