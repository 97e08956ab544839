from rest_framework import serializers

from catalog.models import Client, Service, normalize_service_name


class ClientSerializer(serializers.ModelSerializer):
    class Meta:
        model = Client
        fields = ["id", "name", "phone", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]
        # Phone uniqueness is checked in validate_phone; the conditional constraint is the backstop.
        validators = []

    def validate_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Client name is required.")
        return value

    def validate_phone(self, value):
        value = (value or "").strip()
        if not value:
            return value
        qs = Client.objects.filter(phone=value)
        if self.instance is not None:
            qs = qs.exclude(pk=self.instance.pk)
        if qs.exists():
            raise serializers.ValidationError("A client with this phone already exists.")
        return value


class ServiceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Service
        fields = ["id", "name", "normalized_name", "price", "description", "active", "created_at", "updated_at"]
        read_only_fields = ["id", "normalized_name", "created_at", "updated_at"]

    def validate_name(self, value):
        normalized = normalize_service_name(value)
        if not normalized:
            raise serializers.ValidationError("Service name is required.")
        qs = Service.objects.filter(normalized_name=normalized)
        if self.instance is not None:
            qs = qs.exclude(pk=self.instance.pk)
        if qs.exists():
            raise serializers.ValidationError("A service with this name already exists.")
        return value.strip()

    def validate_price(self, value):
        if value is not None and value < 0:
            raise serializers.ValidationError("Price cannot be negative.")
        return value


class ServiceResolveSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    default_price = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
