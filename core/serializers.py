import logging

from django.contrib.auth import get_user_model, password_validation
from rest_framework import serializers
from rest_framework.exceptions import AuthenticationFailed
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from core.models import AccessEntry, AuditLog, normalize_email

User = get_user_model()
logger = logging.getLogger("security.authorization")


class EmailOrUsernameTokenObtainPairSerializer(TokenObtainPairSerializer):
    """Password sign-in that only admits users present and active in the access list."""

    default_error_messages = {
        **TokenObtainPairSerializer.default_error_messages,
        "no_access": "This account is not authorized to use the dashboard.",
    }

    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        entry = AccessEntry.objects.active_for_email(user.email)
        token["role"] = AccessEntry.Role.ADMIN if user.is_superuser else getattr(entry, "role", None)
        token["display_name"] = (entry.display_name if entry else "") or user.get_full_name()
        token["email"] = user.email
        return token

    def validate(self, attrs):
        username = attrs.get("username", "")
        if username and "@" in username:
            try:
                user = User.objects.get(email__iexact=username)
                attrs["username"] = user.get_username()
            except User.DoesNotExist:
                pass
        data = super().validate(attrs)

        if not self.user.is_superuser and AccessEntry.objects.active_for_email(self.user.email) is None:
            logger.warning(
                "sign_in_rejected reason=not_in_access_list user=%s",
                self.user.get_username(),
            )
            raise AuthenticationFailed(self.error_messages["no_access"], "no_access")
        return data


class AccessEntrySerializer(serializers.ModelSerializer):
    """Access-list entry; an optional password creates or resets the matching login."""

    password = serializers.CharField(write_only=True, required=False, allow_blank=False)
    has_login = serializers.SerializerMethodField()

    class Meta:
        model = AccessEntry
        fields = ["email", "role", "active", "display_name", "password", "has_login", "created_at", "updated_at"]
        read_only_fields = ["created_at", "updated_at"]

    def get_has_login(self, obj):
        return User.objects.filter(email__iexact=obj.email).exists()

    def validate_email(self, value):
        normalized = normalize_email(value)
        if self.instance is not None and normalized != self.instance.email:
            raise serializers.ValidationError("The email of an access entry cannot be changed.")
        if self.instance is None and AccessEntry.objects.filter(email=normalized).exists():
            raise serializers.ValidationError("This email is already in the access list.")
        return normalized

    def validate_password(self, value):
        password_validation.validate_password(value)
        return value

    def _sync_login(self, entry, password):
        if not password:
            return
        user = User.objects.filter(email__iexact=entry.email).first()
        if user is None:
            user = User(username=entry.email, email=entry.email, first_name=entry.display_name[:150])
        user.set_password(password)
        user.save()

    def create(self, validated_data):
        password = validated_data.pop("password", None)
        entry = super().create(validated_data)
        self._sync_login(entry, password)
        return entry

    def update(self, instance, validated_data):
        password = validated_data.pop("password", None)
        entry = super().update(instance, validated_data)
        self._sync_login(entry, password)
        return entry


class AuditLogSerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True)

    class Meta:
        model = AuditLog
        fields = [
            "id",
            "actor",
            "actor_username",
            "action",
            "entity",
            "entity_id",
            "before_snapshot",
            "after_snapshot",
            "request_id",
            "created_at",
        ]
        read_only_fields = fields
