import csv
import logging

from django.db import connections
from django.http import HttpResponse
from django.utils.dateparse import parse_datetime
from rest_framework import viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework_simplejwt.views import TokenObtainPairView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from core.models import AccessEntry, AuditLog
from core.serializers import AccessEntrySerializer, AuditLogSerializer, EmailOrUsernameTokenObtainPairSerializer

logger = logging.getLogger(__name__)


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class AccessEntryViewSet(viewsets.ModelViewSet):
    queryset = AccessEntry.objects.all()
    serializer_class = AccessEntrySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        action_name: "access.manage"
        for action_name in ["list", "retrieve", "create", "update", "partial_update", "destroy"]
    }
    lookup_value_regex = "[^/]+"

    def _snapshot(self, instance):
        data = dict(self.get_serializer(instance).data)
        data.pop("has_login", None)
        return data

    def perform_create(self, serializer):
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="access.create",
            entity="access",
            entity_id=instance.email,
            after_snapshot=self._snapshot(instance),
        )

    def perform_update(self, serializer):
        before_snapshot = self._snapshot(serializer.instance)
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="access.update",
            entity="access",
            entity_id=instance.email,
            before_snapshot=before_snapshot,
            after_snapshot=self._snapshot(instance),
        )

    def perform_destroy(self, instance):
        create_audit_log_from_request(
            self.request,
            action="access.delete",
            entity="access",
            entity_id=instance.email,
            before_snapshot=self._snapshot(instance),
        )
        instance.delete()


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "audit.view", "retrieve": "audit.view", "export": "audit.view"}

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")

        start_date = self.request.query_params.get("start_date")
        end_date = self.request.query_params.get("end_date")
        actor_id = self.request.query_params.get("actor_id")
        action_name = self.request.query_params.get("action")
        entity = self.request.query_params.get("entity")
        entity_id = self.request.query_params.get("entity_id")

        if start_date:
            dt = parse_datetime(start_date)
            if dt:
                qs = qs.filter(created_at__gte=dt)
        if end_date:
            dt = parse_datetime(end_date)
            if dt:
                qs = qs.filter(created_at__lte=dt)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if action_name:
            qs = qs.filter(action=action_name)
        if entity:
            qs = qs.filter(entity=entity)
        if entity_id:
            qs = qs.filter(entity_id=entity_id)

        return qs

    @action(detail=False, methods=["get"], url_path="export")
    def export(self, request):
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="audit-logs.csv"'

        writer = csv.writer(response)
        writer.writerow(["id", "created_at", "actor", "action", "entity", "entity_id", "request_id"])
        for log in self.get_queryset():
            writer.writerow(
                [
                    log.id,
                    log.created_at.isoformat(),
                    getattr(log.actor, "username", ""),
                    log.action,
                    log.entity,
                    log.entity_id,
                    log.request_id,
                ]
            )
        return response


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=503,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
