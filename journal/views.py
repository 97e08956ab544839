from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework import mixins, status, viewsets
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from common.renderers import csv_response, wants_csv
from journal.models import JournalDayClosure
from journal.serializers import DailySummarySerializer, JournalDayClosureSerializer, JournalEntrySerializer, TotalsSerializer
from journal.services import add_entry, close_day, daily_summary, list_entries


def _parse_day(params, name, default=None):
    raw_value = params.get(name)
    if not raw_value:
        return default
    day = parse_date(str(raw_value))
    if day is None:
        raise ValidationError({name: "Use the YYYY-MM-DD format."})
    return day


class JournalEntryViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, mixins.CreateModelMixin, viewsets.GenericViewSet):
    serializer_class = JournalEntrySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "journal.view",
        "retrieve": "journal.view",
        "create": "journal.manage",
    }

    def get_queryset(self):
        qs, self.totals = list_entries(
            date_from=_parse_day(self.request.query_params, "date_from"),
            date_to=_parse_day(self.request.query_params, "date_to"),
        )
        entry_type = self.request.query_params.get("type")
        if entry_type:
            qs = qs.filter(type=entry_type)
        return qs

    def list(self, request, *args, **kwargs):
        queryset = self.get_queryset()
        if wants_csv(request):
            rows = [
                {
                    "date": timezone.localtime(entry.date).isoformat(),
                    "type": entry.type,
                    "concept": entry.concept,
                    "amount": entry.amount,
                    "notes": entry.notes,
                }
                for entry in queryset
            ]
            return csv_response("journal.csv", rows, fieldnames=["date", "type", "concept", "amount", "notes"])

        totals = TotalsSerializer(self.totals).data
        page = self.paginate_queryset(queryset)
        if page is not None:
            response = self.get_paginated_response(self.get_serializer(page, many=True).data)
            response.data["totals"] = totals
            return response
        return Response({"results": self.get_serializer(queryset, many=True).data, "totals": totals})

    def perform_create(self, serializer):
        data = dict(serializer.validated_data)
        entry = add_entry(data.pop("type"), **data)
        serializer.instance = entry
        create_audit_log_from_request(
            self.request,
            action="journal.create",
            entity="journal",
            entity_id=entry.id,
            after_snapshot=JournalEntrySerializer(entry).data,
        )


class DailySummaryView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "journal.view"}

    def get(self, request):
        day = _parse_day(request.query_params, "date", default=timezone.localdate())
        summary = daily_summary(day)
        if wants_csv(request):
            rows = [{"side": "ingreso", **line} for line in summary["ingresos"]]
            rows += [{"side": "egreso", **line} for line in summary["egresos"]]
            return csv_response(
                f"journal_{day.isoformat()}.csv",
                rows,
                fieldnames=["side", "source", "date", "concept", "order_name", "payment_method", "amount"],
            )
        return Response(DailySummarySerializer(summary).data)


class JournalDayClosureViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, mixins.CreateModelMixin, viewsets.GenericViewSet):
    serializer_class = JournalDayClosureSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "journal.view",
        "retrieve": "journal.view",
        "create": "journal.manage",
    }

    def get_queryset(self):
        qs = JournalDayClosure.objects.select_related("closed_by")
        day = _parse_day(self.request.query_params, "date")
        if day:
            qs = qs.filter(date=day)
        return qs.order_by("-date", "-created_at")

    def create(self, request, *args, **kwargs):
        day = _parse_day(request.data, "date", default=timezone.localdate())
        closure = close_day(day, closed_by=request.user)
        payload = JournalDayClosureSerializer(closure).data
        create_audit_log_from_request(
            request,
            action="journal.close_day",
            entity="journal_days",
            entity_id=closure.id,
            after_snapshot={"date": day.isoformat(), "totals": closure.totals},
        )
        return Response(payload, status=status.HTTP_201_CREATED)
