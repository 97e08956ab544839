from django.db.models import Q
from django.utils.dateparse import parse_date
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from common.renderers import csv_response, wants_csv
from orders.models import Order, Payment
from orders.serializers import (
    OrderCreateSerializer,
    OrderSerializer,
    OrderStatusSerializer,
    OrderUpdateSerializer,
    PaymentCreateSerializer,
    PaymentRegisterSerializer,
    PaymentSerializer,
)
from orders.services import (
    delete_order,
    pending_orders,
    recalc_order_from_payments,
    register_payment,
    register_payment_only,
    set_order_status,
)


def _date_filter(request, field):
    value = request.query_params.get(field)
    if not value:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError({field: "Use the YYYY-MM-DD format."})
    return parsed


class AuditedMutationMixin:
    audit_entity = None

    def _snapshot(self, instance):
        return OrderSerializer(instance).data if isinstance(instance, Order) else PaymentSerializer(instance).data

    def _audit(self, *, action, instance=None, entity_id=None, before_snapshot=None, after_snapshot=None, entity=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=entity or self.audit_entity,
            entity_id=entity_id if entity_id is not None else getattr(instance, "pk", None),
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def _register_and_audit(self, register, order_id, data, action):
        payment_id = register(
            order_id,
            data["amount"],
            method=data.get("payment_method"),
            notes=data.get("notes", ""),
            date=data.get("date"),
        )
        payment = Payment.objects.select_related("order__service", "order__client").get(pk=payment_id)
        payload = PaymentSerializer(payment).data
        self._audit(action=action, entity="payment", instance=payment, after_snapshot=payload)
        return payment, payload


class OrderViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Order.objects.select_related("client", "service")
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "orders.view",
        "retrieve": "orders.view",
        "pending": "orders.view",
        "create": "orders.manage",
        "update": "orders.manage",
        "partial_update": "orders.manage",
        "change_status": "orders.manage",
        "destroy": "orders.delete",
        "recalc": "orders.recalc",
        "payments": "payments.view",
        "add_payment": "payments.register",
    }
    audit_entity = "order"

    def get_serializer_class(self):
        if self.action == "create":
            return OrderCreateSerializer
        if self.action in {"update", "partial_update"}:
            return OrderUpdateSerializer
        return OrderSerializer

    def get_queryset(self):
        qs = super().get_queryset().order_by("-start_date", "-created_at")
        params = self.request.query_params

        status_filter = params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        client_id = params.get("client")
        if client_id:
            qs = qs.filter(client_id=client_id)
        search = (params.get("search") or "").strip()
        if search:
            qs = qs.filter(
                Q(client__name__icontains=search)
                | Q(client__phone__icontains=search)
                | Q(service__name__icontains=search)
                | Q(details__icontains=search)
            )
        date_from = _date_filter(self.request, "date_from")
        date_to = _date_filter(self.request, "date_to")
        if date_from:
            qs = qs.filter(start_date__gte=date_from)
        if date_to:
            qs = qs.filter(start_date__lte=date_to)
        return qs

    def perform_create(self, serializer):
        order = serializer.save()
        self._audit(action="order.create", instance=order, after_snapshot=self._snapshot(order))

    def perform_update(self, serializer):
        before_snapshot = self._snapshot(serializer.instance)
        order = serializer.save()
        self._audit(
            action="order.update",
            instance=order,
            before_snapshot=before_snapshot,
            after_snapshot=self._snapshot(order),
        )

    def destroy(self, request, *args, **kwargs):
        order = self.get_object()
        before_snapshot = self._snapshot(order)
        detached = delete_order(order.pk)
        self._audit(
            action="order.delete",
            entity_id=before_snapshot["id"],
            before_snapshot={**before_snapshot, "payments_detached": detached},
        )
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["get"], url_path="pending")
    def pending(self, request):
        qs = pending_orders()
        page = self.paginate_queryset(qs)
        if page is not None:
            return self.get_paginated_response(OrderSerializer(page, many=True).data)
        return Response(OrderSerializer(qs, many=True).data)

    @action(detail=True, methods=["post"], url_path="status")
    def change_status(self, request, pk=None):
        order = self.get_object()
        serializer = OrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before_snapshot = self._snapshot(order)
        order = set_order_status(order.pk, serializer.validated_data["status"])
        payload = self._snapshot(order)
        self._audit(action="order.status", instance=order, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)

    @action(detail=True, methods=["post"], url_path="recalc")
    def recalc(self, request, pk=None):
        order = self.get_object()
        before_snapshot = self._snapshot(order)
        order = recalc_order_from_payments(order.pk)
        payload = self._snapshot(order)
        self._audit(action="order.recalc", instance=order, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)

    @action(detail=True, methods=["get"], url_path="payments")
    def payments(self, request, pk=None):
        order = self.get_object()
        qs = order.payments.select_related("order__service", "order__client").order_by("-date")
        return Response(PaymentSerializer(qs, many=True).data)

    @payments.mapping.post
    def add_payment(self, request, pk=None):
        order = self.get_object()
        serializer = PaymentRegisterSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        _, payload = self._register_and_audit(register_payment, order.pk, serializer.validated_data, "payment.create")
        order.refresh_from_db()
        return Response({"payment": payload, "order": self._snapshot(order)}, status=status.HTTP_201_CREATED)


class PaymentViewSet(
    AuditedMutationMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    """Payment ledger. Payments are append-only: there is no update or delete."""

    queryset = Payment.objects.select_related("order__service", "order__client")
    serializer_class = PaymentSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "payments.view",
        "retrieve": "payments.view",
        "create": "payments.register",
        "detached": "payments.register_detached",
    }
    audit_entity = "payment"

    def get_queryset(self):
        qs = super().get_queryset().order_by("-date")
        params = self.request.query_params

        order_id = params.get("order")
        if order_id:
            qs = qs.filter(order_id=order_id)
        if params.get("unassigned") in {"1", "true"}:
            qs = qs.filter(order__isnull=True)
        method = params.get("payment_method")
        if method:
            qs = qs.filter(payment_method=method)
        date_from = _date_filter(self.request, "date_from")
        date_to = _date_filter(self.request, "date_to")
        if date_from:
            qs = qs.filter(date__date__gte=date_from)
        if date_to:
            qs = qs.filter(date__date__lte=date_to)
        return qs

    def list(self, request, *args, **kwargs):
        if wants_csv(request):
            rows = [
                {
                    "date": payment.date.isoformat(),
                    "order": payment.order_id or "",
                    "order_name": payment.order.display_name if payment.order else "",
                    "client": payment.order.client.name if payment.order else "",
                    "payment_method": payment.payment_method,
                    "amount": payment.amount,
                    "concept": payment.concept,
                }
                for payment in self.get_queryset()
            ]
            return csv_response(
                "payments.csv",
                rows,
                fieldnames=["date", "order", "order_name", "client", "payment_method", "amount", "concept"],
            )
        return super().list(request, *args, **kwargs)

    def create(self, request, *args, **kwargs):
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        _, payload = self._register_and_audit(register_payment, data["order"], data, "payment.create")
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"], url_path="detached")
    def detached(self, request):
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        _, payload = self._register_and_audit(register_payment_only, data["order"], data, "payment.create_detached")
        return Response(payload, status=status.HTTP_201_CREATED)
