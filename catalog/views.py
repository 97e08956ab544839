from django.db.models import Q
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from catalog.models import Client, Service
from catalog.serializers import ClientSerializer, ServiceResolveSerializer, ServiceSerializer
from catalog.services import create_client, create_service, find_client_by_phone, get_or_create_service_by_name, search_services
from common.permissions import RoleCapabilityPermission

CATALOG_PERMISSIONS = {
    "list": "catalog.view",
    "retrieve": "catalog.view",
    "create": "catalog.manage",
    "update": "catalog.manage",
    "partial_update": "catalog.manage",
}


class ClientViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    mixins.UpdateModelMixin,
    viewsets.GenericViewSet,
):
    queryset = Client.objects.all()
    serializer_class = ClientSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {**CATALOG_PERMISSIONS, "by_phone": "catalog.view"}

    def get_queryset(self):
        qs = super().get_queryset().order_by("name")
        search = (self.request.query_params.get("search") or "").strip()
        if search:
            qs = qs.filter(Q(name__icontains=search) | Q(phone__icontains=search))
        return qs

    def perform_create(self, serializer):
        serializer.instance = create_client(**serializer.validated_data)

    @action(detail=False, methods=["get"], url_path="by-phone")
    def by_phone(self, request):
        phone = (request.query_params.get("phone") or "").strip()
        if not phone:
            raise ValidationError({"phone": "This query parameter is required."})
        client = find_client_by_phone(phone)
        if client is None:
            raise NotFound("No client is registered with this phone.")
        return Response(self.get_serializer(client).data)


class ServiceViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    mixins.UpdateModelMixin,
    viewsets.GenericViewSet,
):
    queryset = Service.objects.all()
    serializer_class = ServiceSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {**CATALOG_PERMISSIONS, "resolve": "catalog.manage"}

    def get_queryset(self):
        if self.action != "list":
            return super().get_queryset()
        include_inactive = self.request.query_params.get("include_inactive") in {"1", "true", "yes"}
        return search_services(self.request.query_params.get("search", ""), include_inactive=include_inactive)

    def perform_create(self, serializer):
        serializer.instance = create_service(**serializer.validated_data)

    @action(detail=False, methods=["post"], url_path="resolve")
    def resolve(self, request):
        """Find-or-create by free-text name; 201 when a new service was created."""
        serializer = ServiceResolveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        service, created = get_or_create_service_by_name(
            serializer.validated_data["name"],
            default_price=serializer.validated_data.get("default_price"),
        )
        return Response(
            {"created": created, "service": ServiceSerializer(service).data},
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )
