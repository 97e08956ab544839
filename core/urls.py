from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import AccessEntryViewSet, AuditLogViewSet, healthz, readyz

router = DefaultRouter()
router.register(r"admin/access", AccessEntryViewSet, basename="access")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("healthz/", healthz, name="healthz"),
    path("readyz/", readyz, name="readyz"),
]
