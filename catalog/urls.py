from rest_framework.routers import DefaultRouter

from catalog.views import ClientViewSet, ServiceViewSet

router = DefaultRouter()
router.register(r"clients", ClientViewSet, basename="client")
router.register(r"services", ServiceViewSet, basename="service")

urlpatterns = router.urls
