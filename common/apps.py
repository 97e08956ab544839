from django.apps import AppConfig, apps
from django.conf import settings
from django.core.cache import caches


class CommonConfig(AppConfig):
    name = "common"
    default_auto_field = "django.db.models.BigAutoField"

    collection_cache = None

    def ready(self):
        from common.cache import CollectionCache

        self.collection_cache = CollectionCache(
            caches["default"],
            timeout=getattr(settings, "COLLECTION_CACHE_TIMEOUT", 300),
        )
        for collection, model_label in getattr(settings, "COLLECTION_CACHE_MODELS", {}).items():
            self.collection_cache.connect(apps.get_model(model_label), collection)
