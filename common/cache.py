import logging

from django.apps import apps
from django.db import transaction
from django.db.models.signals import post_delete, post_save

logger = logging.getLogger(__name__)


class CollectionCache:
    """Cache of derived listings keyed by collection.

    Every collection carries a version counter stored in the cache backend.
    Entries are stored under the versions of the collections they were built
    from, so bumping a version makes all dependent entries unreachable at
    once. The model signal receivers bump versions when the writing
    transaction commits; a rolled back write leaves the versions alone.
    """

    def __init__(self, backend, timeout=300, prefix="collections"):
        self.backend = backend
        self.timeout = timeout
        self.prefix = prefix
        self._receivers = {}

    def _version_key(self, collection):
        return f"{self.prefix}:{collection}:version"

    def version(self, collection):
        key = self._version_key(collection)
        # add() keeps a concurrent bump from being overwritten.
        self.backend.add(key, 1, None)
        return self.backend.get(key) or 1

    def invalidate(self, collection):
        key = self._version_key(collection)
        try:
            self.backend.incr(key)
        except ValueError:
            self.backend.set(key, 2, None)
        logger.debug("collection_cache_invalidated", extra={"entity": collection})

    def get_or_load(self, collection, key, loader, depends_on=()):
        collections = (collection, *depends_on)
        versions = ":".join(f"{name}.v{self.version(name)}" for name in collections)
        cache_key = f"{self.prefix}:{collection}:{versions}:{key}"
        value = self.backend.get(cache_key)
        if value is None:
            value = loader()
            self.backend.set(cache_key, value, self.timeout)
        return value

    def connect(self, model, collection):
        """Subscribe to writes on `model`; each committed save or delete invalidates `collection`."""

        def receiver(sender, using=None, **kwargs):
            transaction.on_commit(lambda: self.invalidate(collection), using=using)

        dispatch_uid = f"collection-cache:{collection}"
        post_save.connect(receiver, sender=model, weak=False, dispatch_uid=dispatch_uid)
        post_delete.connect(receiver, sender=model, weak=False, dispatch_uid=dispatch_uid)
        self._receivers[collection] = receiver


class CollectionCacheMixin:
    """Gives views access to the cache owned by the `common` app config."""

    def get_collection_cache(self):
        return apps.get_app_config("common").collection_cache
