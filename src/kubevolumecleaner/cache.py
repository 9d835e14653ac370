"""Local mirror of cluster state, kept current by list and watch calls."""

from __future__ import annotations

__all__ = (
    "CacheSyncError",
    "EventHandler",
    "Informer",
    "ObjectCache",
    "wait_for_cache_sync",
)

import copy
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

import structlog
from kubernetes.watch import Watch
from kubernetes.client.exceptions import ApiException

from kubevolumecleaner.k8s import ListSource, list_objects
from kubevolumecleaner.resources import object_key
from kubevolumecleaner.selectors import LabelSelector

EventHandler = Callable[[str, dict[str, Any]], None]
"""Callback receiving an event type (``ADDED``, ``MODIFIED`` or
``DELETED``) and the object the event is about.
"""


class CacheSyncError(RuntimeError):
    """Raised when the caches are not synced within the startup timeout."""


class ObjectCache:
    """Thread-safe, namespace-indexed store of resource manifests.

    Objects are copied on the way in and on the way out, so callers can
    freely modify what they get without affecting other readers.

    Parameters
    ----------
    kind : `str`
        The kind of the stored resources.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._lock = threading.RLock()
        self._index: dict[str, dict[str, dict[str, Any]]] = {}

    def __len__(self) -> int:
        with self._lock:
            return sum(len(objs) for objs in self._index.values())

    def get(self, namespace: str, name: str) -> dict[str, Any] | None:
        """Get a copy of an object, or `None` if it is not present."""
        with self._lock:
            obj = self._index.get(namespace, {}).get(name)
            return copy.deepcopy(obj) if obj is not None else None

    def list(
        self, namespace: str, selector: LabelSelector | None = None
    ) -> list[dict[str, Any]]:
        """List copies of the objects in a namespace, sorted by name.

        Parameters
        ----------
        namespace : `str`
            The namespace to list.
        selector : `LabelSelector`, optional
            Only objects whose labels match are returned.
        """
        with self._lock:
            objs = [
                obj
                for _, obj in sorted(self._index.get(namespace, {}).items())
                if selector is None
                or selector.matches((obj.get("metadata") or {}).get("labels"))
            ]
            return copy.deepcopy(objs)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(
                object_key(obj)
                for objs in self._index.values()
                for obj in objs.values()
            )

    def upsert(self, obj: dict[str, Any]) -> bool:
        """Store an object, returning `True` if it replaced an existing one."""
        namespace, name = self._location(obj)
        with self._lock:
            objs = self._index.setdefault(namespace, {})
            existed = name in objs
            objs[name] = copy.deepcopy(obj)
            return existed

    def delete(self, obj: dict[str, Any]) -> None:
        namespace, name = self._location(obj)
        with self._lock:
            objs = self._index.get(namespace)
            if objs is None:
                return
            objs.pop(name, None)
            if not objs:
                del self._index[namespace]

    def replace(
        self, items: Iterable[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Replace the whole content of the cache.

        Returns
        -------
        removed : `list` of `dict`
            The previously stored objects that are not part of ``items``.
        """
        index: dict[str, dict[str, dict[str, Any]]] = {}
        for obj in items:
            namespace, name = self._location(obj)
            index.setdefault(namespace, {})[name] = copy.deepcopy(obj)
        with self._lock:
            removed = [
                obj
                for namespace, objs in self._index.items()
                for name, obj in objs.items()
                if name not in index.get(namespace, {})
            ]
            self._index = index
        return removed

    @staticmethod
    def _location(obj: dict[str, Any]) -> tuple[str, str]:
        metadata = obj.get("metadata") or {}
        return metadata.get("namespace") or "", metadata["name"]


class Informer:
    """Keep an `ObjectCache` in sync with the cluster and report changes.

    The informer lists the resources once, then watches from the
    ``resourceVersion`` of the list. When the watch expires (``410 Gone``)
    it lists again; other errors are retried with capped exponential
    backoff.

    Parameters
    ----------
    source : `kubevolumecleaner.k8s.ListSource`
        The list call to mirror.
    watch_timeout : `int`
        Server-side timeout, in seconds, of each watch request.
    watch_factory
        Callable creating a `kubernetes.watch.Watch`.
    """

    max_backoff = 30.0

    def __init__(
        self,
        source: ListSource,
        *,
        watch_timeout: int = 300,
        watch_factory: Callable[[], Any] = Watch,
    ) -> None:
        self.source = source
        self.kind = source.kind
        self.cache = ObjectCache(source.kind)
        self.synced = threading.Event()
        self.watch_timeout = watch_timeout
        self._watch_factory = watch_factory
        self._handlers: list[EventHandler] = []
        self._active_watch: Any = None
        self._lock = threading.Lock()
        self._logger = structlog.get_logger(__name__).bind(kind=self.kind)

    def add_event_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self.synced.is_set()

    def run(self, stop: threading.Event) -> None:
        """List and watch until ``stop`` is set."""
        self._logger.info("Starting informer")
        resource_version: str | None = None
        backoff = 1.0
        while not stop.is_set():
            try:
                if resource_version is None:
                    resource_version = self.relist()
                    if not self.synced.is_set():
                        self._logger.info(
                            "Cache synced", count=len(self.cache)
                        )
                        self.synced.set()
                resource_version = self.watch(resource_version, stop)
                backoff = 1.0
            except ApiException as exc:
                if exc.status == 410:
                    self._logger.info("Watch expired, listing again")
                    resource_version = None
                    continue
                self._logger.exception(
                    "Kubernetes API error", status=exc.status
                )
                self._sleep(stop, backoff)
                backoff = min(backoff * 2, self.max_backoff)
            except Exception:
                self._logger.exception("Unexpected error in informer")
                self._sleep(stop, backoff)
                backoff = min(backoff * 2, self.max_backoff)
        self._logger.info("Stopped informer")

    def stop(self) -> None:
        """Stop the active watch request, if any."""
        with self._lock:
            if self._active_watch is not None:
                self._active_watch.stop()

    def relist(self) -> str:
        """List all resources and replace the cache content.

        Handlers are notified of every listed object and of every object
        that disappeared since the previous list.

        Returns
        -------
        resource_version : `str`
            The ``resourceVersion`` of the list.
        """
        items, resource_version = list_objects(self.source)
        previous = set(self.cache.keys())
        removed = self.cache.replace(items)
        self._logger.debug(
            "Listed resources",
            count=len(items),
            removed=len(removed),
            resource_version=resource_version,
        )
        for obj in removed:
            self._notify("DELETED", obj)
        for obj in items:
            event_type = "MODIFIED" if object_key(obj) in previous else "ADDED"
            self._notify(event_type, obj)
        return resource_version

    def watch(self, resource_version: str, stop: threading.Event) -> str:
        """Apply watch events to the cache until the watch request ends.

        Returns
        -------
        resource_version : `str`
            The last ``resourceVersion`` seen, from which to resume.

        Raises
        ------
        kubernetes.client.exceptions.ApiException
            Raised on watch errors. A ``status`` of 410 means the resource
            version is too old and the resources must be listed again.
        """
        watcher = self._watch_factory()
        with self._lock:
            self._active_watch = watcher
        try:
            if stop.is_set():
                return resource_version
            stream = watcher.stream(
                self.source.func,
                **self.source.kwargs,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout,
                allow_watch_bookmarks=True,
            )
            for event in stream:
                if stop.is_set():
                    break
                resource_version = self._handle_event(event, resource_version)
        finally:
            watcher.stop()
            with self._lock:
                self._active_watch = None
        return resource_version

    def _handle_event(
        self, event: dict[str, Any], resource_version: str
    ) -> str:
        event_type = event["type"]
        obj = event["raw_object"]
        if event_type == "ERROR":
            raise ApiException(
                status=obj.get("code"),
                reason=f"{obj.get('reason')}: {obj.get('message')}",
            )
        resource_version = (obj.get("metadata") or {}).get(
            "resourceVersion", resource_version
        )
        if event_type == "BOOKMARK":
            return resource_version
        if event_type == "DELETED":
            self.cache.delete(obj)
        else:
            self.cache.upsert(obj)
        self._notify(event_type, obj)
        return resource_version

    def _notify(self, event_type: str, obj: dict[str, Any]) -> None:
        for handler in self._handlers:
            try:
                handler(event_type, obj)
            except Exception:
                self._logger.exception(
                    "Event handler failed", event_type=event_type
                )

    def _sleep(self, stop: threading.Event, backoff: float) -> None:
        stop.wait(timeout=backoff * (0.5 + random.random()))  # noqa: S311


def wait_for_cache_sync(
    informers: Iterable[Informer],
    stop: threading.Event,
    timeout: float | None = None,
    poll_interval: float = 0.1,
) -> bool:
    """Wait until every informer has completed its initial list.

    Returns
    -------
    synced : `bool`
        `False` if ``stop`` was set or ``timeout`` expired first.
    """
    informers = list(informers)
    deadline = None if timeout is None else time.monotonic() + timeout
    while not all(i.has_synced() for i in informers):
        if stop.is_set():
            return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        stop.wait(timeout=poll_interval)
    return True
