"""Fakes of the Kubernetes API and helpers used by the tests."""

from __future__ import annotations

import copy
import json
import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

import yaml
from kubernetes.client.exceptions import ApiException

from kubevolumecleaner.controller import Controller


class FakeResponse:
    """Stand-in for a response returned with ``_preload_content=False``."""

    def __init__(self, payload: dict[str, Any]) -> None:
        self.data = json.dumps(payload).encode("utf-8")


class FakeListing:
    """A list API method serving a fixed set of items."""

    def __init__(self) -> None:
        self.items: list[dict[str, Any]] = []
        self.resource_version = "1"
        self.calls: list[dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        return FakeResponse(
            {
                "metadata": {"resourceVersion": self.resource_version},
                "items": self.items,
            }
        )


class FakeCoreV1Api:
    def __init__(self) -> None:
        self.pods = FakeListing()
        self.claims = FakeListing()
        self.list_pod_for_all_namespaces = self.pods
        self.list_namespaced_pod = self.pods
        self.list_persistent_volume_claim_for_all_namespaces = self.claims
        self.list_namespaced_persistent_volume_claim = self.claims

        self.replaced: list[dict[str, Any]] = []
        self.deleted: list[tuple[str, str]] = []
        self.replace_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.on_replace: Callable[[dict[str, Any]], Any] | None = None

    def replace_namespaced_persistent_volume_claim(
        self, name: str, namespace: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        if self.replace_error is not None:
            raise self.replace_error
        self.replaced.append(copy.deepcopy(body))
        if self.on_replace is not None:
            self.on_replace(body)
        return body

    def delete_namespaced_persistent_volume_claim(
        self, name: str, namespace: str
    ) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append((namespace, name))


class FakeAppsV1Api:
    def __init__(self) -> None:
        self.statefulsets = FakeListing()
        self.list_stateful_set_for_all_namespaces = self.statefulsets
        self.list_namespaced_stateful_set = self.statefulsets


class FakeK8sClient:
    """Stand-in for the ``kubernetes.client`` module."""

    def __init__(self) -> None:
        self.core_api = FakeCoreV1Api()
        self.apps_api = FakeAppsV1Api()

    def CoreV1Api(self) -> FakeCoreV1Api:  # noqa: N802
        return self.core_api

    def AppsV1Api(self) -> FakeAppsV1Api:  # noqa: N802
        return self.apps_api


class FakeWatch:
    """Stand-in for `kubernetes.watch.Watch`.

    Each `stream` call plays the next script of the factory: an exception
    is raised, a list of events is yielded. Without scripts left, the stream
    waits until the watch or the factory is stopped.
    """

    def __init__(self, factory: FakeWatchFactory) -> None:
        self.factory = factory
        self.stopped = threading.Event()

    def stream(self, func: Any, **kwargs: Any) -> Iterator[dict[str, Any]]:
        self.factory.calls.append(kwargs)
        if self.factory.scripts:
            script = self.factory.scripts.pop(0)
            if isinstance(script, Exception):
                raise script
            return iter(script)
        return self._wait()

    def _wait(self) -> Iterator[dict[str, Any]]:
        while not (self.stopped.is_set() or self.factory.stop.is_set()):
            time.sleep(0.01)
        yield from ()

    def stop(self) -> None:
        self.stopped.set()


class FakeWatchFactory:
    def __init__(
        self, scripts: list[Any] | None = None, stop: threading.Event | None = None
    ) -> None:
        self.scripts = list(scripts or [])
        self.stop = stop or threading.Event()
        self.calls: list[dict[str, Any]] = []

    def __call__(self) -> FakeWatch:
        return FakeWatch(self)


def watch_event(event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
    return {"type": event_type, "raw_object": obj, "object": obj}


def gone() -> ApiException:
    return ApiException(status=410, reason="Gone")


def load_cluster(controller: Controller, manifests: str) -> None:
    """Put the objects of a multi-document YAML string into the caches."""
    caches = {
        "Pod": controller.pod_informer.cache,
        "PersistentVolumeClaim": controller.claim_informer.cache,
        "StatefulSet": controller.statefulset_informer.cache,
    }
    for obj in yaml.safe_load_all(manifests):
        if obj:
            caches[obj["kind"]].upsert(obj)


def drain(queue: Any) -> list[str]:
    """Take every key from a work queue, marking each as done."""
    keys = []
    while True:
        key, _ = queue.get(timeout=0)
        if key is None:
            return keys
        keys.append(key)
        queue.done(key)
