"""Tests for the kubevolumecleaner.ownership module."""

from __future__ import annotations

import yaml

from kubevolumecleaner.cache import ObjectCache
from kubevolumecleaner.ownership import OwnershipResolver, is_controlled_by
from kubevolumecleaner.resources import MANAGED_BY_LABEL
from kubevolumecleaner.selectors import LabelSelector

CLUSTER = f"""
apiVersion: apps/v1
kind: StatefulSet
metadata:
  name: web
  namespace: shop
  uid: sts-web
  labels:
    app: web
---
apiVersion: apps/v1
kind: StatefulSet
metadata:
  name: queue
  namespace: shop
  uid: sts-queue
  labels:
    app: queue
---
apiVersion: v1
kind: Pod
metadata:
  name: web-0
  namespace: shop
  ownerReferences:
  - kind: StatefulSet
    name: web
    uid: sts-web
    controller: true
spec:
  volumes:
  - name: www
    persistentVolumeClaim:
      claimName: www-web-0
  - name: scratch
    persistentVolumeClaim:
      claimName: scratch-web-0
---
apiVersion: v1
kind: Pod
metadata:
  name: web-1
  namespace: shop
  deletionTimestamp: "2024-05-01T10:00:00Z"
  ownerReferences:
  - kind: StatefulSet
    name: web
    uid: sts-web
    controller: true
spec:
  volumes:
  - name: www
    persistentVolumeClaim:
      claimName: www-web-1
---
apiVersion: v1
kind: Pod
metadata:
  name: stale-0
  namespace: shop
  ownerReferences:
  - kind: StatefulSet
    name: web
    uid: sts-web-old
    controller: true
---
apiVersion: v1
kind: Pod
metadata:
  name: orphan-0
  namespace: shop
  ownerReferences:
  - kind: StatefulSet
    name: gone
    uid: sts-gone
    controller: true
---
apiVersion: v1
kind: Pod
metadata:
  name: standalone
  namespace: shop
spec:
  volumes:
  - name: data
    persistentVolumeClaim:
      claimName: data-standalone
---
apiVersion: v1
kind: PersistentVolumeClaim
metadata:
  name: www-web-0
  namespace: shop
  labels:
    {MANAGED_BY_LABEL}: web
---
apiVersion: v1
kind: PersistentVolumeClaim
metadata:
  name: www-web-1
  namespace: shop
  labels:
    {MANAGED_BY_LABEL}: web
---
apiVersion: v1
kind: PersistentVolumeClaim
metadata:
  name: www-web-1
  namespace: other
  labels:
    {MANAGED_BY_LABEL}: web
---
apiVersion: v1
kind: PersistentVolumeClaim
metadata:
  name: data-standalone
  namespace: shop
---
apiVersion: v1
kind: PersistentVolumeClaim
metadata:
  name: unused
  namespace: shop
"""


def make_resolver(selector: str = "") -> OwnershipResolver:
    caches = {
        "Pod": ObjectCache("Pod"),
        "PersistentVolumeClaim": ObjectCache("PersistentVolumeClaim"),
        "StatefulSet": ObjectCache("StatefulSet"),
    }
    for obj in yaml.safe_load_all(CLUSTER):
        caches[obj["kind"]].upsert(obj)
    return OwnershipResolver(
        pods=caches["Pod"],
        claims=caches["PersistentVolumeClaim"],
        statefulsets=caches["StatefulSet"],
        selector=LabelSelector.parse(selector),
    )


def names(objs: list[dict]) -> list[str]:
    return [o["metadata"]["name"] for o in objs]


def test_is_controlled_by() -> None:
    statefulset = {"metadata": {"name": "web", "uid": "sts-web"}}
    pod = {
        "metadata": {
            "ownerReferences": [
                {"kind": "StatefulSet", "name": "web", "controller": True}
            ]
        }
    }
    # Without a uid on the reference, the name decides.
    assert is_controlled_by(pod, statefulset)

    pod["metadata"]["ownerReferences"][0]["uid"] = "sts-web"
    assert is_controlled_by(pod, statefulset)

    pod["metadata"]["ownerReferences"][0]["uid"] = "sts-other"
    assert not is_controlled_by(pod, statefulset)

    pod["metadata"]["ownerReferences"][0]["kind"] = "ReplicaSet"
    pod["metadata"]["ownerReferences"][0]["uid"] = "sts-web"
    assert not is_controlled_by(pod, statefulset)


def test_in_scope() -> None:
    resolver = make_resolver("app=web")
    assert resolver.in_scope(resolver.get_statefulset("shop", "web"))
    assert not resolver.in_scope(resolver.get_statefulset("shop", "queue"))
    assert make_resolver().in_scope(
        resolver.get_statefulset("shop", "queue")
    )


def test_find_pod_for_claim() -> None:
    resolver = make_resolver()
    claims = resolver.claims

    pod = resolver.find_pod_for_claim(claims.get("shop", "www-web-0"))
    assert pod["metadata"]["name"] == "web-0"

    # Pods pending deletion still mount their claims.
    pod = resolver.find_pod_for_claim(claims.get("shop", "www-web-1"))
    assert pod["metadata"]["name"] == "web-1"

    assert resolver.find_pod_for_claim(claims.get("shop", "unused")) is None
    # Mounts only count within the claim's namespace.
    assert resolver.find_pod_for_claim(claims.get("other", "www-web-1")) is None


def test_find_statefulset_for_pod() -> None:
    resolver = make_resolver()
    pods = resolver.pods

    statefulset = resolver.find_statefulset_for_pod(pods.get("shop", "web-0"))
    assert statefulset["metadata"]["name"] == "web"

    assert resolver.find_statefulset_for_pod(pods.get("shop", "stale-0")) is None
    assert (
        resolver.find_statefulset_for_pod(pods.get("shop", "orphan-0")) is None
    )
    assert (
        resolver.find_statefulset_for_pod(pods.get("shop", "standalone"))
        is None
    )


def test_find_pods_for_statefulset() -> None:
    resolver = make_resolver()
    pods = resolver.find_pods_for_statefulset(
        resolver.get_statefulset("shop", "web")
    )
    assert names(pods) == ["web-0", "web-1"]
    assert (
        resolver.find_pods_for_statefulset(
            resolver.get_statefulset("shop", "queue")
        )
        == []
    )


def test_find_claims_for_pod() -> None:
    resolver = make_resolver()
    # scratch-web-0 is not in the cache.
    claims = resolver.find_claims_for_pod(resolver.pods.get("shop", "web-0"))
    assert names(claims) == ["www-web-0"]


def test_find_claims_for_statefulset() -> None:
    resolver = make_resolver()
    claims = resolver.find_claims_for_statefulset("shop", "web")
    assert names(claims) == ["www-web-0", "www-web-1"]
    assert resolver.find_claims_for_statefulset("shop", "gone") == []
