"""Resolution of the ownership relations between pods, their
PersistentVolumeClaims and their StatefulSets.

All queries read the informer caches only and never write to the cluster.
"""

from __future__ import annotations

__all__ = ("OwnershipResolver", "is_controlled_by")

from typing import Any

import structlog

from kubevolumecleaner.cache import ObjectCache
from kubevolumecleaner.resources import (
    MANAGED_BY_LABEL,
    claim_names,
    get_controller_ref,
    get_labels,
)
from kubevolumecleaner.selectors import LabelSelector, Operator, Requirement


def is_controlled_by(pod: dict[str, Any], statefulset: dict[str, Any]) -> bool:
    """Return `True` if the pod's controller reference points at the
    StatefulSet.

    The reference must have kind ``StatefulSet`` and the StatefulSet's name.
    When both sides carry a uid, the uids must be equal as well, so that a
    StatefulSet recreated under the same name does not adopt the pods of its
    predecessor.
    """
    ref = get_controller_ref(pod)
    if ref is None or ref.kind != "StatefulSet":
        return False
    metadata = statefulset.get("metadata") or {}
    if ref.name != metadata.get("name"):
        return False
    uid = metadata.get("uid")
    return ref.uid is None or uid is None or ref.uid == uid


class OwnershipResolver:
    """Answer ownership questions from the informer caches.

    Parameters
    ----------
    pods : `kubevolumecleaner.cache.ObjectCache`
        Cache of Pods.
    claims : `kubevolumecleaner.cache.ObjectCache`
        Cache of PersistentVolumeClaims.
    statefulsets : `kubevolumecleaner.cache.ObjectCache`
        Cache of StatefulSets.
    selector : `kubevolumecleaner.selectors.LabelSelector`
        Selector of the StatefulSets that are managed.
    """

    def __init__(
        self,
        *,
        pods: ObjectCache,
        claims: ObjectCache,
        statefulsets: ObjectCache,
        selector: LabelSelector,
    ) -> None:
        self.pods = pods
        self.claims = claims
        self.statefulsets = statefulsets
        self.selector = selector
        self._logger = structlog.get_logger(__name__)

    def in_scope(self, statefulset: dict[str, Any]) -> bool:
        """Return `True` if the StatefulSet's labels match the selector."""
        return self.selector.matches(get_labels(statefulset))

    def get_statefulset(
        self, namespace: str, name: str
    ) -> dict[str, Any] | None:
        return self.statefulsets.get(namespace, name)

    def find_pod_for_claim(
        self, claim: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Find the pod mounting a claim.

        Every pod present in the cache counts, including pods whose deletion
        is pending: they may still be using the volume.

        Returns
        -------
        pod : `dict` or `None`
            The first pod, by name, that mounts the claim, or `None` if the
            claim is not mounted.
        """
        metadata = claim["metadata"]
        for pod in self.pods.list(metadata.get("namespace") or ""):
            if metadata["name"] in claim_names(pod):
                return pod
        return None

    def find_statefulset_for_pod(
        self, pod: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Find the StatefulSet controlling a pod.

        Returns
        -------
        statefulset : `dict` or `None`
            `None` if the pod has no StatefulSet controller reference or if
            the referenced StatefulSet is not in the cache.
        """
        ref = get_controller_ref(pod)
        if ref is None or ref.kind != "StatefulSet":
            return None

        metadata = pod["metadata"]
        namespace = metadata.get("namespace") or ""
        statefulset = self.statefulsets.get(namespace, ref.name)
        if statefulset is None:
            self._logger.debug(
                "Pod controller reference points to a missing StatefulSet",
                namespace=namespace,
                pod=metadata["name"],
                statefulset=ref.name,
            )
            return None
        if not is_controlled_by(pod, statefulset):
            return None
        return statefulset

    def find_pods_for_statefulset(
        self, statefulset: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """List the pods controlled by a StatefulSet."""
        namespace = statefulset["metadata"].get("namespace") or ""
        return [
            pod
            for pod in self.pods.list(namespace)
            if is_controlled_by(pod, statefulset)
        ]

    def find_claims_for_pod(
        self, pod: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """List the cached claims mounted by a pod.

        Claims that are not in the cache (yet) are skipped.
        """
        namespace = pod["metadata"].get("namespace") or ""
        claims = []
        for name in claim_names(pod):
            claim = self.claims.get(namespace, name)
            if claim is not None:
                claims.append(claim)
        return claims

    def find_claims_for_statefulset(
        self, namespace: str, name: str
    ) -> list[dict[str, Any]]:
        """List the claims whose managed-by label names a StatefulSet."""
        selector = LabelSelector(
            [Requirement(MANAGED_BY_LABEL, Operator.EQUALS, (name,))]
        )
        return self.claims.list(namespace, selector)
