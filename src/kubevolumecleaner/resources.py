"""Accessors for the raw Kubernetes manifests handled by the controller.

Pods, PersistentVolumeClaims and StatefulSets are handled as the JSON
documents returned by the Kubernetes API (`dict`). The helpers in this module
read the few fields the controller cares about, tolerating missing or
``null`` fields the way the API serves them.
"""

from __future__ import annotations

__all__ = (
    "MANAGED_BY_LABEL",
    "InvalidKeyError",
    "OwnerReference",
    "claim_names",
    "get_controller_ref",
    "get_labels",
    "get_managed_by",
    "is_deleting",
    "object_key",
    "split_key",
)

from dataclasses import dataclass
from typing import Any

MANAGED_BY_LABEL = "statefulset.kube-volume-cleaner.io/managed-by"
"""Label recording the StatefulSet that manages a PersistentVolumeClaim."""


class InvalidKeyError(ValueError):
    """Raised when a queue key is not of the form ``namespace/name``."""


@dataclass(frozen=True)
class OwnerReference:
    """The parts of a ``metadata.ownerReferences`` entry used for ownership
    resolution.
    """

    kind: str
    name: str
    uid: str | None = None
    controller: bool = False


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def object_key(obj: dict[str, Any]) -> str:
    """Get the queue key of an object.

    Parameters
    ----------
    obj : `dict`
        A Kubernetes resource manifest.

    Returns
    -------
    key : `str`
        ``namespace/name``, or just ``name`` for objects without a
        namespace.

    Raises
    ------
    InvalidKeyError
        Raised if the object has no name.
    """
    metadata = _metadata(obj)
    name = metadata.get("name")
    if not name:
        raise InvalidKeyError(f"object has no metadata.name: {metadata!r}")
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str) -> tuple[str, str]:
    """Split a queue key into its namespace and name.

    Raises
    ------
    InvalidKeyError
        Raised if the key has more than one ``/`` or an empty part.
    """
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    raise InvalidKeyError(f"unexpected key format: {key!r}")


def is_deleting(obj: dict[str, Any]) -> bool:
    """Return `True` if the deletion of the object has been requested."""
    return _metadata(obj).get("deletionTimestamp") is not None


def get_labels(obj: dict[str, Any]) -> dict[str, str]:
    return _metadata(obj).get("labels") or {}


def get_managed_by(claim: dict[str, Any]) -> str | None:
    """Get the StatefulSet name recorded on a claim, if any."""
    return get_labels(claim).get(MANAGED_BY_LABEL)


def claim_names(pod: dict[str, Any]) -> list[str]:
    """List the names of the PersistentVolumeClaims mounted by a pod, in
    volume order.
    """
    names = []
    for volume in (pod.get("spec") or {}).get("volumes") or []:
        claim = volume.get("persistentVolumeClaim")
        if claim and claim.get("claimName"):
            names.append(claim["claimName"])
    return names


def get_controller_ref(obj: dict[str, Any]) -> OwnerReference | None:
    """Get the owner reference of the object's managing controller."""
    for ref in _metadata(obj).get("ownerReferences") or []:
        if ref.get("controller"):
            return OwnerReference(
                kind=ref.get("kind", ""),
                name=ref.get("name", ""),
                uid=ref.get("uid"),
                controller=True,
            )
    return None
