"""Helpers for interacting with Kubernetes APIs."""

__all__ = (
    "ListSource",
    "create_k8sclient",
    "list_objects",
    "make_list_sources",
)

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import kubernetes


def create_k8sclient() -> kubernetes.client:
    """Get a Kubernetes client configured with available cluster
    authentication.

    If in-cluster authentication is available, that is used. Otherwise
    this function falls-back to using a kubectl config file, which is
    appropriate for development.
    """
    try:
        kubernetes.config.load_incluster_config()
    except Exception:
        kubernetes.config.load_kube_config()
    kubernetes.client.configuration.assert_hostname = False
    return kubernetes.client


@dataclass(frozen=True)
class ListSource:
    """A Kubernetes list call that can also be watched.

    Parameters
    ----------
    kind : `str`
        Kind of the listed resources, used in log messages.
    func
        The API method, such as ``CoreV1Api.list_namespaced_pod``.
    kwargs : `dict`
        Keyword arguments passed to every call of ``func``.
    """

    kind: str
    func: Callable[..., Any]
    kwargs: dict[str, Any] = field(default_factory=dict)


def make_list_sources(
    *, k8s_client: Any, namespace: str = ""
) -> dict[str, ListSource]:
    """Create the list sources of the resources watched by the controller.

    Parameters
    ----------
    k8s_client
        A Kubernetes client (see `create_k8sclient`).
    namespace : `str`
        Namespace to list. An empty string lists all namespaces.

    Returns
    -------
    sources : `dict`
        `ListSource` instances keyed by ``Pod``, ``PersistentVolumeClaim``
        and ``StatefulSet``.
    """
    core_api = k8s_client.CoreV1Api()
    apps_api = k8s_client.AppsV1Api()

    if namespace:
        kwargs = {"namespace": namespace}
        return {
            "Pod": ListSource("Pod", core_api.list_namespaced_pod, kwargs),
            "PersistentVolumeClaim": ListSource(
                "PersistentVolumeClaim",
                core_api.list_namespaced_persistent_volume_claim,
                kwargs,
            ),
            "StatefulSet": ListSource(
                "StatefulSet", apps_api.list_namespaced_stateful_set, kwargs
            ),
        }
    return {
        "Pod": ListSource("Pod", core_api.list_pod_for_all_namespaces),
        "PersistentVolumeClaim": ListSource(
            "PersistentVolumeClaim",
            core_api.list_persistent_volume_claim_for_all_namespaces,
        ),
        "StatefulSet": ListSource(
            "StatefulSet", apps_api.list_stateful_set_for_all_namespaces
        ),
    }


def list_objects(source: ListSource) -> tuple[list[dict[str, Any]], str]:
    """List resources as raw manifests.

    Parameters
    ----------
    source : `ListSource`
        The list call to make.

    Returns
    -------
    items : `list` of `dict`
        The Kubernetes resources as raw manifests.
    resource_version : `str`
        The ``resourceVersion`` of the list, from which a watch can resume.
    """
    result = source.func(**source.kwargs, _preload_content=False)
    data = json.loads(result.data)
    items = data.get("items") or []
    resource_version = (data.get("metadata") or {}).get("resourceVersion", "")
    return items, resource_version
