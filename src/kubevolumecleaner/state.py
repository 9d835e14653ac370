"""Operator configuration and runtime state as module-level attributes.

Configuration is read from the environment once, when this module is first
imported, and stays fixed for the lifetime of the process.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kubevolumecleaner.controller import Controller

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _get_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _get_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")
    return value


namespace = os.environ.get("KVC_NAMESPACE", "")
"""The Kubernetes namespace watched by the controller.

An empty string watches all namespaces.
"""

label_selector = os.environ.get("KVC_LABEL_SELECTOR", "")
"""Label selector restricting which StatefulSets are managed.

An empty selector matches every StatefulSet.
"""

dry_run = _get_bool("KVC_DRY_RUN", False)
"""If `True`, orphaned PersistentVolumeClaims are logged instead of deleted."""

retry_on_error = _get_bool("KVC_RETRY_ON_ERROR", False)
"""If `True`, keys whose sync failed are re-queued with exponential backoff.

Otherwise a failed key is only processed again when another watch event
touches it.
"""

retry_base_delay = _get_float("KVC_RETRY_BASE_DELAY", 0.005)
"""Base delay, in seconds, of the per-key retry backoff."""

retry_max_delay = _get_float("KVC_RETRY_MAX_DELAY", 300.0)
"""Maximum delay, in seconds, of the per-key retry backoff."""

cache_sync_timeout = _get_float("KVC_CACHE_SYNC_TIMEOUT", 300.0)
"""Seconds to wait for the initial listing of every watched resource."""

watch_timeout = int(_get_float("KVC_WATCH_TIMEOUT", 300))
"""Server-side timeout, in seconds, of a single watch request."""

log_level = os.environ.get("KVC_LOG_LEVEL", "INFO").upper()
"""Minimum level of log messages emitted by the controller."""

log_format = os.environ.get("KVC_LOG_FORMAT", "console").lower()
"""Rendering of log messages: ``console`` or ``json``."""

controller: Controller | None = None
"""The running controller, set by the startup handler."""
