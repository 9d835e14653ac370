"""Kopf handlers for kube-volume-cleaner.

Run the operator with ``kopf run --standalone -m kubevolumecleaner.handlers``.
"""

__all__ = (
    "configure",
    "probe_controller",
    "start",
    "stop",
)

from kubevolumecleaner.handlers.lifecycle import (
    configure,
    probe_controller,
    start,
    stop,
)
