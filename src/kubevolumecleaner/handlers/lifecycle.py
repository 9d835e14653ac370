"""Kopf handlers running the controller for the lifetime of the operator."""

__all__ = ("configure", "probe_controller", "start", "stop")

from typing import Any

import kopf

from kubevolumecleaner import state
from kubevolumecleaner.cache import CacheSyncError
from kubevolumecleaner.selectors import SelectorError
from kubevolumecleaner.startup import (
    configure_logging,
    start_controller,
    stop_controller,
)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs: Any) -> None:
    """Configure kopf and structlog.

    The controller watches resources itself, so kopf neither posts events
    nor needs peering.
    """
    settings.posting.enabled = False
    settings.peering.standalone = True
    try:
        configure_logging()
    except ValueError as e:
        raise kopf.PermanentError(str(e)) from e


@kopf.on.startup()
def start(logger: Any, **kwargs: Any) -> None:
    """Start the controller once its caches are synced.

    An invalid label selector or a cache sync timeout stops the operator.
    """
    try:
        start_controller(logger=logger)
    except SelectorError as e:
        raise kopf.PermanentError(
            f"Failed to parse label selector {state.label_selector!r}: {e}"
        ) from e
    except CacheSyncError as e:
        raise kopf.PermanentError(str(e)) from e


@kopf.on.cleanup()
def stop(logger: Any, **kwargs: Any) -> None:
    """Stop the controller."""
    stop_controller()


@kopf.on.probe(id="controller")
def probe_controller(**kwargs: Any) -> dict[str, Any]:
    """Report cache sync state and queue depths on the liveness endpoint."""
    controller = state.controller
    if controller is None or controller.stopped:
        return {"running": False}
    return {"running": True, **controller.status()}
