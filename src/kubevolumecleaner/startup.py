"""Code intended to run on start-up and shut-down of the operator."""

__all__ = ("configure_logging", "start_controller", "stop_controller")

import logging
from typing import Any

import structlog

from kubevolumecleaner import state
from kubevolumecleaner.cache import CacheSyncError
from kubevolumecleaner.controller import Controller
from kubevolumecleaner.k8s import create_k8sclient
from kubevolumecleaner.selectors import LabelSelector
from kubevolumecleaner.version import get_version


def configure_logging(
    level: str | None = None, log_format: str | None = None
) -> None:
    """Configure structlog for the controller.

    Parameters
    ----------
    level : `str`, optional
        Name of the minimum log level. Defaults to ``state.log_level``.
    log_format : `str`, optional
        ``console`` or ``json``. Defaults to ``state.log_format``.

    Raises
    ------
    ValueError
        Raised if the level or the format is unknown.
    """
    level = level or state.log_level
    log_format = log_format or state.log_format

    level_number = logging.getLevelName(level.upper())
    if not isinstance(level_number, int):
        raise ValueError(f"Unknown log level {level!r}")

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    elif log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        raise ValueError(f"Unknown log format {log_format!r}")

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_number),
    )


def start_controller(
    *,
    k8s_client: Any = None,
    watch_factory: Any = None,
    logger: Any = None,
) -> Controller:
    """Start the controller and wait until its caches are synced.

    The controller is stored as ``state.controller``.

    Parameters
    ----------
    k8s_client
        A Kubernetes client. Created with `create_k8sclient` by default.
    watch_factory
        Callable creating a `kubernetes.watch.Watch`.
    logger
        The kopf logger, or a structlog logger by default. Messages use
        positional formatting so that either works.

    Raises
    ------
    kubevolumecleaner.selectors.SelectorError
        Raised if the configured label selector is invalid.
    kubevolumecleaner.cache.CacheSyncError
        Raised if the caches did not sync within
        ``state.cache_sync_timeout`` seconds.
    """
    if logger is None:
        logger = structlog.get_logger(__name__)
    # Reject a bad selector before connecting to the cluster.
    selector = LabelSelector.parse(state.label_selector)
    if k8s_client is None:
        k8s_client = create_k8sclient()

    controller = Controller(
        k8s_client=k8s_client,
        namespace=state.namespace,
        label_selector=selector,
        dry_run=state.dry_run,
        retry_on_error=state.retry_on_error,
        retry_base_delay=state.retry_base_delay,
        retry_max_delay=state.retry_max_delay,
        watch_timeout=state.watch_timeout,
        watch_factory=watch_factory,
    )
    controller.start()

    logger.info(
        "Waiting up to %ss for caches to sync", state.cache_sync_timeout
    )
    if not controller.wait_for_cache_sync(state.cache_sync_timeout):
        controller.stop()
        raise CacheSyncError(
            f"timed out after {state.cache_sync_timeout}s waiting for "
            "caches to sync"
        )

    controller.start_workers()
    state.controller = controller
    logger.info("Controller %s started", get_version())
    return controller


def stop_controller() -> None:
    """Stop the controller started by `start_controller`, if any."""
    controller = state.controller
    if controller is None:
        return
    controller.stop()
    state.controller = None
