"""The controller reconciling PersistentVolumeClaims with the StatefulSets
that own them.

Three informers mirror Pods, PersistentVolumeClaims and StatefulSets. Every
change notification puts the key of the changed object on the work queue of
its kind, and one worker per queue runs the matching sync method. Pod and
StatefulSet syncs only fan out to the claims (or pods) they relate to; the
claim sync decides what the claim's managed-by label should be and whether an
orphaned claim is deleted.
"""

from __future__ import annotations

__all__ = ("Controller",)

import threading
from collections.abc import Callable
from typing import Any

import structlog
from kubernetes.watch import Watch

from kubevolumecleaner.actions import ClaimActions
from kubevolumecleaner.cache import (
    CacheSyncError,
    Informer,
    wait_for_cache_sync,
)
from kubevolumecleaner.k8s import make_list_sources
from kubevolumecleaner.ownership import OwnershipResolver
from kubevolumecleaner.resources import (
    InvalidKeyError,
    get_managed_by,
    is_deleting,
    object_key,
    split_key,
)
from kubevolumecleaner.selectors import LabelSelector
from kubevolumecleaner.workqueue import ExponentialBackoff, WorkQueue

SyncFunc = Callable[[str], None]


class Controller:
    """Keep the managed-by label of PersistentVolumeClaims current and
    delete orphaned claims.

    Parameters
    ----------
    k8s_client
        A Kubernetes client (see `kubevolumecleaner.k8s.create_k8sclient`).
    namespace : `str`
        Namespace to watch. An empty string watches all namespaces.
    label_selector : `str` or `kubevolumecleaner.selectors.LabelSelector`
        Selector of the StatefulSets to manage. Matches all if empty.
    dry_run : `bool`
        Log deletions of orphaned claims instead of executing them.
    retry_on_error : `bool`
        Re-queue keys with exponential backoff when their sync fails.
    retry_base_delay : `float`
        Backoff delay in seconds after the first failure of a key.
    retry_max_delay : `float`
        Maximum backoff delay in seconds.
    watch_timeout : `int`
        Server-side timeout of each watch request.
    watch_factory
        Callable creating a `kubernetes.watch.Watch`, the default.

    Raises
    ------
    kubevolumecleaner.selectors.SelectorError
        Raised if ``label_selector`` cannot be parsed.
    """

    def __init__(
        self,
        *,
        k8s_client: Any,
        namespace: str = "",
        label_selector: str | LabelSelector = "",
        dry_run: bool = False,
        retry_on_error: bool = False,
        retry_base_delay: float = 0.005,
        retry_max_delay: float = 300.0,
        watch_timeout: int = 300,
        watch_factory: Callable[[], Any] | None = None,
    ) -> None:
        if watch_factory is None:
            watch_factory = Watch
        if isinstance(label_selector, str):
            label_selector = LabelSelector.parse(label_selector)

        self.namespace = namespace
        self.dry_run = dry_run
        self.retry_on_error = retry_on_error

        sources = make_list_sources(k8s_client=k8s_client, namespace=namespace)
        self.pod_informer = Informer(
            sources["Pod"],
            watch_timeout=watch_timeout,
            watch_factory=watch_factory,
        )
        self.claim_informer = Informer(
            sources["PersistentVolumeClaim"],
            watch_timeout=watch_timeout,
            watch_factory=watch_factory,
        )
        self.statefulset_informer = Informer(
            sources["StatefulSet"],
            watch_timeout=watch_timeout,
            watch_factory=watch_factory,
        )

        self.pod_queue = WorkQueue(
            "pod", ExponentialBackoff(retry_base_delay, retry_max_delay)
        )
        self.claim_queue = WorkQueue(
            "pvc", ExponentialBackoff(retry_base_delay, retry_max_delay)
        )
        self.statefulset_queue = WorkQueue(
            "statefulset",
            ExponentialBackoff(retry_base_delay, retry_max_delay),
        )

        self.resolver = OwnershipResolver(
            pods=self.pod_informer.cache,
            claims=self.claim_informer.cache,
            statefulsets=self.statefulset_informer.cache,
            selector=label_selector,
        )
        self.actions = ClaimActions(k8s_client.CoreV1Api(), dry_run=dry_run)

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._logger = structlog.get_logger(__name__)

        self._register_event_handlers()

    @property
    def informers(self) -> tuple[Informer, Informer, Informer]:
        return (
            self.pod_informer,
            self.claim_informer,
            self.statefulset_informer,
        )

    def _register_event_handlers(self) -> None:
        # Updates carry the new object; the sync reads the cache anyway.
        self.pod_informer.add_event_handler(
            lambda event_type, obj: self.enqueue(self.pod_queue, obj)
        )
        self.claim_informer.add_event_handler(
            lambda event_type, obj: self.enqueue(self.claim_queue, obj)
        )
        self.statefulset_informer.add_event_handler(
            lambda event_type, obj: self.enqueue(self.statefulset_queue, obj)
        )

    def enqueue(self, queue: WorkQueue, obj: dict[str, Any]) -> None:
        """Put the key of an object on a work queue."""
        try:
            key = object_key(obj)
        except InvalidKeyError:
            self._logger.exception("Failed to get key from object")
            return
        queue.add(key)
        self._logger.debug("Enqueued for sync", queue=queue.name, key=key)

    # Lifecycle

    def start(self) -> None:
        """Start the informer threads."""
        self._logger.info(
            "Starting controller",
            namespace=self.namespace or "<all>",
            selector=str(self.resolver.selector),
            dry_run=self.dry_run,
        )
        for informer in self.informers:
            self._spawn(
                f"informer-{informer.kind}", informer.run, self._stop
            )

    def wait_for_cache_sync(self, timeout: float | None = None) -> bool:
        """Wait until every informer has listed its resources once.

        Returns
        -------
        synced : `bool`
            `False` if the controller was stopped or the timeout expired
            first.
        """
        return wait_for_cache_sync(self.informers, self._stop, timeout)

    def start_workers(self) -> None:
        """Start one worker thread per work queue."""
        for queue, sync in self._queues():
            self._spawn(f"worker-{queue.name}", self._run_worker, queue, sync)

    def run(self, sync_timeout: float | None = None) -> None:
        """Run the controller until `stop` is called.

        Raises
        ------
        kubevolumecleaner.cache.CacheSyncError
            Raised if the caches did not sync before ``sync_timeout`` or the
            controller was stopped during startup.
        """
        self.start()
        if not self.wait_for_cache_sync(sync_timeout):
            self.stop()
            raise CacheSyncError("timed out waiting for caches to sync")
        self.start_workers()
        self._stop.wait()
        self.stop()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the informers and workers.

        Syncs that are in progress run to completion; the call waits up to
        ``timeout`` seconds for each thread.
        """
        if not self._stop.is_set():
            self._logger.info("Stopping controller")
        self._stop.set()
        for informer in self.informers:
            informer.stop()
        for queue, _ in self._queues():
            queue.shutdown()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=timeout)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def status(self) -> dict[str, Any]:
        """Summarize the cache and queue state, for health probes."""
        return {
            "synced": {i.kind: i.has_synced() for i in self.informers},
            "queues": {q.name: len(q) for q, _ in self._queues()},
        }

    def _queues(self) -> list[tuple[WorkQueue, SyncFunc]]:
        return [
            (self.pod_queue, self.sync_pod),
            (self.claim_queue, self.sync_claim),
            (self.statefulset_queue, self.sync_statefulset),
        ]

    def _spawn(self, name: str, target: Callable[..., Any], *args: Any) -> None:
        thread = threading.Thread(
            target=target, args=args, name=name, daemon=True
        )
        self._threads.append(thread)
        thread.start()

    def _run_worker(self, queue: WorkQueue, sync: SyncFunc) -> None:
        while self.process_next_item(queue, sync):
            pass
        self._logger.debug("Worker stopped", queue=queue.name)

    def process_next_item(self, queue: WorkQueue, sync: SyncFunc) -> bool:
        """Take one key from a queue and sync it.

        Failures are logged and do not stop the worker.

        Returns
        -------
        more : `bool`
            `False` once the queue has shut down.
        """
        key, shutdown = queue.get()
        if shutdown:
            return False
        try:
            sync(key)
        except InvalidKeyError:
            self._logger.warning(
                "Dropping malformed key", queue=queue.name, key=key
            )
            queue.forget(key)
        except Exception:
            self._logger.exception(
                "Failed to sync", queue=queue.name, key=key
            )
            if self.retry_on_error:
                queue.add_rate_limited(key)
        else:
            queue.forget(key)
        finally:
            queue.done(key)
        return True

    # Pods

    def sync_pod(self, key: str) -> None:
        """Queue the claims whose mount state may have changed with a pod."""
        namespace, name = split_key(key)
        pod = self.pod_informer.cache.get(namespace, name)
        if pod is None:
            self._handle_pod_deletion(namespace, name)
            return

        if is_deleting(pod):
            # Pods pending deletion are handled once they are gone.
            self._logger.debug(
                "Pod is pending deletion, not handling",
                namespace=namespace,
                pod=name,
            )
            return

        for claim in self.resolver.find_claims_for_pod(pod):
            self.enqueue(self.claim_queue, claim)

    def _handle_pod_deletion(self, namespace: str, name: str) -> None:
        self._logger.debug("Pod deleted", namespace=namespace, pod=name)
        # The deleted pod's volumes are unknown, so check every claim of
        # the namespace.
        for claim in self.claim_informer.cache.list(namespace):
            self.enqueue(self.claim_queue, claim)

    # StatefulSets

    def sync_statefulset(self, key: str) -> None:
        """Queue the pods or claims related to a StatefulSet."""
        namespace, name = split_key(key)
        statefulset = self.resolver.get_statefulset(namespace, name)
        if statefulset is None:
            self._logger.debug(
                "StatefulSet deleted", namespace=namespace, statefulset=name
            )
            for claim in self.resolver.find_claims_for_statefulset(
                namespace, name
            ):
                self.enqueue(self.claim_queue, claim)
            return

        for pod in self.resolver.find_pods_for_statefulset(statefulset):
            self.enqueue(self.pod_queue, pod)

    # PersistentVolumeClaims

    def sync_claim(self, key: str) -> None:
        """Bring a claim's managed-by label up to date, or delete the claim
        if it is orphaned.
        """
        namespace, name = split_key(key)
        logger = self._logger.bind(namespace=namespace, claim=name)

        claim = self.claim_informer.cache.get(namespace, name)
        if claim is None:
            logger.debug("Claim deleted")
            return

        if is_deleting(claim):
            logger.debug("Claim is pending deletion, not handling")
            return

        pod = self.resolver.find_pod_for_claim(claim)
        if pod is None:
            self._sync_unmounted_claim(claim, logger)
            return

        pod_name = pod["metadata"]["name"]
        statefulset = self.resolver.find_statefulset_for_pod(pod)
        if statefulset is None:
            logger.debug(
                "Pod mounting claim is not controlled by a StatefulSet",
                pod=pod_name,
            )
            self.actions.remove_managed_by(claim)
            return

        statefulset_name = statefulset["metadata"]["name"]
        if not self.resolver.in_scope(statefulset):
            logger.debug(
                "StatefulSet controlling pod does not match label selector",
                pod=pod_name,
                statefulset=statefulset_name,
                selector=str(self.resolver.selector),
            )
            self.actions.remove_managed_by(claim)
            return

        if not self.actions.set_managed_by(claim, statefulset_name):
            logger.debug("Label is up to date", statefulset=statefulset_name)

    def _sync_unmounted_claim(
        self, claim: dict[str, Any], logger: Any
    ) -> None:
        statefulset_name = get_managed_by(claim)
        if statefulset_name is None:
            logger.debug("Claim is not mounted and not managed, skipping")
            return

        namespace = claim["metadata"].get("namespace") or ""
        statefulset = self.resolver.get_statefulset(
            namespace, statefulset_name
        )
        if statefulset is not None:
            if self.resolver.in_scope(statefulset):
                logger.debug(
                    "StatefulSet managing claim still present, "
                    "not deleting claim",
                    statefulset=statefulset_name,
                )
                return
            logger.debug(
                "StatefulSet managing claim does not match label selector",
                statefulset=statefulset_name,
                selector=str(self.resolver.selector),
            )
            self.actions.remove_managed_by(claim)
            return

        logger.debug(
            "StatefulSet managing claim is gone", statefulset=statefulset_name
        )
        self.actions.delete(claim)
