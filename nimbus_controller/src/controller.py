from __future__ import annotations

import logging
import math
import random
import threading
import time
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from nimbus_controller.src.errors import ExternalStoreError, NimbusError
from nimbus_controller.src.kube import DeploymentStore
from nimbus_controller.src.metrics import METRICS
from nimbus_controller.src.reconciler import DeploymentReconciler, ReconcileOutcome

Key = tuple[str, str]


def _deployment_key(deployment: Any) -> Key | None:
    metadata = getattr(deployment, "metadata", None)
    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not namespace or not name:
        return None
    return (namespace, name)


def _resource_version(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


def _access_denied(exc: BaseException) -> bool:
    if isinstance(exc, ExternalStoreError):
        exc = exc.cause
    return isinstance(exc, ApiException) and exc.status in {401, 403}


def _gone(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 410


class DeploymentController:
    """Watches Deployments and feeds them through the reconciler one at a time.

    Events are handled sequentially on the calling thread, so there is never
    more than one reconciliation in flight for a Deployment.  Besides change
    events, every outcome that asks for a timed re-check (and every failed
    attempt) is remembered in ``_pending_requeues``, keyed by
    ``(namespace, name)`` with a ``time.monotonic()`` due-at timestamp.  Due
    entries are re-read from the API and reconciled between watch events; the
    watch timeout is shortened so they fire on time.
    """

    def __init__(
        self,
        store: DeploymentStore,
        reconciler: DeploymentReconciler,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.logger = logger or logging.getLogger(__name__)

        self._pending_requeues: dict[Key, float] = {}
        METRICS.pending_requeues.set(0)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream.

        A reconciliation already running is allowed to finish; no new one starts.
        """
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _schedule(self, key: Key, delay_seconds: float | None, now_monotonic: float) -> None:
        if delay_seconds is None:
            self._pending_requeues.pop(key, None)
        else:
            self._pending_requeues[key] = now_monotonic + delay_seconds
        METRICS.pending_requeues.set(len(self._pending_requeues))

    def _forget(self, key: Key) -> None:
        self._pending_requeues.pop(key, None)
        METRICS.pending_requeues.set(len(self._pending_requeues))

    def reconcile_deployment(
        self, deployment: Any, now_monotonic: float | None = None
    ) -> ReconcileOutcome | None:
        """Reconcile one Deployment and schedule its next re-check.

        Returns the outcome, or ``None`` when the attempt failed; failures are
        logged through the reconciler's error policy and retried later.
        """
        key = _deployment_key(deployment)
        if key is None:
            self.logger.warning("Skipping Deployment without namespace or name")
            return None
        if now_monotonic is None:
            now_monotonic = time.monotonic()

        try:
            outcome = self.reconciler.reconcile(deployment)
        except NimbusError as exc:
            delay = self.reconciler.error_policy(deployment, exc)
            self._schedule(key, delay, now_monotonic)
            return None
        except Exception as exc:
            self.logger.exception("Unexpected error reconciling deployment %s/%s", *key)
            delay = self.reconciler.error_policy(deployment, exc)
            self._schedule(key, delay, now_monotonic)
            return None

        self._schedule(key, outcome.requeue_after, now_monotonic)
        return outcome

    def handle_deployment_event(self, event_type: str, deployment: Any) -> ReconcileOutcome | None:
        """Process a single Deployment watch event.

        ``DELETED`` events only drop any scheduled re-check: by then the
        finalizer has already been removed.  ``ADDED`` and ``MODIFIED`` are
        reconciled, except the event echoing our own finalizer add, which
        shows a half-applied Deployment.  Anything else is ignored.
        """
        key = _deployment_key(deployment)
        if event_type == "DELETED":
            if key is not None:
                self._forget(key)
                self.store.forget(key)
            return None
        if event_type not in {"ADDED", "MODIFIED"}:
            return None
        if key is not None and self.store.is_finalizer_write(key, _resource_version(deployment)):
            self.logger.debug("Ignoring finalizer write echo for deployment %s/%s", *key)
            return None
        return self.reconcile_deployment(deployment)

    def _drain_pending_requeues(self, now_monotonic: float) -> None:
        """Re-read and reconcile every Deployment whose re-check is due."""
        due = [key for key, due_at in self._pending_requeues.items() if due_at <= now_monotonic]
        for namespace, name in due:
            try:
                deployment = self.store.read(namespace, name)
            except ExternalStoreError:
                self.logger.exception("Failed to re-read deployment %s/%s", namespace, name)
                self._schedule(
                    (namespace, name), float(self.reconciler.requeue_seconds), now_monotonic
                )
                continue

            if deployment is None:
                self.logger.info("Deployment %s/%s no longer exists; dropping re-check", namespace, name)
                self._forget((namespace, name))
                continue

            self.reconcile_deployment(deployment, now_monotonic=now_monotonic)

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout in seconds, shortened for pending re-checks."""
        if not self._pending_requeues:
            return 30

        nearest_due = min(self._pending_requeues.values())
        remaining = max(1.0, nearest_due - now_monotonic)
        return min(30, max(1, math.ceil(remaining)))

    def _list_and_reconcile(self) -> str | None:
        """List every Deployment in scope, reconcile each, and return the list's resourceVersion."""
        listing = self.store.list()
        for deployment in getattr(listing, "items", None) or []:
            self.reconcile_deployment(deployment)
        return _resource_version(listing)

    def _back_off(self, stop: threading.Event, delay_seconds: int) -> int:
        stop.wait(timeout=delay_seconds * (0.5 + random.random()))  # noqa: S311
        return min(delay_seconds * 2, 30)

    def _denied(self, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s. "
            "Check controller RBAC and service account permissions.",
            during,
        )
        self.ready.clear()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List, then watch Deployments until shutdown.

        Readiness is set once the first listing has been reconciled.  An
        expired ``resourceVersion`` triggers a fresh listing; other failures
        back off with jitter up to 30 s.  ``401`` / ``403`` end the loop.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list_and_reconcile()
            except ExternalStoreError as exc:
                if _access_denied(exc):
                    self._denied("initial list")
                    return
                self.logger.exception("Initial Deployment list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial Deployment list")
                METRICS.watch_errors_total.inc()
            else:
                self.ready.set()
                self.logger.info("Watching Deployments from resourceVersion %s", resource_version)
                break
            backoff_seconds = self._back_off(stop, backoff_seconds)

        list_fn, scope = self.store.list_function
        backoff_seconds = 1
        streams_opened = 0
        while not self._should_stop(stop):
            self._drain_pending_requeues(now_monotonic=time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if streams_opened:
                    METRICS.watch_reconnects_total.inc()
                streams_opened += 1
                for event in watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                    **scope,
                ):
                    if self._should_stop(stop):
                        break
                    deployment = event.get("object")
                    if deployment is None:
                        continue
                    resource_version = _resource_version(deployment) or resource_version
                    self.handle_deployment_event(str(event.get("type", "")), deployment)
                    self._drain_pending_requeues(now_monotonic=time.monotonic())
                backoff_seconds = 1
            except ApiException as exc:
                if _gone(exc):
                    self.logger.warning("Watch resourceVersion %s expired, re-listing", resource_version)
                    try:
                        resource_version = self._list_and_reconcile()
                    except ExternalStoreError as relist_exc:
                        if _access_denied(relist_exc):
                            self._denied("re-list")
                            return
                        self.logger.exception("Re-list after 410 failed")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue
                METRICS.watch_errors_total.inc()
                if _access_denied(exc):
                    self._denied(f"watch (status={exc.status})")
                    return
                self.logger.exception("Deployment watch failed")
                backoff_seconds = self._back_off(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._back_off(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
