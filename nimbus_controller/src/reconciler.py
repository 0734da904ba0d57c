from __future__ import annotations

import enum
import functools
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from nimbus_controller.src.config import (
    CirrusEnvironment,
    DefaultConfiguration,
    extract_configuration,
)
from nimbus_controller.src.constants import (
    DEFAULT_REQUEUE_SECONDS,
    ENABLED_ANNOTATION,
    EVENT_DELETE_REQUESTED,
    EVENT_NIMBUS_ENABLED,
    FINALIZER,
    SIDECAR_NAME,
)
from nimbus_controller.src.diagnostics import Diagnostics
from nimbus_controller.src.errors import NimbusError
from nimbus_controller.src.finalizer import run_with_finalizer
from nimbus_controller.src.metrics import METRICS
from nimbus_controller.src.objects import ManagedObject
from nimbus_controller.src.sidecar import build_sidecar_patch


class Store(Protocol):
    def patch(self, obj: ManagedObject, body: Any) -> Any: ...

    def add_finalizer(self, obj: ManagedObject, finalizer: str = ...) -> Any: ...

    def remove_finalizer(self, obj: ManagedObject, finalizer: str = ...) -> Any: ...


class Recorder(Protocol):
    def publish(self, obj: ManagedObject, reason: str, action: str, note: str) -> None: ...


class ReconcileAction(enum.Enum):
    SKIP = "skip"
    PATCHED = "patched"
    CLEANED_UP = "cleaned_up"
    AWAIT_CHANGE = "await_change"


@dataclass(frozen=True)
class ReconcileOutcome:
    """What one reconciliation did and when it wants to run again.

    ``requeue_after`` of ``None`` means wait for the next change event.
    """

    action: ReconcileAction
    requeue_after: float | None = None

    @classmethod
    def await_change(cls) -> ReconcileOutcome:
        return cls(action=ReconcileAction.AWAIT_CHANGE)

    @classmethod
    def cleaned_up(cls) -> ReconcileOutcome:
        return cls(action=ReconcileAction.CLEANED_UP)


class ObjectState(enum.Enum):
    NOT_ENABLED = "not_enabled"
    UP_TO_DATE = "up_to_date"
    NEEDS_APPLY = "needs_apply"
    DELETING = "deleting"


@dataclass(frozen=True)
class Classification:
    state: ObjectState
    environment: CirrusEnvironment | None = None


def is_enabled(obj: ManagedObject) -> bool:
    return obj.annotations.get(ENABLED_ANNOTATION) == "true"


def observed_environment(
    obj: ManagedObject, defaults: DefaultConfiguration
) -> CirrusEnvironment | None:
    """Return the environment the injected sidecar currently runs with.

    The container's env is laid over the defaults, mirroring how the desired
    environment is built.  ``None`` means there is no sidecar (or it has no
    env at all) and a patch is needed.
    """
    container = obj.container(SIDECAR_NAME)
    if container is None or not container.env:
        return None
    environment = CirrusEnvironment.from_defaults(defaults)
    for key, value in container.env.items():
        environment.set(key, value)
    return environment


def classify(obj: ManagedObject, defaults: DefaultConfiguration) -> Classification:
    """Decide which state *obj* is in.

    Precedence, first match wins:

    1. A deletion timestamp means ``DELETING``, whatever the annotations say,
       so a Deployment being torn down is never patched.
    2. Without ``nimbus.mozilla.org/enabled: "true"`` it is ``NOT_ENABLED``.
    3. The annotations are turned into the desired environment; an invalid
       configuration raises :class:`ConfigurationError`.
    4. With the finalizer present and a sidecar running exactly the desired
       environment it is ``UP_TO_DATE``; otherwise ``NEEDS_APPLY``.

    Only the env is compared.  Ports and volumes of an existing sidecar are
    not checked.
    """
    if obj.deleting:
        return Classification(state=ObjectState.DELETING)

    if not is_enabled(obj):
        return Classification(state=ObjectState.NOT_ENABLED)

    desired = extract_configuration(obj.annotations, obj.name, defaults)
    if obj.has_finalizer and observed_environment(obj, defaults) == desired:
        return Classification(state=ObjectState.UP_TO_DATE, environment=desired)
    return Classification(state=ObjectState.NEEDS_APPLY, environment=desired)


class DeploymentReconciler:
    """Reconciles one Deployment at a time against its nimbus annotations.

    The watch loop calls :meth:`reconcile` for every change event and every
    timed requeue, and :meth:`error_policy` when :meth:`reconcile` raised.
    Callers must not run two reconciliations for the same Deployment
    concurrently; distinct Deployments may be reconciled in parallel.
    """

    def __init__(
        self,
        store: Store,
        recorder: Recorder,
        diagnostics: Diagnostics,
        defaults: DefaultConfiguration,
        requeue_seconds: float = DEFAULT_REQUEUE_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.diagnostics = diagnostics
        self.defaults = defaults
        self.requeue_seconds = requeue_seconds
        self.logger = logger or logging.getLogger(__name__)

    def _requeue(self, action: ReconcileAction) -> ReconcileOutcome:
        return ReconcileOutcome(action=action, requeue_after=float(self.requeue_seconds))

    def reconcile(self, deployment: Any) -> ReconcileOutcome:
        self.diagnostics.touch()
        obj = (
            deployment
            if isinstance(deployment, ManagedObject)
            else ManagedObject.from_deployment(deployment)
        )

        with METRICS.reconcile_duration_seconds.time():
            outcome = self._reconcile(obj)
        METRICS.reconciliations_total.labels(outcome=outcome.action.value).inc()
        return outcome

    def _reconcile(self, obj: ManagedObject) -> ReconcileOutcome:
        classification = classify(obj, self.defaults)
        state = classification.state

        if state is ObjectState.NOT_ENABLED:
            self.logger.info(
                'Deployment %s does not have an annotation equivalent to "%s=\'true\'"',
                obj.name,
                ENABLED_ANNOTATION,
            )
            return ReconcileOutcome.await_change()

        if state is ObjectState.UP_TO_DATE:
            self.logger.info(
                "Skipping this reconciliation; deployment %s is not being deleted, "
                "has been finalized, and the %s container is up to date",
                obj.name,
                SIDECAR_NAME,
            )
            return self._requeue(ReconcileAction.SKIP)

        if state is ObjectState.NEEDS_APPLY:
            self.logger.info('Reconciling Deployment "%s" in %s', obj.name, obj.namespace)

        result = run_with_finalizer(
            self.store,
            obj,
            apply=functools.partial(self._apply, environment=classification.environment),
            cleanup=self._cleanup,
            finalizer=FINALIZER,
        )
        return result if result is not None else ReconcileOutcome.await_change()

    def _apply(self, obj: ManagedObject, environment: CirrusEnvironment) -> ReconcileOutcome:
        self.logger.info("Deployment %s has enabled Nimbus", obj.name)
        self.recorder.publish(
            obj,
            reason=EVENT_NIMBUS_ENABLED,
            action="Enabling Nimbus",
            note=f"Enabled Nimbus for `{obj.name}`",
        )
        self.store.patch(obj, build_sidecar_patch(environment))
        METRICS.patches_total.inc()
        self.logger.info("Deployment %s patched", obj.name)
        return self._requeue(ReconcileAction.PATCHED)

    def _cleanup(self, obj: ManagedObject) -> ReconcileOutcome:
        self.recorder.publish(
            obj,
            reason=EVENT_DELETE_REQUESTED,
            action="Deleting",
            note=f"Delete `{obj.name}`",
        )
        self.logger.info("Cleaned up Deployment %s", obj.name)
        return ReconcileOutcome.cleaned_up()

    def error_policy(self, deployment: Any, error: Exception) -> float:
        """Return the delay before a failed reconciliation is retried."""
        kind = error.kind if isinstance(error, NimbusError) else "unknown"
        METRICS.reconcile_errors_total.labels(kind=kind).inc()
        name = getattr(getattr(deployment, "metadata", None), "name", None) or getattr(
            deployment, "name", "<unknown>"
        )
        self.logger.warning("reconcile failed for deployment %s: %s", name, error)
        return float(self.requeue_seconds)
