from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from nimbus_controller.src.constants import FINALIZER
from nimbus_controller.src.errors import ExternalStoreError, LifecycleError
from nimbus_controller.src.objects import ManagedObject

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class FinalizerStore(Protocol):
    def add_finalizer(self, obj: ManagedObject, finalizer: str = ...) -> object: ...

    def remove_finalizer(self, obj: ManagedObject, finalizer: str = ...) -> object: ...


class FinalizerEvent(enum.Enum):
    APPLY = "apply"
    CLEANUP = "cleanup"


@dataclass(frozen=True)
class FinalizerState:
    present: bool
    deleting: bool

    @classmethod
    def of(cls, obj: ManagedObject, finalizer: str = FINALIZER) -> FinalizerState:
        return cls(present=finalizer in obj.finalizers, deleting=obj.deleting)

    def next_event(self) -> FinalizerEvent | None:
        """Return the work to run for this state, or ``None`` when there is none.

        A Deployment being deleted without our marker was either never
        managed or has already been cleaned up.
        """
        if self.deleting:
            return FinalizerEvent.CLEANUP if self.present else None
        return FinalizerEvent.APPLY


def run_with_finalizer(
    store: FinalizerStore,
    obj: ManagedObject,
    apply: Callable[[ManagedObject], T],
    cleanup: Callable[[ManagedObject], T],
    finalizer: str = FINALIZER,
) -> T | None:
    """Run *apply* or *cleanup* for *obj*, keeping the finalizer marker consistent.

    Apply: the marker is added first (if absent) so apply work never lands on
    a Deployment that could be deleted without cleanup.

    Cleanup: the marker is removed only after *cleanup* returns.  If cleanup
    raises, the marker stays and deletion remains blocked until a later
    attempt succeeds.

    Errors from *apply* and *cleanup* propagate unchanged; failures of the
    marker bookkeeping itself are raised as :class:`LifecycleError`.
    Returns ``None`` when there was nothing to do.
    """
    state = FinalizerState.of(obj, finalizer)
    event = state.next_event()

    if event is None:
        LOGGER.info(
            "Deployment %s/%s is being deleted and carries no %s finalizer; nothing to clean up",
            obj.namespace,
            obj.name,
            finalizer,
        )
        return None

    if event is FinalizerEvent.APPLY:
        if not state.present:
            try:
                store.add_finalizer(obj, finalizer)
            except ExternalStoreError as exc:
                raise LifecycleError("add", exc) from exc
            LOGGER.info("Added finalizer %s to deployment %s/%s", finalizer, obj.namespace, obj.name)
        return apply(obj)

    result = cleanup(obj)
    try:
        store.remove_finalizer(obj, finalizer)
    except ExternalStoreError as exc:
        raise LifecycleError("remove", exc) from exc
    LOGGER.info("Removed finalizer %s from deployment %s/%s", finalizer, obj.namespace, obj.name)
    return result
