from __future__ import annotations

from nimbus_controller.src.constants import ANNOTATION_PREFIX, ENV_ANNOTATION_PREFIX


class NimbusError(RuntimeError):
    """Base class for every recoverable reconciliation failure.

    None of these are fatal to the process: the watch loop logs them and
    schedules a retry after the fixed requeue interval.
    """

    kind = "unknown"


class ConfigurationError(NimbusError):
    """A required sidecar setting resolved to an empty value."""

    kind = "configuration"

    def __init__(self, field: str, object_name: str) -> None:
        self.field = field
        self.object_name = object_name
        super().__init__(
            f"{field} env var is empty; add a value for the "
            f"'{self.annotation}' annotation onto deployment {object_name}."
        )

    @property
    def annotation(self) -> str:
        """The annotation an operator has to set to fix this error."""
        dotted = self.field.replace("_", ".").lower()
        return f"{ANNOTATION_PREFIX}{ENV_ANNOTATION_PREFIX}{dotted}"


class ExternalStoreError(NimbusError):
    """Listing, reading or patching Deployments failed."""

    kind = "store"

    def __init__(self, operation: str, cause: Exception) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")


class EventPublishError(NimbusError):
    """Publishing a Kubernetes Event failed."""

    kind = "event"

    def __init__(self, reason: str, cause: Exception) -> None:
        self.reason = reason
        self.cause = cause
        super().__init__(f"publishing {reason} event failed: {cause}")


class LifecycleError(NimbusError):
    """Adding or removing the finalizer marker failed.

    Kept distinct from :class:`ExternalStoreError` so operators can tell a
    failed sidecar patch apart from failed finalizer bookkeeping.
    """

    kind = "lifecycle"

    def __init__(self, action: str, cause: Exception) -> None:
        self.action = action
        self.cause = cause
        super().__init__(f"finalizer {action} failed: {cause}")
