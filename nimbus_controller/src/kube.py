from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from nimbus_controller.src.constants import DEFAULT_FIELD_MANAGER, DEFAULT_REPORTER, FINALIZER
from nimbus_controller.src.errors import EventPublishError, ExternalStoreError
from nimbus_controller.src.objects import ManagedObject

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def utc_now_rfc3339() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class DeploymentStore:
    """Narrow, fallible view of the Deployment API used by the reconciler.

    Every ``ApiException`` is re-raised as :class:`ExternalStoreError` so the
    reconciler never has to know about the kubernetes client.  ``namespace``
    of ``None`` scopes listing and watching to all namespaces.

    The store also remembers, per Deployment, the ``resourceVersion`` written
    by its last finalizer add.  That write is only the first half of an apply;
    the watch event it produces shows the finalizer without the sidecar and
    must not be reconciled again.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        namespace: str | None = None,
        field_manager: str = DEFAULT_FIELD_MANAGER,
    ) -> None:
        self.apps_api = apps_api
        self.namespace = namespace
        self.field_manager = field_manager
        self._finalizer_writes: dict[tuple[str, str], str] = {}

    @property
    def list_function(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list call and its scoping kwargs, suitable for ``watch.Watch.stream``."""
        if self.namespace:
            return self.apps_api.list_namespaced_deployment, {"namespace": self.namespace}
        return self.apps_api.list_deployment_for_all_namespaces, {}

    def list(self, **kwargs: Any) -> Any:
        list_fn, scope = self.list_function
        try:
            return list_fn(**scope, **kwargs)
        except ApiException as exc:
            raise ExternalStoreError("list deployments", exc) from exc

    def probe(self) -> None:
        """List at most one Deployment to prove the API is reachable and authorised."""
        self.list(limit=1)

    def read(self, namespace: str, name: str) -> Any | None:
        """Fetch the current Deployment, or ``None`` when it no longer exists."""
        try:
            return self.apps_api.read_namespaced_deployment(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise ExternalStoreError(f"read deployment {namespace}/{name}", exc) from exc

    def patch(self, obj: ManagedObject, body: dict[str, Any] | list[dict[str, Any]]) -> Any:
        """Patch a Deployment.

        A dict body is sent as a strategic merge patch and a list body as a
        JSON patch; the kubernetes client picks the content type from the
        body shape.
        """
        try:
            return self.apps_api.patch_namespaced_deployment(
                name=obj.name,
                namespace=obj.namespace,
                body=body,
                field_manager=self.field_manager,
            )
        except ApiException as exc:
            raise ExternalStoreError(
                f"patch deployment {obj.namespace}/{obj.name}", exc
            ) from exc

    def add_finalizer(self, obj: ManagedObject, finalizer: str = FINALIZER) -> str | None:
        """Add *finalizer* and return the resulting ``resourceVersion``, if reported."""
        patched = self.patch(obj, add_finalizer_patch(obj, finalizer))
        resource_version = getattr(getattr(patched, "metadata", None), "resource_version", None)
        if not isinstance(resource_version, str) or not resource_version:
            return None
        self._finalizer_writes[obj.key] = resource_version
        return resource_version

    def is_finalizer_write(self, key: tuple[str, str], resource_version: str | None) -> bool:
        """Return True, once, for the event echoing our last finalizer add on *key*."""
        if resource_version is None or self._finalizer_writes.get(key) != resource_version:
            return False
        del self._finalizer_writes[key]
        return True

    def forget(self, key: tuple[str, str]) -> None:
        self._finalizer_writes.pop(key, None)

    def remove_finalizer(self, obj: ManagedObject, finalizer: str = FINALIZER) -> Any:
        return self.patch(obj, remove_finalizer_patch(obj, finalizer))


def add_finalizer_patch(obj: ManagedObject, finalizer: str = FINALIZER) -> list[dict[str, Any]]:
    """JSON patch appending *finalizer*, guarded against concurrent edits.

    An empty list is created only if it is still absent; appending to an
    existing list is guarded by ``resourceVersion``.
    """
    if not obj.finalizers:
        return [
            {"op": "test", "path": "/metadata/finalizers", "value": None},
            {"op": "add", "path": "/metadata/finalizers", "value": [finalizer]},
        ]
    return [
        {"op": "test", "path": "/metadata/resourceVersion", "value": obj.resource_version},
        {"op": "add", "path": "/metadata/finalizers/-", "value": finalizer},
    ]


def remove_finalizer_patch(
    obj: ManagedObject, finalizer: str = FINALIZER
) -> list[dict[str, Any]]:
    """JSON patch removing *finalizer* only if it is still at the index we saw."""
    index = obj.finalizers.index(finalizer)
    path = f"/metadata/finalizers/{index}"
    return [
        {"op": "test", "path": path, "value": finalizer},
        {"op": "remove", "path": path},
    ]


class EventRecorder:
    """Publishes core/v1 Events about a Deployment."""

    def __init__(
        self,
        core_api: CoreV1Api,
        reporter: str = DEFAULT_REPORTER,
        instance: str | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.core_api = core_api
        self.reporter = reporter
        self.instance = instance or reporter
        self.now_fn = now_fn

    def build_event(
        self,
        obj: ManagedObject,
        reason: str,
        action: str,
        note: str,
        event_type: str = "Normal",
    ) -> dict[str, Any]:
        timestamp = self.now_fn()
        involved_object = {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "name": obj.name,
            "namespace": obj.namespace,
        }
        if obj.uid:
            involved_object["uid"] = obj.uid
        if obj.resource_version:
            involved_object["resourceVersion"] = obj.resource_version

        return {
            "metadata": {"generateName": f"{obj.name}.", "namespace": obj.namespace},
            "involvedObject": involved_object,
            "reason": reason,
            "message": note,
            "action": action,
            "type": event_type,
            "source": {"component": self.reporter},
            "reportingComponent": self.reporter,
            "reportingInstance": self.instance,
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }

    def publish(
        self,
        obj: ManagedObject,
        reason: str,
        action: str,
        note: str,
        event_type: str = "Normal",
    ) -> None:
        body = self.build_event(obj, reason=reason, action=action, note=note, event_type=event_type)
        try:
            self.core_api.create_namespaced_event(namespace=obj.namespace, body=body)
        except ApiException as exc:
            raise EventPublishError(reason, exc) from exc
        LOGGER.debug("Published %s event for %s/%s", reason, obj.namespace, obj.name)
