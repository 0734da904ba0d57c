from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from nimbus_controller.src.constants import FINALIZER


@dataclass(frozen=True)
class ObservedContainer:
    name: str
    env: dict[str, str] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class ManagedObject:
    """Read-only snapshot of a watched Deployment.

    Only the fields the reconciler looks at are kept.  ``resource_version`` is
    carried solely so finalizer patches can be made optimistic.  Mapping
    fields take part in equality but not in the hash.
    """

    namespace: str
    name: str
    annotations: dict[str, str] = field(default_factory=dict, hash=False)
    containers: tuple[ObservedContainer, ...] = ()
    finalizers: tuple[str, ...] = ()
    deletion_timestamp: Any = None
    resource_version: str | None = None
    uid: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.finalizers

    def container(self, name: str) -> ObservedContainer | None:
        for container in self.containers:
            if container.name == name:
                return container
        return None

    @classmethod
    def from_deployment(cls, deployment: Any) -> ManagedObject:
        """Build a snapshot from a kubernetes ``V1Deployment`` (or look-alike).

        Missing metadata, spec or env entries read as empty rather than
        raising, the same way watch payloads are treated elsewhere.
        """
        metadata = getattr(deployment, "metadata", None)
        spec = getattr(deployment, "spec", None)
        template = getattr(spec, "template", None)
        pod_spec = getattr(template, "spec", None)

        containers = tuple(
            ObservedContainer(
                name=str(getattr(container, "name", "") or ""),
                env=_container_env(container),
            )
            for container in (getattr(pod_spec, "containers", None) or [])
        )

        return cls(
            namespace=str(getattr(metadata, "namespace", None) or ""),
            name=str(getattr(metadata, "name", None) or ""),
            annotations=_string_map(getattr(metadata, "annotations", None)),
            containers=containers,
            finalizers=tuple(getattr(metadata, "finalizers", None) or ()),
            deletion_timestamp=getattr(metadata, "deletion_timestamp", None),
            resource_version=getattr(metadata, "resource_version", None),
            uid=getattr(metadata, "uid", None),
        )


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw.items()
        if isinstance(k, str)
    }


def _container_env(container: Any) -> dict[str, str]:
    env: dict[str, str] = {}
    for entry in getattr(container, "env", None) or []:
        name = getattr(entry, "name", None)
        if not name:
            continue
        value = getattr(entry, "value", None)
        env[name] = "" if value is None else str(value)
    return env
