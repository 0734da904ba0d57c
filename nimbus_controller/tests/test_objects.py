from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace

from nimbus_controller.src.objects import ManagedObject, ObservedContainer


def test_from_deployment_reads_metadata_and_containers() -> None:
    deleted_at = datetime(2026, 1, 1, tzinfo=UTC)
    deployment = SimpleNamespace(
        metadata=SimpleNamespace(
            name="web",
            namespace="default",
            annotations={"nimbus.mozilla.org/enabled": "true"},
            finalizers=["nimbus.mozilla.org/finalizer"],
            deletion_timestamp=deleted_at,
            resource_version="42",
            uid="abc",
        ),
        spec=SimpleNamespace(
            template=SimpleNamespace(
                spec=SimpleNamespace(
                    containers=[
                        SimpleNamespace(name="app", env=None),
                        SimpleNamespace(
                            name="cirrus",
                            env=[
                                SimpleNamespace(name="APP_ID", value="123"),
                                SimpleNamespace(name="FROM_SECRET", value=None),
                            ],
                        ),
                    ]
                )
            )
        ),
    )

    obj = ManagedObject.from_deployment(deployment)

    assert obj.key == ("default", "web")
    assert obj.deleting
    assert obj.has_finalizer
    assert obj.resource_version == "42"
    assert obj.uid == "abc"
    assert obj.container("app").env == {}
    assert obj.container("cirrus").env == {"APP_ID": "123", "FROM_SECRET": ""}
    assert obj.container("missing") is None


def test_from_deployment_tolerates_missing_fields() -> None:
    deployment = SimpleNamespace(
        metadata=SimpleNamespace(name="web", namespace="default", annotations=None),
        spec=None,
    )

    obj = ManagedObject.from_deployment(deployment)

    assert obj.annotations == {}
    assert obj.containers == ()
    assert obj.finalizers == ()
    assert not obj.deleting
    assert not obj.has_finalizer


def test_snapshots_are_hashable_and_compare_by_value() -> None:
    first = ManagedObject(
        namespace="default",
        name="web",
        annotations={"nimbus.mozilla.org/enabled": "true"},
        containers=(ObservedContainer(name="cirrus", env={"APP_ID": "123"}),),
        finalizers=("nimbus.mozilla.org/finalizer",),
    )
    same = ManagedObject(
        namespace="default",
        name="web",
        annotations={"nimbus.mozilla.org/enabled": "true"},
        containers=(ObservedContainer(name="cirrus", env={"APP_ID": "123"}),),
        finalizers=("nimbus.mozilla.org/finalizer",),
    )
    edited = ManagedObject(namespace="default", name="web", annotations={})

    assert hash(first) == hash(same)
    assert len({first, same}) == 1
    assert first != edited
    assert len({first, edited}) == 2
