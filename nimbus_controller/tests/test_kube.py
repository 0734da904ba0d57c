from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from nimbus_controller.src.constants import FINALIZER
from nimbus_controller.src.errors import EventPublishError, ExternalStoreError
from nimbus_controller.src.kube import (
    DeploymentStore,
    EventRecorder,
    add_finalizer_patch,
    build_clients,
    load_kube_configuration,
    remove_finalizer_patch,
)
from nimbus_controller.src.objects import ManagedObject

OBJ = ManagedObject(namespace="default", name="web", resource_version="7", uid="uid-web")


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("nimbus_controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("nimbus_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "nimbus_controller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("nimbus_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("nimbus_controller.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        core, apps = build_clients()

    assert core.name == "core"
    assert apps.name == "apps"


# ---------------------------------------------------------------------------
# DeploymentStore
# ---------------------------------------------------------------------------


def test_store_lists_single_namespace() -> None:
    apps_api = MagicMock()
    store = DeploymentStore(apps_api=apps_api, namespace="nimbus")

    store.probe()

    apps_api.list_namespaced_deployment.assert_called_once_with(namespace="nimbus", limit=1)
    apps_api.list_deployment_for_all_namespaces.assert_not_called()


def test_store_lists_all_namespaces_without_namespace() -> None:
    apps_api = MagicMock()
    store = DeploymentStore(apps_api=apps_api)

    store.list()

    apps_api.list_deployment_for_all_namespaces.assert_called_once_with()
    list_fn, scope = store.list_function
    assert list_fn is apps_api.list_deployment_for_all_namespaces
    assert scope == {}


def test_store_probe_wraps_api_errors() -> None:
    apps_api = MagicMock()
    apps_api.list_namespaced_deployment.side_effect = ApiException(status=403, reason="Forbidden")
    store = DeploymentStore(apps_api=apps_api, namespace="nimbus")

    with pytest.raises(ExternalStoreError) as exc_info:
        store.probe()

    assert exc_info.value.cause.status == 403


def test_store_read_returns_none_for_missing_deployment() -> None:
    apps_api = MagicMock()
    apps_api.read_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")
    store = DeploymentStore(apps_api=apps_api)

    assert store.read("default", "web") is None


def test_store_read_wraps_other_errors() -> None:
    apps_api = MagicMock()
    apps_api.read_namespaced_deployment.side_effect = ApiException(status=500, reason="boom")
    store = DeploymentStore(apps_api=apps_api)

    with pytest.raises(ExternalStoreError, match="read deployment default/web"):
        store.read("default", "web")


def test_store_patch_sends_field_manager() -> None:
    apps_api = MagicMock()
    store = DeploymentStore(apps_api=apps_api, field_manager="nimbus-controller")
    body = {"spec": {"template": {"metadata": {"labels": {"nimbus": "enabled"}}}}}

    store.patch(OBJ, body)

    apps_api.patch_namespaced_deployment.assert_called_once_with(
        name="web",
        namespace="default",
        body=body,
        field_manager="nimbus-controller",
    )


def test_store_patch_wraps_api_errors() -> None:
    apps_api = MagicMock()
    apps_api.patch_namespaced_deployment.side_effect = ApiException(status=409, reason="Conflict")
    store = DeploymentStore(apps_api=apps_api)

    with pytest.raises(ExternalStoreError, match="patch deployment default/web"):
        store.patch(OBJ, {})


def test_store_finalizer_helpers_send_json_patches() -> None:
    apps_api = MagicMock()
    store = DeploymentStore(apps_api=apps_api)
    finalized = ManagedObject(namespace="default", name="web", finalizers=(FINALIZER,))

    store.add_finalizer(OBJ)
    store.remove_finalizer(finalized)

    bodies = [call.kwargs["body"] for call in apps_api.patch_namespaced_deployment.call_args_list]
    assert bodies == [add_finalizer_patch(OBJ), remove_finalizer_patch(finalized)]
    assert all(isinstance(body, list) for body in bodies)


def test_store_remembers_resource_version_of_finalizer_add() -> None:
    apps_api = MagicMock()
    apps_api.patch_namespaced_deployment.return_value = SimpleNamespace(
        metadata=SimpleNamespace(resource_version="8")
    )
    store = DeploymentStore(apps_api=apps_api)

    assert store.add_finalizer(OBJ) == "8"
    assert not store.is_finalizer_write(("default", "web"), "7")
    assert store.is_finalizer_write(("default", "web"), "8")
    assert not store.is_finalizer_write(("default", "web"), "8")


def test_store_forget_drops_remembered_finalizer_add() -> None:
    apps_api = MagicMock()
    apps_api.patch_namespaced_deployment.return_value = SimpleNamespace(
        metadata=SimpleNamespace(resource_version="8")
    )
    store = DeploymentStore(apps_api=apps_api)
    store.add_finalizer(OBJ)

    store.forget(("default", "web"))

    assert not store.is_finalizer_write(("default", "web"), "8")


def test_store_ignores_finalizer_add_without_resource_version() -> None:
    apps_api = MagicMock()
    apps_api.patch_namespaced_deployment.return_value = None
    store = DeploymentStore(apps_api=apps_api)

    assert store.add_finalizer(OBJ) is None
    assert not store.is_finalizer_write(("default", "web"), None)


# ---------------------------------------------------------------------------
# Finalizer patches
# ---------------------------------------------------------------------------


def test_add_finalizer_patch_creates_list_when_absent() -> None:
    assert add_finalizer_patch(OBJ) == [
        {"op": "test", "path": "/metadata/finalizers", "value": None},
        {"op": "add", "path": "/metadata/finalizers", "value": [FINALIZER]},
    ]


def test_add_finalizer_patch_appends_guarded_by_resource_version() -> None:
    obj = ManagedObject(
        namespace="default", name="web", finalizers=("other/finalizer",), resource_version="9"
    )

    assert add_finalizer_patch(obj) == [
        {"op": "test", "path": "/metadata/resourceVersion", "value": "9"},
        {"op": "add", "path": "/metadata/finalizers/-", "value": FINALIZER},
    ]


def test_remove_finalizer_patch_targets_observed_index() -> None:
    obj = ManagedObject(
        namespace="default", name="web", finalizers=("other/finalizer", FINALIZER)
    )

    assert remove_finalizer_patch(obj) == [
        {"op": "test", "path": "/metadata/finalizers/1", "value": FINALIZER},
        {"op": "remove", "path": "/metadata/finalizers/1"},
    ]


# ---------------------------------------------------------------------------
# EventRecorder
# ---------------------------------------------------------------------------


def test_event_recorder_publishes_core_event() -> None:
    core_api = MagicMock()
    recorder = EventRecorder(
        core_api=core_api,
        reporter="annotations-controller",
        now_fn=lambda: "2026-01-01T00:00:00Z",
    )

    recorder.publish(OBJ, reason="NimbusEnabled", action="Enabling Nimbus", note="Enabled Nimbus for `web`")

    core_api.create_namespaced_event.assert_called_once()
    kwargs = core_api.create_namespaced_event.call_args.kwargs
    assert kwargs["namespace"] == "default"
    body = kwargs["body"]
    assert body["reason"] == "NimbusEnabled"
    assert body["message"] == "Enabled Nimbus for `web`"
    assert body["type"] == "Normal"
    assert body["action"] == "Enabling Nimbus"
    assert body["reportingComponent"] == "annotations-controller"
    assert body["reportingInstance"] == "annotations-controller"
    assert body["metadata"] == {"generateName": "web.", "namespace": "default"}
    assert body["involvedObject"] == {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "name": "web",
        "namespace": "default",
        "uid": "uid-web",
        "resourceVersion": "7",
    }
    assert body["firstTimestamp"] == body["lastTimestamp"] == "2026-01-01T00:00:00Z"


def test_event_recorder_wraps_api_errors() -> None:
    core_api = MagicMock()
    core_api.create_namespaced_event.side_effect = ApiException(status=500, reason="boom")
    recorder = EventRecorder(core_api=core_api)

    with pytest.raises(EventPublishError) as exc_info:
        recorder.publish(OBJ, reason="DeleteRequested", action="Deleting", note="Delete `web`")

    assert exc_info.value.reason == "DeleteRequested"
