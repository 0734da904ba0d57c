from __future__ import annotations

import json

from nimbus_controller.src.config import CirrusEnvironment, DefaultConfiguration, extract_configuration
from nimbus_controller.src.sidecar import build_sidecar_container, build_sidecar_patch, env_list


def _environment() -> CirrusEnvironment:
    return extract_configuration(
        {
            "nimbus.mozilla.org/enabled": "true",
            "nimbus.mozilla.org/env.app.id": "123",
            "nimbus.mozilla.org/env.app.name": "foo",
            "nimbus.mozilla.org/env.channel": "release",
        },
        "web",
        DefaultConfiguration(),
    )


def test_env_list_is_sorted_by_name() -> None:
    entries = env_list(_environment())

    assert [entry["name"] for entry in entries] == [
        "APP_ID",
        "APP_NAME",
        "CHANNEL",
        "CIRRUS_FML_PATH",
        "REMOTE_SETTING_REFRESH_RATE_IN_SECONDS",
        "REMOTE_SETTING_URL",
    ]
    assert entries[0] == {"name": "APP_ID", "value": "123"}


def test_equal_environments_build_identical_patches() -> None:
    forward = CirrusEnvironment(values={"A": "1", "B": "2", "C": "3"})
    backward = CirrusEnvironment(values={"C": "3", "B": "2", "A": "1"})

    assert json.dumps(build_sidecar_patch(forward)) == json.dumps(build_sidecar_patch(backward))


def test_sidecar_container_shape() -> None:
    container = build_sidecar_container(_environment())

    assert container["name"] == "cirrus"
    assert container["image"] == "experimenter-cirrus"
    assert container["imagePullPolicy"] == "IfNotPresent"
    assert container["ports"] == [{"containerPort": 8001, "name": "cirrus"}]
    assert container["volumeMounts"] == [{"name": "cirrus-glean", "mountPath": "/glean"}]


def test_sidecar_patch_adds_label_container_and_volume() -> None:
    patch = build_sidecar_patch(_environment())

    template = patch["spec"]["template"]
    assert template["metadata"]["labels"] == {"nimbus": "enabled"}
    assert [c["name"] for c in template["spec"]["containers"]] == ["cirrus"]
    assert template["spec"]["volumes"] == [
        {"name": "cirrus-glean", "emptyDir": {"sizeLimit": "2Mi"}}
    ]
