from __future__ import annotations

from typing import Any

from nimbus_controller.src.config import CirrusEnvironment
from nimbus_controller.src.constants import (
    ENABLED_LABEL,
    SIDECAR_IMAGE,
    SIDECAR_NAME,
    SIDECAR_PORT,
    SIDECAR_PULL_POLICY,
    SIDECAR_VOLUME_MOUNT_PATH,
    SIDECAR_VOLUME_NAME,
    SIDECAR_VOLUME_SIZE_LIMIT,
)


def env_list(environment: CirrusEnvironment) -> list[dict[str, str]]:
    """Project the environment into container ``env`` entries, sorted by name.

    Sorting keeps two builds from equal environments byte-identical, so the
    patch never flaps between equivalent orderings.
    """
    return [{"name": name, "value": value} for name, value in environment.items()]


def build_sidecar_container(environment: CirrusEnvironment) -> dict[str, Any]:
    return {
        "name": SIDECAR_NAME,
        "image": SIDECAR_IMAGE,
        "imagePullPolicy": SIDECAR_PULL_POLICY,
        "ports": [{"containerPort": SIDECAR_PORT, "name": SIDECAR_NAME}],
        "env": env_list(environment),
        "volumeMounts": [
            {"name": SIDECAR_VOLUME_NAME, "mountPath": SIDECAR_VOLUME_MOUNT_PATH}
        ],
    }


def build_sidecar_patch(environment: CirrusEnvironment) -> dict[str, Any]:
    """Return the strategic-merge patch that injects the cirrus sidecar.

    Containers and volumes merge by name, so other containers in the pod
    template are left untouched.
    """
    label_key, label_value = ENABLED_LABEL
    return {
        "spec": {
            "template": {
                "metadata": {"labels": {label_key: label_value}},
                "spec": {
                    "containers": [build_sidecar_container(environment)],
                    "volumes": [
                        {
                            "name": SIDECAR_VOLUME_NAME,
                            "emptyDir": {"sizeLimit": SIDECAR_VOLUME_SIZE_LIMIT},
                        }
                    ],
                },
            }
        }
    }
