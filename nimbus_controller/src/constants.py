from __future__ import annotations

ANNOTATION_PREFIX = "nimbus.mozilla.org/"
ENABLED_ANNOTATION = f"{ANNOTATION_PREFIX}enabled"
ENV_ANNOTATION_PREFIX = "env."
FINALIZER = f"{ANNOTATION_PREFIX}finalizer"

# Pod template label applied alongside the sidecar.
ENABLED_LABEL = ("nimbus", "enabled")

REMOTE_SETTING_URL = "REMOTE_SETTING_URL"
REMOTE_SETTING_REFRESH_RATE_IN_SECONDS = "REMOTE_SETTING_REFRESH_RATE_IN_SECONDS"
APP_ID = "APP_ID"
APP_NAME = "APP_NAME"
CHANNEL = "CHANNEL"
CIRRUS_FML_PATH = "CIRRUS_FML_PATH"

REQUIRED_KEYS: tuple[str, ...] = (APP_ID, APP_NAME, CHANNEL)

DEFAULT_REMOTE_SETTING_URL = (
    "https://firefox.settings.services.mozilla.com/v1/buckets/main/"
    "collections/nimbus-web-experiments/records"
)
DEFAULT_REFRESH_RATE_IN_SECONDS = "10"
DEFAULT_FML_PATH = "/nimbus.fml.yaml"

SIDECAR_NAME = "cirrus"
SIDECAR_IMAGE = "experimenter-cirrus"
SIDECAR_PULL_POLICY = "IfNotPresent"
SIDECAR_PORT = 8001
SIDECAR_VOLUME_NAME = "cirrus-glean"
SIDECAR_VOLUME_MOUNT_PATH = "/glean"
SIDECAR_VOLUME_SIZE_LIMIT = "2Mi"

EVENT_NIMBUS_ENABLED = "NimbusEnabled"
EVENT_DELETE_REQUESTED = "DeleteRequested"

DEFAULT_REQUEUE_SECONDS = 5 * 60
DEFAULT_REPORTER = "annotations-controller"
DEFAULT_FIELD_MANAGER = "nimbus-controller"
