from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field

from nimbus_controller.src.constants import (
    ANNOTATION_PREFIX,
    APP_ID,
    APP_NAME,
    CHANNEL,
    CIRRUS_FML_PATH,
    DEFAULT_FIELD_MANAGER,
    DEFAULT_FML_PATH,
    DEFAULT_REFRESH_RATE_IN_SECONDS,
    DEFAULT_REMOTE_SETTING_URL,
    DEFAULT_REPORTER,
    DEFAULT_REQUEUE_SECONDS,
    ENV_ANNOTATION_PREFIX,
    REMOTE_SETTING_REFRESH_RATE_IN_SECONDS,
    REMOTE_SETTING_URL,
    REQUIRED_KEYS,
)
from nimbus_controller.src.errors import ConfigurationError


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


@dataclass(frozen=True)
class DefaultConfiguration:
    """Sidecar settings every Deployment starts from before annotations apply.

    Assembled once at startup and handed to the extractor explicitly, so the
    reconciler never reads the process environment on its own.
    """

    remote_setting_url: str = DEFAULT_REMOTE_SETTING_URL
    remote_setting_refresh_rate_in_seconds: str = DEFAULT_REFRESH_RATE_IN_SECONDS
    cirrus_fml_path: str = DEFAULT_FML_PATH
    app_id: str = ""
    app_name: str = ""
    channel: str = ""

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> DefaultConfiguration:
        values = env if env is not None else os.environ
        return cls(
            remote_setting_url=values.get(REMOTE_SETTING_URL, DEFAULT_REMOTE_SETTING_URL),
            remote_setting_refresh_rate_in_seconds=values.get(
                REMOTE_SETTING_REFRESH_RATE_IN_SECONDS, DEFAULT_REFRESH_RATE_IN_SECONDS
            ),
            cirrus_fml_path=values.get(CIRRUS_FML_PATH, DEFAULT_FML_PATH),
            app_id=values.get(APP_ID, ""),
            app_name=values.get(APP_NAME, ""),
            channel=values.get(CHANNEL, ""),
        )

    def as_dict(self) -> dict[str, str]:
        return {
            REMOTE_SETTING_URL: self.remote_setting_url,
            REMOTE_SETTING_REFRESH_RATE_IN_SECONDS: self.remote_setting_refresh_rate_in_seconds,
            APP_ID: self.app_id,
            APP_NAME: self.app_name,
            CHANNEL: self.channel,
            CIRRUS_FML_PATH: self.cirrus_fml_path,
        }


@dataclass
class CirrusEnvironment:
    """Environment variables handed to the cirrus sidecar.

    Two environments are equal when they hold the same key/value pairs;
    iteration is always in sorted key order.
    """

    values: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_defaults(cls, defaults: DefaultConfiguration) -> CirrusEnvironment:
        return cls(values=defaults.as_dict())

    def set(self, key: str, value: str) -> str | None:
        previous = self.values.get(key)
        self.values[key] = value
        return previous

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.values.get(key, default)

    def items(self) -> list[tuple[str, str]]:
        return sorted(self.values.items())

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self.items())

    def __len__(self) -> int:
        return len(self.values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CirrusEnvironment):
            return NotImplemented
        return self.values == other.values

    def validate(self, object_name: str) -> None:
        """Raise :class:`ConfigurationError` for the first required key that is empty."""
        for key in REQUIRED_KEYS:
            if not self.values.get(key):
                raise ConfigurationError(field=key, object_name=object_name)


def annotation_overrides(annotations: Mapping[str, str]) -> dict[str, str]:
    """Map ``nimbus.mozilla.org/env.<dotted.name>`` annotations to env var names.

    ``nimbus.mozilla.org/env.app.id`` becomes ``APP_ID``.  Annotations under
    the prefix that are not ``env.`` entries are ignored.
    """
    overrides: dict[str, str] = {}
    for key, value in annotations.items():
        if not key.startswith(ANNOTATION_PREFIX):
            continue
        name = key[len(ANNOTATION_PREFIX) :]
        if not name.startswith(ENV_ANNOTATION_PREFIX):
            continue
        env_name = name[len(ENV_ANNOTATION_PREFIX) :].replace(".", "_").upper()
        overrides[env_name] = "" if value is None else str(value)
    return overrides


def extract_configuration(
    annotations: Mapping[str, str],
    object_name: str,
    defaults: DefaultConfiguration,
) -> CirrusEnvironment:
    """Build and validate the sidecar environment for one Deployment."""
    environment = CirrusEnvironment.from_defaults(defaults)
    for key, value in annotation_overrides(annotations).items():
        environment.set(key, value)
    environment.validate(object_name)
    return environment


@dataclass(frozen=True)
class ControllerSettings:
    """Process-level controller settings loaded from the environment at startup.

    Attributes:
        namespace:        Namespace to watch, or ``None`` for all namespaces.
        health_port:      Port of the status/metrics HTTP server.
        requeue_seconds:  Fixed drift re-check and retry interval.
        reporter:         ``reportingComponent`` stamped on published events.
        field_manager:    Field manager name sent with sidecar patches.
    """

    namespace: str | None = None
    health_port: int = 8080
    requeue_seconds: int = DEFAULT_REQUEUE_SECONDS
    reporter: str = DEFAULT_REPORTER
    field_manager: str = DEFAULT_FIELD_MANAGER
    defaults: DefaultConfiguration = field(default_factory=DefaultConfiguration)


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    values = env if env is not None else os.environ

    namespace = (values.get("WATCH_NAMESPACE") or values.get("NAMESPACE") or "").strip() or None
    reporter = values.get("REPORTER", DEFAULT_REPORTER).strip()
    if not reporter:
        raise ValueError("REPORTER must be a non-empty string")
    field_manager = values.get("FIELD_MANAGER", DEFAULT_FIELD_MANAGER).strip()
    if not field_manager:
        raise ValueError("FIELD_MANAGER must be a non-empty string")

    return ControllerSettings(
        namespace=namespace,
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        requeue_seconds=env_int("REQUEUE_SECONDS", DEFAULT_REQUEUE_SECONDS, minimum=1, env=values),
        reporter=reporter,
        field_manager=field_manager,
        defaults=DefaultConfiguration.from_env(values),
    )
