from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading
from datetime import UTC, datetime

from nimbus_controller.src.config import load_settings
from nimbus_controller.src.controller import DeploymentController
from nimbus_controller.src.diagnostics import Diagnostics, format_rfc3339
from nimbus_controller.src.errors import ExternalStoreError
from nimbus_controller.src.health import start_health_server
from nimbus_controller.src.kube import (
    DeploymentStore,
    EventRecorder,
    build_clients,
    load_kube_configuration,
)
from nimbus_controller.src.metrics import METRICS
from nimbus_controller.src.reconciler import DeploymentReconciler

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    ``ts`` is RFC 3339 in UTC, the same form the status endpoint reports
    ``last_event`` in.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": format_rfc3339(datetime.fromtimestamp(record.created, UTC)),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Install the JSON formatter on the root logger at ``LOG_LEVEL`` (default ``INFO``)."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, verify API access, and run the watch loop."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    settings = load_settings()

    load_kube_configuration()
    core_api, apps_api = build_clients()

    store = DeploymentStore(
        apps_api=apps_api,
        namespace=settings.namespace,
        field_manager=settings.field_manager,
    )
    try:
        store.probe()
    except ExternalStoreError as exc:
        logger.error("Deployments are not queryable; %s", exc)
        sys.exit(1)

    diagnostics = Diagnostics(reporter=settings.reporter)
    reconciler = DeploymentReconciler(
        store=store,
        recorder=EventRecorder(
            core_api=core_api,
            reporter=diagnostics.reporter,
            instance=os.getenv("POD_NAME") or None,
        ),
        diagnostics=diagnostics,
        defaults=settings.defaults,
        requeue_seconds=settings.requeue_seconds,
    )
    controller = DeploymentController(store=store, reconciler=reconciler)

    health_server = start_health_server(
        ready=controller.ready,
        diagnostics=diagnostics,
        port=settings.health_port,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Controller has started (namespace=%s)", settings.namespace or "<all namespaces>"
    )
    controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
