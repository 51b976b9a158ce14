from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from cabundle_sync.src.config import load_config
from cabundle_sync.src.errors import CABundleSyncError
from cabundle_sync.src.health import start_health_server
from cabundle_sync.src.kube import build_admission_api, load_kube_configuration
from cabundle_sync.src.metrics import METRICS
from cabundle_sync.src.reconciler import CABundleReconciler

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
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
        "[REDACTED PRIVATE KEY]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> int:
    """Entrypoint: configure logging, start the health server, and run the reconciler."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
    except CABundleSyncError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if not config.enabled:
        logger.info("Webhook configuration reconciliation is disabled")
        ready = threading.Event()
        ready.set()
        health_server = start_health_server(ready=ready, port=config.health_port)
        while not shutdown_event.wait(timeout=1.0):
            pass
        health_server.shutdown()
        logger.info("Reconciler stopped")
        return 0

    load_kube_configuration(config.kubeconfig)
    reconciler = CABundleReconciler(config=config, admission_api=build_admission_api())
    health_server = start_health_server(
        ready=reconciler.ready,
        port=config.health_port,
        retry_pending=lambda: reconciler.pending_retry is not None,
    )

    exit_code = 0
    try:
        reconciler.run_forever(shutdown_event=shutdown_event)
    except CABundleSyncError:
        logger.exception("Failed to start CA bundle reconciliation")
        exit_code = 1
    finally:
        health_server.shutdown()

    logger.info("Reconciler stopped")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
