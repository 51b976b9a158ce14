from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from cabundle_sync.src.errors import ConfigError

DEFAULT_WEBHOOK_CONFIG_NAME = "istio-sidecar-injector"
DEFAULT_WEBHOOK_NAME = "sidecar-injector.istio.io"
DEFAULT_CA_CERT_FILE = "/etc/istio/certs/root-cert.pem"


@dataclass(frozen=True)
class ReconcilerConfig:
    """Immutable reconciler configuration loaded once at startup.

    Attributes:
        webhook_config_name: Name of the cluster-scoped
            ``MutatingWebhookConfiguration`` to keep in sync.
        webhook_name: Name of the single webhook entry whose
            ``clientConfig.caBundle`` may be patched.
        ca_cert_file: Path of the PEM bundle written by the rotation agent.
        retry_delay_seconds: Fixed delay before retrying a failed patch.
        enabled: When ``False`` the process serves health endpoints only.
        watch_timeout_seconds: Server-side timeout for each watch request.
        kubeconfig: Optional kubeconfig path for out-of-cluster runs.
        health_port: Port for ``/healthz``, ``/readyz`` and ``/metrics``.
    """

    webhook_config_name: str = DEFAULT_WEBHOOK_CONFIG_NAME
    webhook_name: str = DEFAULT_WEBHOOK_NAME
    ca_cert_file: str = DEFAULT_CA_CERT_FILE
    retry_delay_seconds: float = 1.0
    enabled: bool = True
    watch_timeout_seconds: int = 30
    kubeconfig: str | None = None
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


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
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _non_empty(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ReconcilerConfig:
    """Build a :class:`ReconcilerConfig` from environment variables.

    Environment variables (with defaults):
        ``WEBHOOK_CONFIG_NAME``     : target resource (``istio-sidecar-injector``).
        ``WEBHOOK_NAME``            : target webhook entry (``sidecar-injector.istio.io``).
        ``CA_CERT_FILE``            : CA bundle path (``/etc/istio/certs/root-cert.pem``).
        ``RETRY_DELAY_SECONDS``     : fixed patch retry delay (``1``).
        ``RECONCILE_WEBHOOK_CONFIG``: enable reconciliation (``true``).
        ``WATCH_TIMEOUT_SECONDS``   : per-request watch timeout (``30``).
        ``KUBECONFIG``              : kubeconfig path, unset in cluster.
        ``HEALTH_PORT``             : health server port (``8080``).
    """
    values = env if env is not None else os.environ

    kubeconfig = values.get("KUBECONFIG", "").strip() or None

    return ReconcilerConfig(
        webhook_config_name=_non_empty(values, "WEBHOOK_CONFIG_NAME", DEFAULT_WEBHOOK_CONFIG_NAME),
        webhook_name=_non_empty(values, "WEBHOOK_NAME", DEFAULT_WEBHOOK_NAME),
        ca_cert_file=_non_empty(values, "CA_CERT_FILE", DEFAULT_CA_CERT_FILE),
        retry_delay_seconds=float(env_int("RETRY_DELAY_SECONDS", 1, minimum=1, env=values)),
        enabled=parse_bool(values.get("RECONCILE_WEBHOOK_CONFIG"), default=True),
        watch_timeout_seconds=env_int(
            "WATCH_TIMEOUT_SECONDS", 30, minimum=1, maximum=3600, env=values
        ),
        kubeconfig=kubeconfig,
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
