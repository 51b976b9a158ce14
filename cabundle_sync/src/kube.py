from __future__ import annotations

import enum
import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import AdmissionregistrationV1Api, ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from cabundle_sync.src.certs import encode_ca_bundle
from cabundle_sync.src.errors import PatchError

LOGGER = logging.getLogger(__name__)


class PatchOutcome(enum.Enum):
    """Successful results of :func:`patch_webhook_ca_bundle`."""

    PATCHED = "patched"
    UNCHANGED = "unchanged"
    ENTRY_NOT_FOUND = "entry_not_found"


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.  An explicit ``kubeconfig``
    path skips the in-cluster attempt.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_admission_api() -> AdmissionregistrationV1Api:
    """Return an admissionregistration/v1 client using the active kube configuration."""
    return client.AdmissionregistrationV1Api()


def find_webhook_ca_bundle(webhook_config: Any, webhook_name: str) -> tuple[bool, str | None]:
    """Look up the ``caBundle`` of the named entry in a webhook configuration object.

    Returns ``(found, ca_bundle)`` where ``ca_bundle`` is the base64 text the
    API server stores, or ``None`` when the entry has no bundle yet.
    """
    webhooks = getattr(webhook_config, "webhooks", None) or []
    for webhook in webhooks:
        if getattr(webhook, "name", None) != webhook_name:
            continue
        client_config = getattr(webhook, "client_config", None)
        return True, getattr(client_config, "ca_bundle", None)
    return False, None


def build_ca_bundle_patch(webhook_name: str, ca_bundle: bytes) -> dict[str, Any]:
    """Build a strategic-merge patch touching only one entry's ``caBundle``.

    ``webhooks`` is merged by ``name`` on the server, so entries not listed
    here and every other field of the object are left as they are.
    """
    return {
        "webhooks": [
            {
                "name": webhook_name,
                "clientConfig": {"caBundle": encode_ca_bundle(ca_bundle)},
            }
        ]
    }


def patch_webhook_ca_bundle(
    admission_api: AdmissionregistrationV1Api,
    webhook_config_name: str,
    webhook_name: str,
    ca_bundle: bytes,
) -> PatchOutcome:
    """Set ``caBundle`` on one webhook entry of a ``MutatingWebhookConfiguration``.

    Reads the object once, then submits a partial update for the entry whose
    name matches ``webhook_name``.  Two cases succeed without writing:

    - the entry already carries ``ca_bundle`` (the patch would be empty);
    - no entry has that name, since the webhook may legitimately be absent
      in some deployment modes.

    Every API or transport failure, including ``404`` on the whole object,
    is raised as :class:`PatchError`.  No retry happens here.
    """
    try:
        webhook_config = admission_api.read_mutating_webhook_configuration(
            name=webhook_config_name
        )
    except ApiException as exc:
        raise PatchError(
            f"Failed to read MutatingWebhookConfiguration {webhook_config_name}: "
            f"{exc.status} {exc.reason}",
            status=exc.status,
        ) from exc
    except (HTTPError, OSError) as exc:
        raise PatchError(
            f"Failed to read MutatingWebhookConfiguration {webhook_config_name}: {exc}"
        ) from exc

    found, current = find_webhook_ca_bundle(webhook_config, webhook_name)
    if not found:
        LOGGER.warning(
            "Webhook %s not found in MutatingWebhookConfiguration %s; nothing to patch",
            webhook_name,
            webhook_config_name,
        )
        return PatchOutcome.ENTRY_NOT_FOUND

    if current == encode_ca_bundle(ca_bundle):
        LOGGER.debug(
            "Webhook %s in %s already has the current CA bundle",
            webhook_name,
            webhook_config_name,
        )
        return PatchOutcome.UNCHANGED

    body = build_ca_bundle_patch(webhook_name, ca_bundle)
    try:
        admission_api.patch_mutating_webhook_configuration(
            name=webhook_config_name,
            body=body,
        )
    except ApiException as exc:
        raise PatchError(
            f"Failed to patch MutatingWebhookConfiguration {webhook_config_name}: "
            f"{exc.status} {exc.reason}",
            status=exc.status,
        ) from exc
    except (HTTPError, OSError) as exc:
        raise PatchError(
            f"Failed to patch MutatingWebhookConfiguration {webhook_config_name}: {exc}"
        ) from exc

    LOGGER.info(
        "Patched CA bundle of webhook %s in MutatingWebhookConfiguration %s",
        webhook_name,
        webhook_config_name,
    )
    return PatchOutcome.PATCHED
