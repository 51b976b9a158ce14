from __future__ import annotations

import base64
import copy
import threading
from collections.abc import Iterator
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException


def b64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def make_webhook(
    name: str, ca_bundle: bytes | None = None, service: str = "istiod"
) -> SimpleNamespace:
    return SimpleNamespace(
        name=name,
        client_config=SimpleNamespace(
            ca_bundle=b64(ca_bundle) if ca_bundle is not None else None,
            service=SimpleNamespace(name=service, namespace="istio-system", path="/inject"),
        ),
        failure_policy="Fail",
    )


def make_webhook_config(
    webhooks: list[SimpleNamespace],
    name: str = "istio-sidecar-injector",
    resource_version: str = "1",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            resource_version=resource_version,
            labels={"app": "sidecar-injector"},
        ),
        webhooks=webhooks,
    )


class FakeAdmissionApi:
    """In-memory stand-in for ``AdmissionregistrationV1Api``.

    Patches are applied the way the API server applies a strategic merge
    patch to ``webhooks``: entries are matched by ``name`` and only the
    listed fields change.  Every write bumps ``resourceVersion``.
    """

    def __init__(
        self,
        webhook_config: SimpleNamespace | None,
        fail_reads: int = 0,
        fail_patches: int = 0,
        fail_status: int = 500,
    ) -> None:
        self.webhook_config = webhook_config
        self.fail_reads = fail_reads
        self.fail_patches = fail_patches
        self.fail_status = fail_status
        self.reads = 0
        self.patches: list[tuple[str, dict[str, Any]]] = []
        self.list_calls: list[dict[str, Any]] = []

    def _get(self, name: str) -> SimpleNamespace:
        if self.webhook_config is None or self.webhook_config.metadata.name != name:
            raise ApiException(status=404, reason="Not Found")
        return self.webhook_config

    def read_mutating_webhook_configuration(self, name: str) -> SimpleNamespace:
        self.reads += 1
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise ApiException(status=self.fail_status, reason="boom")
        return copy.deepcopy(self._get(name))

    def patch_mutating_webhook_configuration(
        self, name: str, body: dict[str, Any]
    ) -> SimpleNamespace:
        if self.fail_patches > 0:
            self.fail_patches -= 1
            raise ApiException(status=self.fail_status, reason="boom")
        current = self._get(name)
        for patch_entry in body.get("webhooks", []):
            for webhook in current.webhooks:
                if webhook.name == patch_entry["name"]:
                    ca_bundle = patch_entry.get("clientConfig", {}).get("caBundle")
                    if ca_bundle is not None:
                        webhook.client_config.ca_bundle = ca_bundle
        current.metadata.resource_version = str(int(current.metadata.resource_version) + 1)
        self.patches.append((name, body))
        return copy.deepcopy(current)

    def list_mutating_webhook_configuration(self, **kwargs: Any) -> SimpleNamespace:
        self.list_calls.append(kwargs)
        items = []
        selector = kwargs.get("field_selector", "")
        if self.webhook_config is not None and selector == (
            f"metadata.name={self.webhook_config.metadata.name}"
        ):
            items.append(copy.deepcopy(self.webhook_config))
        return SimpleNamespace(metadata=SimpleNamespace(resource_version="100"), items=items)

    def revert(self, webhook_name: str, ca_bundle: bytes) -> None:
        """Simulate another actor rewriting one entry's bundle."""
        for webhook in self.webhook_config.webhooks:
            if webhook.name == webhook_name:
                webhook.client_config.ca_bundle = b64(ca_bundle)
        metadata = self.webhook_config.metadata
        metadata.resource_version = str(int(metadata.resource_version) + 1)

    def ca_bundle_of(self, webhook_name: str) -> bytes | None:
        for webhook in self.webhook_config.webhooks:
            if webhook.name == webhook_name and webhook.client_config.ca_bundle is not None:
                return base64.b64decode(webhook.client_config.ca_bundle)
        return None


class ScriptedWatch:
    """Replaces ``kubernetes.watch.Watch``; each stream() call pops the next script.

    A script is a list or generator of events, an exception to raise, or a
    callable run before the stream ends empty.  When the scripts run out the
    stream blocks until stop() is called.
    """

    def __init__(self, scripts: list[Any], calls: list[dict[str, Any]]) -> None:
        self._scripts = scripts
        self._calls = calls
        self._stopped = threading.Event()

    def stream(self, func: Any, **kwargs: Any) -> Iterator[dict[str, Any]]:
        self._calls.append(kwargs)
        if not self._scripts:
            self._stopped.wait(timeout=5)
            return
        script = self._scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        if callable(script):
            script()
            return
        yield from script

    def stop(self) -> None:
        self._stopped.set()


@pytest.fixture
def two_entry_api() -> FakeAdmissionApi:
    return FakeAdmissionApi(
        make_webhook_config(
            [make_webhook("a", b"X"), make_webhook("b", b"Y")],
        )
    )
