from __future__ import annotations

import enum
import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import AdmissionregistrationV1Api, ApiException
from urllib3.exceptions import HTTPError

from cabundle_sync.src.certs import encode_ca_bundle
from cabundle_sync.src.errors import WatchSetupError
from cabundle_sync.src.kube import find_webhook_ca_bundle
from cabundle_sync.src.metrics import METRICS

# A stream that ends sooner than this is paced like an error before re-listing.
_MIN_STREAM_SECONDS = 1.0


class WatchState(enum.Enum):
    DISCONNECTED = "disconnected"
    LISTING = "listing"
    WATCHING = "watching"


class WebhookConfigWatcher:
    """Keeps a list-then-watch subscription on one ``MutatingWebhookConfiguration``.

    The subscription is filtered server side to ``metadata.name`` so only the
    target object is streamed.  For every ``ADDED``/``MODIFIED`` event whose
    ``resourceVersion`` differs from the last one seen, the ``caBundle`` of the
    target webhook entry is compared with ``expected_bundle()``; a mismatch
    calls ``on_divergence``.  Edits to other entries, labels or annotations
    leave the bundle equal and therefore never signal.

    States move ``DISCONNECTED -> LISTING -> WATCHING``.  Whenever a watch
    stream ends, for a server timeout, ``410 Gone`` or a transport error, the
    watcher goes back to ``LISTING``.  The re-list runs the same comparison so
    a revert that happened while disconnected is still reported.  Errors, and
    streams closed within a second of opening, back off with jitter (1 s
    doubling to a 30 s cap).  None of this is visible to
    the caller beyond ``on_divergence``.
    """

    def __init__(
        self,
        admission_api: AdmissionregistrationV1Api,
        webhook_config_name: str,
        webhook_name: str,
        expected_bundle: Callable[[], bytes | None],
        on_divergence: Callable[[], None],
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.admission_api = admission_api
        self.webhook_config_name = webhook_config_name
        self.webhook_name = webhook_name
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._expected_bundle = expected_bundle
        self._on_divergence = on_divergence

        self.state = WatchState.DISCONNECTED
        self.ready = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        # resourceVersion of the last list/event, used to resume the watch.
        self._resource_version: str | None = None
        # resourceVersion of the target object when it was last compared.
        self._object_version: str | None = None

    @property
    def field_selector(self) -> str:
        return f"metadata.name={self.webhook_config_name}"

    def start(self) -> None:
        """Run the initial list, then continue watching on a daemon thread.

        Raises :class:`WatchSetupError` when the initial list fails, since
        there is no subscription to fall back on yet.
        """
        try:
            self._list(compare=False)
        except (ApiException, HTTPError, OSError) as exc:
            self.state = WatchState.DISCONNECTED
            raise WatchSetupError(
                f"Could not list MutatingWebhookConfiguration {self.webhook_config_name}: {exc}"
            ) from exc

        self.ready.set()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="webhook-config-watcher", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop emitting, close the open watch stream and wait for the thread."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                self.logger.warning(
                    "Webhook configuration watcher did not stop within %ss", timeout
                )
            self._thread = None
        self.ready.clear()
        self.state = WatchState.DISCONNECTED

    def check_divergence(self, webhook_config: Any) -> bool:
        """Return True when the live CA bundle of the target entry differs from the expected one.

        Objects whose ``resourceVersion`` was already compared are skipped.
        A missing target entry, or no expected bundle yet, is not a divergence.
        """
        metadata = getattr(webhook_config, "metadata", None)
        if metadata is None or getattr(metadata, "name", None) != self.webhook_config_name:
            return False

        resource_version = getattr(metadata, "resource_version", None)
        if resource_version is not None and resource_version == self._object_version:
            return False
        self._object_version = resource_version

        found, current = find_webhook_ca_bundle(webhook_config, self.webhook_name)
        if not found:
            return False
        expected = self._expected_bundle()
        if expected is None:
            return False
        return current != encode_ca_bundle(expected)

    def handle_event(self, event_type: str, webhook_config: Any) -> bool:
        """Process one watch event; returns True when a divergence was signalled."""
        if event_type == "DELETED":
            self._object_version = None
            self.logger.warning(
                "MutatingWebhookConfiguration %s was deleted", self.webhook_config_name
            )
            return False
        if event_type not in {"ADDED", "MODIFIED"}:
            return False
        if not self.check_divergence(webhook_config):
            return False

        self.logger.info(
            "Detected a change in CA bundle of webhook %s in %s; requesting patch",
            self.webhook_name,
            self.webhook_config_name,
        )
        METRICS.divergence_events_total.inc()
        self._on_divergence()
        return True

    def _list(self, compare: bool) -> None:
        self.state = WatchState.LISTING
        listing = self.admission_api.list_mutating_webhook_configuration(
            field_selector=self.field_selector,
        )
        self._resource_version = getattr(
            getattr(listing, "metadata", None), "resource_version", None
        )
        items = getattr(listing, "items", None) or []
        if not items:
            self.logger.warning(
                "MutatingWebhookConfiguration %s not found during list", self.webhook_config_name
            )
        for item in items:
            if compare:
                self.handle_event("MODIFIED", item)
            else:
                metadata = getattr(item, "metadata", None)
                self._object_version = getattr(metadata, "resource_version", None)

    def _watch_once(self) -> None:
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        try:
            # stop() may have run before the watcher was registered.
            if self._stop.is_set():
                return
            self.state = WatchState.WATCHING
            self.logger.debug("Watching from resourceVersion %s", self._resource_version)
            stream = watcher.stream(
                self.admission_api.list_mutating_webhook_configuration,
                field_selector=self.field_selector,
                resource_version=self._resource_version,
                timeout_seconds=self.watch_timeout_seconds,
            )
            for event in stream:
                if self._stop.is_set():
                    break

                obj = event.get("object")
                if obj is None:
                    continue

                metadata = getattr(obj, "metadata", None)
                if metadata and metadata.resource_version:
                    self._resource_version = metadata.resource_version

                self.handle_event(str(event.get("type", "")), obj)
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def _run(self) -> None:
        backoff_seconds = 1
        needs_list = False

        while not self._stop.is_set():
            try:
                if needs_list:
                    METRICS.watch_reconnects_total.inc()
                    self._list(compare=True)
                needs_list = True
                stream_started = time.monotonic()
                self._watch_once()
                stream_seconds = time.monotonic() - stream_started
                if stream_seconds >= _MIN_STREAM_SECONDS:
                    backoff_seconds = 1
                    continue
                if not self._stop.is_set():
                    self.logger.debug(
                        "Watch stream closed after %.2fs, delaying re-list", stream_seconds
                    )
            except ApiException as exc:
                METRICS.watch_errors_total.inc()
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check RBAC for mutatingwebhookconfigurations.",
                        exc.status,
                    )
                else:
                    self.logger.exception("Kubernetes API watch error")
            except Exception:
                METRICS.watch_errors_total.inc()
                self.logger.exception("Unexpected watch error")

            if self._stop.is_set():
                break
            self.state = WatchState.DISCONNECTED
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            self._stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

        self.state = WatchState.DISCONNECTED
