from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

from kubernetes.client import AdmissionregistrationV1Api

from cabundle_sync.src.certs import read_ca_bundle
from cabundle_sync.src.config import ReconcilerConfig
from cabundle_sync.src.errors import CABundleReadError, PatchError
from cabundle_sync.src.file_watcher import CertFileWatcher
from cabundle_sync.src.kube import PatchOutcome, patch_webhook_ca_bundle
from cabundle_sync.src.metrics import METRICS
from cabundle_sync.src.webhook_watcher import WebhookConfigWatcher

TRIGGER_FILE = "file"
TRIGGER_RESOURCE = "resource"

# Upper bound on an idle wait so an external shutdown event is noticed.
_STOP_POLL_SECONDS = 1.0


class Watcher(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


class TriggerSet:
    """Content-free wake-up signals shared by the watcher threads and the loop.

    Each trigger kind is a flag: firing it again before the loop consumes it
    collapses into the pending one.  ``fire`` never blocks on the consumer.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._pending: set[str] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def fire(self, kind: str) -> None:
        with self._condition:
            self._pending.add(kind)
            self._condition.notify()

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def wait(self, timeout: float | None = None) -> set[str]:
        """Block until a trigger fires, ``timeout`` elapses or the set is closed.

        Returns and clears every pending kind; empty on timeout or close.
        """
        with self._condition:
            self._condition.wait_for(lambda: self._pending or self._closed, timeout=timeout)
            fired = self._pending
            self._pending = set()
            return fired


class CABundleReconciler:
    """Keeps one webhook entry's ``caBundle`` equal to the CA bundle file on disk.

    Three unsynchronized sources feed a single sequential loop:

    - the file watcher (the bundle was rotated: re-read it, then patch);
    - the resource watcher (someone reverted the live bundle: patch again
      with the bundle already held);
    - the retry timer (an earlier patch failed).

    Only the loop thread calls the patcher, so patch attempts never overlap.
    A failed attempt arms a single retry deadline ``retry_delay_seconds``
    away.  File and resource triggers never move an armed deadline; only the
    retry path itself re-arms it.  Any success disarms it.  The delay is
    fixed: webhook configuration writes are cheap and idempotent.
    """

    def __init__(
        self,
        config: ReconcilerConfig,
        admission_api: AdmissionregistrationV1Api,
        *,
        file_watcher: Watcher | None = None,
        resource_watcher: Watcher | None = None,
        read_bundle: Callable[[str], bytes] = read_ca_bundle,
        patch_fn: Callable[..., PatchOutcome] = patch_webhook_ca_bundle,
        monotonic_fn: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.admission_api = admission_api
        self.read_bundle = read_bundle
        self.patch_fn = patch_fn
        self.monotonic_fn = monotonic_fn
        self.logger = logger or logging.getLogger(__name__)

        self.triggers = TriggerSet()
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._ca_bundle: bytes | None = None
        self._pending_retry: float | None = None
        METRICS.retry_pending.set(0)

        self.file_watcher: Watcher = file_watcher or CertFileWatcher(
            config.ca_cert_file, self.notify_file_changed
        )
        self.resource_watcher: Watcher = resource_watcher or WebhookConfigWatcher(
            admission_api=admission_api,
            webhook_config_name=config.webhook_config_name,
            webhook_name=config.webhook_name,
            expected_bundle=lambda: self._ca_bundle,
            on_divergence=self.notify_resource_diverged,
            watch_timeout_seconds=config.watch_timeout_seconds,
        )

    @property
    def ca_bundle(self) -> bytes | None:
        return self._ca_bundle

    @property
    def pending_retry(self) -> float | None:
        """Monotonic deadline of the armed retry timer, or ``None``."""
        return self._pending_retry

    def notify_file_changed(self) -> None:
        self.triggers.fire(TRIGGER_FILE)

    def notify_resource_diverged(self) -> None:
        self.triggers.fire(TRIGGER_RESOURCE)

    def request_stop(self) -> None:
        """Ask the loop to exit after the handler currently running, if any."""
        self._external_stop.set()
        self.triggers.close()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _arm_retry(self, *, reset: bool) -> None:
        if self._pending_retry is not None and not reset:
            self.logger.debug("Retry already scheduled; keeping existing deadline")
            return
        self._pending_retry = self.monotonic_fn() + self.config.retry_delay_seconds
        METRICS.retry_pending.set(1)
        METRICS.retries_scheduled_total.inc()
        self.logger.info(
            "Patch failed - retrying every %.1fs until success",
            self.config.retry_delay_seconds,
        )

    def _disarm_retry(self) -> None:
        self._pending_retry = None
        METRICS.retry_pending.set(0)

    def retry_due(self) -> bool:
        return self._pending_retry is not None and self.monotonic_fn() >= self._pending_retry

    def _attempt_patch(self, trigger: str) -> bool:
        """Run one patch attempt with the held bundle; returns True on success.

        Every failure, expected or not, is reported as False so the caller
        arms the retry timer instead of leaving the loop.
        """
        if self._ca_bundle is None:
            raise RuntimeError("CA bundle has not been loaded")
        try:
            outcome = self.patch_fn(
                self.admission_api,
                self.config.webhook_config_name,
                self.config.webhook_name,
                self._ca_bundle,
            )
        except PatchError as exc:
            METRICS.patch_attempts_total.labels(trigger=trigger, result="error").inc()
            self.logger.error("Patch webhook failed: %s", exc)
            return False
        except Exception:
            METRICS.patch_attempts_total.labels(trigger=trigger, result="error").inc()
            self.logger.exception("Unexpected error patching webhook configuration")
            return False

        METRICS.patch_attempts_total.labels(trigger=trigger, result=outcome.value).inc()
        return True

    def start(self) -> None:
        """Load the bundle, start both watchers and make the first patch attempt.

        :class:`CABundleReadError` and :class:`WatchSetupError` propagate: the
        reconciler cannot run without a source of truth or its subscriptions.
        A failed first patch only arms the retry timer.
        """
        self._ca_bundle = self.read_bundle(self.config.ca_cert_file)
        self.logger.info(
            "Loaded CA bundle from %s (%d bytes)", self.config.ca_cert_file, len(self._ca_bundle)
        )

        self.file_watcher.start()
        try:
            self.resource_watcher.start()
        except Exception:
            self.file_watcher.stop()
            raise

        if self._attempt_patch("startup"):
            self._disarm_retry()
        else:
            self._arm_retry(reset=True)
        self.ready.set()

    def handle_resource_divergence(self) -> bool:
        ok = self._attempt_patch(TRIGGER_RESOURCE)
        if ok:
            self._disarm_retry()
        else:
            self._arm_retry(reset=False)
        return ok

    def handle_file_change(self) -> bool:
        """Re-read the rotated bundle and patch it unconditionally.

        A read failure skips the event; the file may be mid-rotation and the
        next event will bring it back.  Returns True when a patch succeeded.
        """
        try:
            ca_bundle = self.read_bundle(self.config.ca_cert_file)
        except CABundleReadError as exc:
            METRICS.file_read_errors_total.inc()
            self.logger.error("CA bundle file read error: %s", exc)
            return False

        self._ca_bundle = ca_bundle
        self.logger.info(
            "Detected a change in CA bundle file %s, patching webhook configuration again",
            self.config.ca_cert_file,
        )
        ok = self._attempt_patch(TRIGGER_FILE)
        if ok:
            self._disarm_retry()
        else:
            self._arm_retry(reset=False)
        return ok

    def handle_retry_timer(self) -> bool:
        ok = self._attempt_patch("retry")
        if ok:
            self.logger.info("Retried patch succeeded")
            self._disarm_retry()
        else:
            self._arm_retry(reset=True)
        return ok

    def _next_wait_timeout(self) -> float:
        if self._pending_retry is None:
            return _STOP_POLL_SECONDS
        remaining = self._pending_retry - self.monotonic_fn()
        return min(_STOP_POLL_SECONDS, max(0.0, remaining))

    def process_triggers(self, fired: set[str], stop_event: threading.Event) -> None:
        """Handle every ready source once; order between sources does not matter."""
        if TRIGGER_FILE in fired and not self._should_stop(stop_event):
            self.handle_file_change()
        if TRIGGER_RESOURCE in fired and not self._should_stop(stop_event):
            self.handle_resource_divergence()
        if self.retry_due() and not self._should_stop(stop_event):
            self.handle_retry_timer()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start up, then run the decision loop until shutdown.

        Startup errors propagate to the caller.  On shutdown the handler in
        progress finishes, pending triggers and timers are dropped, and both
        watchers are stopped.
        """
        stop = shutdown_event or threading.Event()

        try:
            self.start()
            self.logger.info(
                "Reconciling CA bundle of webhook %s in MutatingWebhookConfiguration %s",
                self.config.webhook_name,
                self.config.webhook_config_name,
            )
            while not self._should_stop(stop):
                fired = self.triggers.wait(timeout=self._next_wait_timeout())
                if self._should_stop(stop):
                    break
                self.process_triggers(fired, stop)
        finally:
            self.ready.clear()
            self.resource_watcher.stop()
            self.file_watcher.stop()
            self.logger.info("CA bundle reconciler stopped")
