from __future__ import annotations


class CABundleSyncError(RuntimeError):
    """Base class for every error raised by the CA bundle reconciler."""


class ConfigError(CABundleSyncError):
    """Raised when the process configuration is invalid."""


class CABundleReadError(CABundleSyncError):
    """Raised when the CA bundle file cannot be read.

    Fatal at startup.  During steady state the reconciler logs it and skips
    the file event, since the file may be mid-rotation.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to read CA bundle {path}: {reason}")
        self.path = path
        self.reason = reason


class WatchSetupError(CABundleSyncError):
    """Raised when a filesystem watch or cluster subscription cannot be established."""


class PatchError(CABundleSyncError):
    """Raised when the webhook configuration patch fails.

    Always retryable; the caller decides when.  ``status`` carries the HTTP
    status of the underlying API error when there was one.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
