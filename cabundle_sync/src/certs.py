from __future__ import annotations

import base64
from pathlib import Path

from cabundle_sync.src.errors import CABundleReadError


def read_ca_bundle(path: str) -> bytes:
    """Return the exact current bytes of the CA bundle file.

    The content is not parsed or validated and nothing is cached; every call
    hits the filesystem so a freshly rotated certificate is always observed.
    """
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise CABundleReadError(path, exc.strerror or str(exc)) from exc


def encode_ca_bundle(ca_bundle: bytes) -> str:
    """Return the base64 text form used by ``clientConfig.caBundle`` on the wire."""
    return base64.b64encode(ca_bundle).decode("ascii")
