from __future__ import annotations

from pathlib import Path

import pytest

from cabundle_sync.src.certs import encode_ca_bundle, read_ca_bundle
from cabundle_sync.src.errors import CABundleReadError

PEM = b"-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"


def test_read_returns_exact_bytes(tmp_path: Path) -> None:
    cert = tmp_path / "root-cert.pem"
    cert.write_bytes(PEM + b"\x00trailing")

    assert read_ca_bundle(str(cert)) == PEM + b"\x00trailing"


def test_read_is_not_cached(tmp_path: Path) -> None:
    cert = tmp_path / "root-cert.pem"
    cert.write_bytes(b"first")
    assert read_ca_bundle(str(cert)) == b"first"

    cert.write_bytes(b"second")
    assert read_ca_bundle(str(cert)) == b"second"


def test_missing_file_raises(tmp_path: Path) -> None:
    missing = tmp_path / "absent.pem"

    with pytest.raises(CABundleReadError) as exc_info:
        read_ca_bundle(str(missing))

    assert exc_info.value.path == str(missing)
    assert isinstance(exc_info.value.__cause__, FileNotFoundError)


def test_encode_ca_bundle() -> None:
    assert encode_ca_bundle(b"Z") == "Wg=="
