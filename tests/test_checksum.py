"""
Tests for fleetpkg.security.checksum module.
"""

from __future__ import annotations

import hashlib

import pytest

from fleetpkg.exceptions import ChecksumMismatchError
from fleetpkg.security.checksum import sha256_file, verify_checksum

pytestmark = pytest.mark.unit

def _sha256(data: bytes) -> str:
    """Helper to compute SHA-256 hash."""
    return hashlib.sha256(data).hexdigest()


def test_sha256_file(tmp_test_dir):
    path = tmp_test_dir / "a.bin"
    path.write_bytes(b"hello world")

    assert sha256_file(path) == _sha256(b"hello world")


def test_verify_checksum_match_ignores_case_and_whitespace(tmp_test_dir):
    path = tmp_test_dir / "a.bin"
    path.write_bytes(b"payload")
    expected = f"  {_sha256(b'payload').upper()}\n"

    assert verify_checksum(path, expected) == _sha256(b"payload")


@pytest.mark.parametrize("expected", [None, "", "   "])
def test_verify_checksum_skipped_without_expected(tmp_test_dir, expected):
    path = tmp_test_dir / "a.bin"
    path.write_bytes(b"payload")

    assert verify_checksum(path, expected) is None


def test_verify_checksum_mismatch(tmp_test_dir):
    path = tmp_test_dir / "a.bin"
    path.write_bytes(b"payload")

    with pytest.raises(ChecksumMismatchError, match="Checksum verification failed for a.bin"):
        verify_checksum(path, "00" * 32)
