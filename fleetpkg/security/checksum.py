# Copyright 2025 Roger Cibrian
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""SHA-256 verification of downloaded artifacts."""

from __future__ import annotations

import hashlib
from pathlib import Path

from fleetpkg.exceptions import ChecksumMismatchError

# Stream size per chunk (1 MiB), same as the downloader.
DEFAULT_CHUNK = 1024 * 1024


def sha256_file(path: Path) -> str:
    """Hex SHA-256 of a file, read in chunks."""
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(DEFAULT_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_checksum(path: Path, expected: str | None) -> str | None:
    """Compare a file's SHA-256 with the expected hex digest.

    Args:
        path: File to hash.
        expected: Expected hex digest (any case, surrounding whitespace
            ignored). None or empty skips the check.

    Returns:
        The computed digest, or None when the check was skipped.

    Raises:
        ChecksumMismatchError: If the digests differ.
    """
    if not expected or not expected.strip():
        return None
    digest = sha256_file(path)
    if digest.lower() != expected.strip().lower():
        raise ChecksumMismatchError(
            f"Checksum verification failed for {Path(path).name}: "
            f"got {digest}, expected {expected.strip()}"
        )
    return digest
