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

"""Authenticode signature inspection for fleetpkg.

The default inspector asks PowerShell's ``Get-AuthenticodeSignature`` about
the artifact and parses ``KEY:value`` lines from its output:

    STATUS:Valid
    STATUSMESSAGE:Signature verified.
    SUBJECT:CN=VideoLAN, O=VideoLAN, L=Paris, C=FR
    ISSUER:CN=DigiCert Trusted G4 Code Signing RSA4096 SHA384 2021 CA1, ...
    THUMBPRINT:4B1D9C3A...
    TIMESTAMP:CN=DigiCert Timestamp 2023, O="DigiCert, Inc.", C=US

Any status other than ``NotSigned`` means the file carries a signature;
only ``Valid`` means it verifies and chains to a trusted root.

check_signature() applies an entry's signature requirements to an
inspection and raises the matching SecurityError subclass.

Example:
    ```python
    from pathlib import Path
    from fleetpkg.security.signature import PowerShellSignatureInspector, check_signature

    inspection = PowerShellSignatureInspector().inspect(Path("vlc.msi"))
    check_signature(entry, inspection)
    ```
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
import re
from typing import TYPE_CHECKING, Protocol

from fleetpkg.exceptions import (
    ProcessStartError,
    ProcessTimeoutError,
    PublisherMismatchError,
    SignatureInvalidError,
    SignatureUnsignedError,
    ThumbprintMismatchError,
)
from fleetpkg.logging import get_global_logger
from fleetpkg.process import ProcessOutcome, run_process

if TYPE_CHECKING:
    from fleetpkg.catalog.models import CatalogEntry
    from fleetpkg.progress import CancellationToken

SIGNABLE_EXTENSIONS = frozenset(
    {".exe", ".dll", ".sys", ".msi", ".msix", ".appx", ".cab", ".cat", ".ps1", ".psm1", ".psd1"}
)

DEFAULT_SIGNATURE_TIMEOUT = 30

_CN = re.compile(r"CN=([^,]+)")

_PS_SCRIPT = (
    "$sig = Get-AuthenticodeSignature -FilePath '{path}'; "
    "$cert = $sig.SignerCertificate; "
    'Write-Output "STATUS:$($sig.Status)"; '
    'Write-Output "STATUSMESSAGE:$($sig.StatusMessage)"; '
    "if ($cert) {{ "
    'Write-Output "SUBJECT:$($cert.Subject)"; '
    'Write-Output "ISSUER:$($cert.Issuer)"; '
    'Write-Output "THUMBPRINT:$($cert.Thumbprint)"; '
    "}} "
    "if ($sig.TimeStamperCertificate) {{ "
    'Write-Output "TIMESTAMP:$($sig.TimeStamperCertificate.Subject)"; '
    "}}"
)


class SignatureStatus(str, Enum):
    UNSIGNED = "unsigned"
    INVALID = "invalid"
    VALID = "valid"


@dataclass(frozen=True)
class SignatureInspection:
    """What the signing authority said about a file.

    Attributes:
        status: UNSIGNED, INVALID or VALID.
        message: Explanation for UNSIGNED/INVALID results.
        signer: Common name of the signing certificate subject.
        issuer: Issuer distinguished name.
        thumbprint: Signing certificate thumbprint.
        timestamp_authority: Subject of the timestamping certificate.
        certificate_chain: Subject and issuer, leaf first.
    """

    status: SignatureStatus
    message: str | None = None
    signer: str | None = None
    issuer: str | None = None
    thumbprint: str | None = None
    timestamp_authority: str | None = None
    certificate_chain: tuple[str, ...] = ()

    @classmethod
    def unsigned(cls, message: str) -> SignatureInspection:
        return cls(SignatureStatus.UNSIGNED, message)

    @classmethod
    def invalid(cls, message: str) -> SignatureInspection:
        return cls(SignatureStatus.INVALID, message)

    @property
    def is_signed(self) -> bool:
        return self.status is not SignatureStatus.UNSIGNED

    @property
    def is_valid(self) -> bool:
        return self.status is SignatureStatus.VALID


class SignatureInspector(Protocol):
    """Anything that can report on a file's digital signature."""

    def inspect(
        self, path: Path, cancel: CancellationToken | None = None
    ) -> SignatureInspection: ...


def extract_common_name(distinguished_name: str | None) -> str | None:
    """CN from an X.500 name, or the whole name when it has no CN."""
    if distinguished_name is None:
        return None
    match = _CN.search(distinguished_name)
    return match.group(1).strip() if match else distinguished_name


def parse_signature_output(lines: list[str]) -> SignatureInspection:
    """Turn ``KEY:value`` lines from the inspector script into an inspection."""
    fields: dict[str, str] = {}
    for line in lines:
        key, sep, value = line.partition(":")
        if sep and key in {"STATUS", "STATUSMESSAGE", "SUBJECT", "ISSUER", "THUMBPRINT", "TIMESTAMP"}:
            fields[key] = value.strip()

    status = fields.get("STATUS")
    if not status:
        return SignatureInspection.unsigned("Could not retrieve signature status")
    if status == "NotSigned":
        return SignatureInspection.unsigned("File is not digitally signed")
    if status != "Valid":
        return SignatureInspection.invalid(
            fields.get("STATUSMESSAGE") or f"Signature is invalid: {status}"
        )

    subject = fields.get("SUBJECT")
    issuer = fields.get("ISSUER")
    chain = tuple(n for n in (subject, issuer if issuer != subject else None) if n)
    return SignatureInspection(
        status=SignatureStatus.VALID,
        signer=extract_common_name(subject),
        issuer=issuer,
        thumbprint=fields.get("THUMBPRINT"),
        timestamp_authority=fields.get("TIMESTAMP"),
        certificate_chain=chain,
    )


class PowerShellSignatureInspector:
    """Inspect signatures with ``Get-AuthenticodeSignature``.

    Args:
        timeout: Seconds before PowerShell is killed.
        runner: Process runner (replaceable in tests).
    """

    def __init__(
        self,
        timeout: float = DEFAULT_SIGNATURE_TIMEOUT,
        runner: Callable[..., ProcessOutcome] = run_process,
    ) -> None:
        self.timeout = timeout
        self._run = runner

    def inspect(
        self, path: Path, cancel: CancellationToken | None = None
    ) -> SignatureInspection:
        logger = get_global_logger()
        path = Path(path)
        if not path.exists():
            return SignatureInspection.unsigned(f"File does not exist: {path}")

        extension = path.suffix.lower()
        if extension not in SIGNABLE_EXTENSIONS:
            logger.debug("SIGNATURE", f"File type {extension or '(none)'} is not signable")
            return SignatureInspection.unsigned(
                f"File type does not support digital signatures: {extension}"
            )

        script = _PS_SCRIPT.format(path=str(path.resolve()).replace("'", "''"))
        try:
            outcome = self._run(
                ["powershell", "-NoProfile", "-NonInteractive", "-Command", script],
                self.timeout,
                cancel=cancel,
                label="Signature verification",
            )
        except ProcessTimeoutError:
            return SignatureInspection.unsigned("Signature verification timed out")
        except ProcessStartError as err:
            return SignatureInspection.unsigned(f"Verification failed: {err}")

        for line in outcome.lines:
            logger.debug("SIGNATURE", line)
        return parse_signature_output(outcome.lines)


def verify_publisher(inspection: SignatureInspection, expected: str | None) -> bool:
    """True when the signer contains the expected publisher (case-insensitive)."""
    if not inspection.is_valid or not expected or inspection.signer is None:
        return False
    return expected.lower() in inspection.signer.lower()


def _normalize_thumbprint(value: str) -> str:
    return re.sub(r"\s", "", value).upper()


def verify_thumbprint(inspection: SignatureInspection, expected: str | None) -> bool:
    """True when the thumbprint equals the pinned one, ignoring spaces and case."""
    if not inspection.is_valid or not expected or inspection.thumbprint is None:
        return False
    return _normalize_thumbprint(inspection.thumbprint) == _normalize_thumbprint(expected)


def check_signature(entry: CatalogEntry, inspection: SignatureInspection) -> bool:
    """Apply an entry's signature requirements.

    Returns:
        True when the signature was required and verified; False when the
        entry does not require a signature (nothing was checked).

    Raises:
        SignatureUnsignedError: Required but unsigned.
        SignatureInvalidError: Required but tampered or untrusted.
        PublisherMismatchError: Signer does not match expected_publisher.
        ThumbprintMismatchError: Certificate is not the pinned one.
    """
    if not entry.require_signature:
        return False

    if not inspection.is_signed:
        raise SignatureUnsignedError(
            f"Installer is not digitally signed: {entry.name} ({inspection.message})"
        )
    if not inspection.is_valid:
        raise SignatureInvalidError(f"Invalid digital signature: {inspection.message}")

    if entry.expected_publisher and not verify_publisher(inspection, entry.expected_publisher):
        raise PublisherMismatchError(
            f"Publisher verification failed: expected '{entry.expected_publisher}', "
            f"got '{inspection.signer}'"
        )
    if entry.expected_cert_thumbprint and not verify_thumbprint(
        inspection, entry.expected_cert_thumbprint
    ):
        raise ThumbprintMismatchError("Certificate thumbprint verification failed")
    return True
