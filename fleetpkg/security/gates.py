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

"""Security gate chain for fleetpkg.

Gates run in a fixed order and the first failure aborts the run:

1. Source policy (before anything is downloaded)
2. SHA-256 checksum
3. Authenticode signature
4. Malware scan

When a gate aborts, the temporary artifact is deleted, exactly one audit
record is written (classified by the gate, CRITICAL for security gates) and
the typed exception is raised. Nothing here touches the catalog.

A scanner ERROR (scanner missing, timed out) is logged and does not abort.

Example:
    ```python
    from fleetpkg.security.gates import GateChain

    gates = GateChain(engine, inspector, scanner, audit)
    gates.check_source(entry, actor="admin")
    report = gates.verify_artifact(entry, artifact, actor="admin")
    print(report.signer)
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from fleetpkg.audit import AuditAction, AuditSink, LoggerAuditSink, Severity
from fleetpkg.exceptions import (
    ChecksumMismatchError,
    FleetPkgError,
    MalwareDetectedError,
    ScanUnavailableError,
    SecurityError,
    SourceDeniedError,
)
from fleetpkg.logging import get_global_logger
from fleetpkg.progress import VERIFY
from fleetpkg.security.checksum import verify_checksum
from fleetpkg.security.scanner import MalwareScanner, ScanResult, ScanStatus
from fleetpkg.security.signature import (
    SignatureInspection,
    SignatureInspector,
    check_signature,
)

if TYPE_CHECKING:
    from fleetpkg.catalog.models import CatalogEntry
    from fleetpkg.policy.sources import SourceDecision, SourcePolicyEngine
    from fleetpkg.progress import CancellationToken, ProgressReporter


@dataclass(frozen=True)
class GateReport:
    """What the artifact gates established about a downloaded file.

    Attributes:
        checksum: Computed SHA-256, or None when no checksum was configured.
        signature: Inspection result, or None when no signature is required.
        signature_verified: True when a required signature was verified.
        scan: Malware scan result.
        scan_error: Set when the scanner could not complete; the install
            still goes ahead.
    """

    checksum: str | None
    signature: SignatureInspection | None
    signature_verified: bool
    scan: ScanResult
    scan_error: ScanUnavailableError | None = None

    @property
    def signer(self) -> str | None:
        if self.signature is None:
            return None
        return self.signature.signer


class GateChain:
    """Run the security gates for one artifact.

    Args:
        engine: Source policy engine.
        inspector: Signature inspector.
        scanner: Malware scanner.
        audit: Sink for gate failures. Defaults to LoggerAuditSink.
    """

    def __init__(
        self,
        engine: SourcePolicyEngine,
        inspector: SignatureInspector,
        scanner: MalwareScanner,
        audit: AuditSink | None = None,
    ) -> None:
        self.engine = engine
        self.inspector = inspector
        self.scanner = scanner
        self.audit = audit or LoggerAuditSink()

    def check_source(self, entry: CatalogEntry, actor: str) -> SourceDecision:
        """Gate 1: the entry's download source must be allowed.

        Raises:
            SourceDeniedError: If the source is denied.
        """
        decision = self.engine.validate_entry_source(entry)
        if not decision.allowed:
            self.audit.log(
                AuditAction.DOWNLOAD_SOURCE_BLOCKED,
                actor,
                f"Download blocked for {entry.name}: {decision.reason}",
                False,
                Severity.CRITICAL,
            )
            raise SourceDeniedError(
                f"Download source not allowed: {decision.reason}", decision.matched_policy
            )
        get_global_logger().verbose("GATE", f"Source allowed: {decision.reason}")
        return decision

    def verify_artifact(
        self,
        entry: CatalogEntry,
        artifact: Path,
        actor: str,
        *,
        expected_checksum: str | None = None,
        progress: ProgressReporter | None = None,
        cancel: CancellationToken | None = None,
    ) -> GateReport:
        """Gates 2-4: checksum, signature and malware scan, in that order.

        Args:
            entry: Entry being installed.
            artifact: Downloaded file. Deleted if any gate aborts.
            actor: Recorded in audit records.
            expected_checksum: Digest to verify. Defaults to the entry's
                checksum_sha256.
            progress: Optional reporter; advances through the verification band.
            cancel: Optional cancellation token, checked between gates.

        Returns:
            A GateReport describing what was verified.

        Raises:
            ChecksumMismatchError: Checksum differs.
            SecurityError: Signature problem or malware detected.
            InstallCancelledError: Cancelled between or during gates.
        """
        logger = get_global_logger()
        expected = expected_checksum if expected_checksum is not None else entry.checksum_sha256

        try:
            digest = verify_checksum(artifact, expected)
            if digest is None:
                logger.verbose("GATE", f"No checksum configured for {entry.code}, skipping")
            else:
                logger.verbose("GATE", f"Checksum verified: {digest}")
            self._advance(progress, 1 / 3, cancel)

            inspection: SignatureInspection | None = None
            verified = False
            if entry.require_signature:
                inspection = self.inspector.inspect(artifact, cancel=cancel)
                verified = check_signature(entry, inspection)
                logger.verbose("GATE", f"Signature verified: {inspection.signer}")
            else:
                logger.verbose("GATE", f"Signature not required for {entry.code}")
            self._advance(progress, 2 / 3, cancel)

            scan = self.scanner.scan(artifact, cancel=cancel)
            if scan.is_threat:
                raise MalwareDetectedError(scan.threat_name or "Unknown threat detected")
            scan_error = None
            if scan.status is ScanStatus.ERROR:
                scan_error = ScanUnavailableError(
                    f"Malware scan could not complete: {scan.message or 'unknown error'}"
                )
                logger.warning("GATE", f"{scan_error}, continuing")
            self._advance(progress, 1.0, cancel)
        except FleetPkgError as err:
            _discard(artifact)
            self._audit_failure(entry, actor, err)
            raise

        return GateReport(
            checksum=digest,
            signature=inspection,
            signature_verified=verified,
            scan=scan,
            scan_error=scan_error,
        )

    def _advance(
        self,
        progress: ProgressReporter | None,
        fraction: float,
        cancel: CancellationToken | None,
    ) -> None:
        if progress is not None:
            progress.band(VERIFY, fraction)
        if cancel is not None:
            cancel.raise_if_cancelled()

    def _audit_failure(self, entry: CatalogEntry, actor: str, err: FleetPkgError) -> None:
        if isinstance(err, ChecksumMismatchError):
            self.audit.log(
                AuditAction.CHECKSUM_FAILED,
                actor,
                f"Checksum verification failed for {entry.name}: {err}",
                False,
                Severity.ERROR,
            )
        elif isinstance(err, MalwareDetectedError):
            self.audit.log(
                AuditAction.VIRUS_SCAN_FAILED,
                actor,
                f"Malware detected in {entry.name}: {err.threat_name}",
                False,
                Severity.CRITICAL,
            )
        elif isinstance(err, SecurityError):
            self.audit.log(
                AuditAction.SIGNATURE_VERIFICATION_FAILED,
                actor,
                f"Signature verification failed for {entry.name}: {err}",
                False,
                Severity.CRITICAL,
            )
        # Cancellation is not a gate failure; the pipeline records it.


def _discard(artifact: Path) -> None:
    try:
        Path(artifact).unlink(missing_ok=True)
    except OSError as err:
        get_global_logger().warning("GATE", f"Could not delete {artifact}: {err}")
