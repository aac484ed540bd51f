"""
Tests for fleetpkg.security.gates module.

Tests the gate chain including:
- Source gate denial and auditing
- Gate order (checksum before signature before scan)
- Artifact deletion on failure
- Scan errors that do not block
- Progress through the verification band and cancellation
"""

from __future__ import annotations

import hashlib

import pytest

from fleetpkg.audit import AuditAction, Severity
from fleetpkg.exceptions import (
    ChecksumMismatchError,
    InstallCancelledError,
    MalwareDetectedError,
    PublisherMismatchError,
    ScanUnavailableError,
    SourceDeniedError,
)
from fleetpkg.progress import CancellationToken, ProgressReporter
from fleetpkg.security import ScanResult, ScanStatus


class TestSourceGate:
    def test_denied_source_raises_and_audits(self, gates, make_entry, memory_audit):
        entry = make_entry(download_url="https://mirror.example.cn/vlc.msi")

        with pytest.raises(SourceDeniedError, match="Download source not allowed") as exc:
            gates.check_source(entry, "admin")

        assert exc.value.policy.pattern == "*.cn"
        record = memory_audit.records[-1]
        assert record.action is AuditAction.DOWNLOAD_SOURCE_BLOCKED
        assert record.severity is Severity.CRITICAL
        assert not record.success

    def test_allowed_source(self, gates, make_entry, memory_audit):
        entry = make_entry(download_url="https://get.videolan.org/vlc.msi")

        decision = gates.check_source(entry, "admin")

        assert decision.allowed
        assert AuditAction.DOWNLOAD_SOURCE_BLOCKED not in memory_audit.actions()


class TestVerifyArtifact:
    def test_all_gates_pass(self, gates, make_entry, artifact_file, fake_inspector, fake_scanner):
        artifact = artifact_file(content=b"good")
        entry = make_entry(checksum_sha256=hashlib.sha256(b"good").hexdigest())

        report = gates.verify_artifact(entry, artifact, "admin")

        assert report.checksum == hashlib.sha256(b"good").hexdigest()
        assert report.signature_verified
        assert report.signer == "VideoLAN"
        assert report.scan.status is ScanStatus.CLEAN
        assert fake_inspector.calls == [artifact]
        assert fake_scanner.calls == [artifact]
        assert artifact.exists()

    def test_checksum_failure_stops_before_signature(
        self, gates, make_entry, artifact_file, fake_inspector, fake_scanner, memory_audit
    ):
        artifact = artifact_file()
        entry = make_entry(checksum_sha256="ab" * 32)

        with pytest.raises(ChecksumMismatchError):
            gates.verify_artifact(entry, artifact, "admin")

        assert fake_inspector.calls == []
        assert fake_scanner.calls == []
        assert not artifact.exists()
        assert memory_audit.records[-1].action is AuditAction.CHECKSUM_FAILED
        assert memory_audit.records[-1].severity is Severity.ERROR

    def test_expected_checksum_overrides_entry(self, gates, make_entry, artifact_file):
        artifact = artifact_file(content=b"new version")
        entry = make_entry(checksum_sha256="ab" * 32)

        report = gates.verify_artifact(
            entry,
            artifact,
            "admin",
            expected_checksum=hashlib.sha256(b"new version").hexdigest(),
        )

        assert report.checksum is not None

    def test_signature_failure_stops_before_scan(
        self, gates, make_entry, artifact_file, fake_scanner, memory_audit
    ):
        artifact = artifact_file()
        entry = make_entry(expected_publisher="Mozilla")

        with pytest.raises(PublisherMismatchError):
            gates.verify_artifact(entry, artifact, "admin")

        assert fake_scanner.calls == []
        assert not artifact.exists()
        record = memory_audit.records[-1]
        assert record.action is AuditAction.SIGNATURE_VERIFICATION_FAILED
        assert record.severity is Severity.CRITICAL

    def test_signature_not_required_skips_inspector(
        self, gates, make_entry, artifact_file, fake_inspector
    ):
        report = gates.verify_artifact(make_entry(require_signature=False), artifact_file(), "admin")

        assert fake_inspector.calls == []
        assert report.signature is None
        assert not report.signature_verified

    def test_malware_detected(self, gates, make_entry, artifact_file, fake_scanner, memory_audit):
        fake_scanner.result = ScanResult.threat("EICAR-Test-File", "FakeScanner")
        artifact = artifact_file()

        with pytest.raises(MalwareDetectedError) as exc:
            gates.verify_artifact(make_entry(), artifact, "admin")

        assert exc.value.threat_name == "EICAR-Test-File"
        assert not artifact.exists()
        assert memory_audit.records[-1].action is AuditAction.VIRUS_SCAN_FAILED

    def test_scan_error_does_not_block(self, gates, make_entry, artifact_file, fake_scanner):
        fake_scanner.result = ScanResult.error("Windows Defender not found", "WindowsDefender")

        report = gates.verify_artifact(make_entry(), artifact_file(), "admin")

        assert report.scan.status is ScanStatus.ERROR
        assert isinstance(report.scan_error, ScanUnavailableError)
        assert "Windows Defender not found" in str(report.scan_error)
        assert not report.scan_error.retryable

    def test_clean_scan_has_no_scan_error(self, gates, make_entry, artifact_file):
        report = gates.verify_artifact(make_entry(), artifact_file(), "admin")

        assert report.scan.status is ScanStatus.CLEAN
        assert report.scan_error is None

    def test_progress_reaches_end_of_verify_band(self, gates, make_entry, artifact_file):
        seen: list[float] = []
        progress = ProgressReporter(seen.append)

        gates.verify_artifact(make_entry(), artifact_file(), "admin", progress=progress)

        assert seen == sorted(seen)
        assert seen[-1] == pytest.approx(0.70)

    def test_cancelled_deletes_artifact_without_gate_audit(
        self, gates, make_entry, artifact_file, memory_audit
    ):
        token = CancellationToken()
        token.cancel()
        artifact = artifact_file()

        with pytest.raises(InstallCancelledError):
            gates.verify_artifact(make_entry(), artifact, "admin", cancel=token)

        assert not artifact.exists()
        assert memory_audit.records == []
