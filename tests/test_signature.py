"""
Tests for fleetpkg.security.signature module.

Tests signature inspection including:
- Parsing Get-AuthenticodeSignature output
- PowerShell inspector behavior (unsignable types, timeouts)
- Publisher and thumbprint requirements
"""

from __future__ import annotations

import pytest

from fleetpkg.exceptions import (
    ProcessStartError,
    ProcessTimeoutError,
    PublisherMismatchError,
    SignatureInvalidError,
    SignatureUnsignedError,
    ThumbprintMismatchError,
)
from fleetpkg.security.signature import (
    PowerShellSignatureInspector,
    SignatureInspection,
    SignatureStatus,
    check_signature,
    extract_common_name,
    parse_signature_output,
)

VALID_OUTPUT = [
    "STATUS:Valid",
    "STATUSMESSAGE:Signature verified.",
    "SUBJECT:CN=VideoLAN, O=VideoLAN, L=Paris, C=FR",
    "ISSUER:CN=DigiCert Trusted G4 Code Signing RSA4096 SHA384 2021 CA1, O=DigiCert",
    "THUMBPRINT:4B1D9C3A00FF",
    "TIMESTAMP:CN=DigiCert Timestamp 2023, O=DigiCert",
]


class TestParseSignatureOutput:
    def test_valid(self):
        inspection = parse_signature_output(VALID_OUTPUT)

        assert inspection.status is SignatureStatus.VALID
        assert inspection.signer == "VideoLAN"
        assert inspection.thumbprint == "4B1D9C3A00FF"
        assert inspection.timestamp_authority.startswith("CN=DigiCert Timestamp")
        assert len(inspection.certificate_chain) == 2

    def test_not_signed(self):
        inspection = parse_signature_output(["STATUS:NotSigned"])

        assert not inspection.is_signed
        assert inspection.message == "File is not digitally signed"

    def test_hash_mismatch_is_invalid(self):
        inspection = parse_signature_output(
            ["STATUS:HashMismatch", "STATUSMESSAGE:The file has been altered."]
        )

        assert inspection.is_signed
        assert not inspection.is_valid
        assert inspection.message == "The file has been altered."

    def test_no_status_is_unsigned(self):
        inspection = parse_signature_output(["garbage"])

        assert inspection.status is SignatureStatus.UNSIGNED


def test_extract_common_name():
    assert extract_common_name("CN=Mozilla Corporation, O=Mozilla") == "Mozilla Corporation"
    assert extract_common_name("O=NoCommonName") == "O=NoCommonName"
    assert extract_common_name(None) is None


class TestPowerShellSignatureInspector:
    def test_missing_file_is_unsigned(self, tmp_test_dir, fake_runner):
        inspector = PowerShellSignatureInspector(runner=fake_runner)

        inspection = inspector.inspect(tmp_test_dir / "missing.msi")

        assert inspection.status is SignatureStatus.UNSIGNED
        assert fake_runner.calls == []

    def test_unsignable_extension_skips_powershell(self, tmp_test_dir, fake_runner):
        path = tmp_test_dir / "tool.zip"
        path.write_bytes(b"PK")
        inspector = PowerShellSignatureInspector(runner=fake_runner)

        inspection = inspector.inspect(path)

        assert not inspection.is_signed
        assert "does not support digital signatures" in inspection.message
        assert fake_runner.calls == []

    def test_parses_runner_output(self, tmp_test_dir, fake_runner):
        path = tmp_test_dir / "vlc.msi"
        path.write_bytes(b"msi")
        fake_runner.output = "\n".join(VALID_OUTPUT)
        inspector = PowerShellSignatureInspector(runner=fake_runner)

        inspection = inspector.inspect(path)

        assert inspection.is_valid
        assert fake_runner.calls[0][0] == "powershell"
        assert "Get-AuthenticodeSignature" in fake_runner.calls[0][-1]

    @pytest.mark.parametrize(
        "error, message",
        [
            (ProcessTimeoutError("Signature verification", 30), "timed out"),
            (ProcessStartError("Failed to start powershell"), "Verification failed"),
        ],
    )
    def test_runner_failures_are_unsigned(self, tmp_test_dir, fake_runner, error, message):
        path = tmp_test_dir / "setup.exe"
        path.write_bytes(b"MZ")
        fake_runner.error = error
        inspector = PowerShellSignatureInspector(runner=fake_runner)

        inspection = inspector.inspect(path)

        assert inspection.status is SignatureStatus.UNSIGNED
        assert message in inspection.message


class TestCheckSignature:
    """Tests for applying entry signature requirements."""

    def test_not_required(self, make_entry):
        entry = make_entry(require_signature=False)

        assert check_signature(entry, SignatureInspection.unsigned("nope")) is False

    def test_required_and_valid(self, make_entry, valid_inspection):
        assert check_signature(make_entry(), valid_inspection) is True

    def test_unsigned(self, make_entry):
        with pytest.raises(SignatureUnsignedError, match="not digitally signed"):
            check_signature(make_entry(), SignatureInspection.unsigned("File is not digitally signed"))

    def test_invalid(self, make_entry):
        with pytest.raises(SignatureInvalidError):
            check_signature(make_entry(), SignatureInspection.invalid("Certificate revoked"))

    def test_publisher_substring_case_insensitive(self, make_entry, valid_inspection):
        entry = make_entry(expected_publisher="videolan")

        assert check_signature(entry, valid_inspection)

    def test_publisher_mismatch(self, make_entry, valid_inspection):
        entry = make_entry(expected_publisher="Mozilla")

        with pytest.raises(PublisherMismatchError, match="expected 'Mozilla', got 'VideoLAN'"):
            check_signature(entry, valid_inspection)

    def test_thumbprint_normalized(self, make_entry, valid_inspection):
        entry = make_entry(expected_cert_thumbprint="4b 1d 9c 3a 00 ff")

        assert check_signature(entry, valid_inspection)

    def test_thumbprint_mismatch(self, make_entry, valid_inspection):
        entry = make_entry(expected_cert_thumbprint="DEADBEEF")

        with pytest.raises(ThumbprintMismatchError):
            check_signature(entry, valid_inspection)
