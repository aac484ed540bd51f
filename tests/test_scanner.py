"""
Tests for fleetpkg.security.scanner module.

Tests malware scanning including:
- Disabled scanning and missing files
- Custom scanner argument substitution and exit codes
- Fallback to Windows Defender
- Defender exit code interpretation
"""

from __future__ import annotations

from pathlib import Path

import pytest

from fleetpkg.exceptions import ProcessStartError, ProcessTimeoutError
from fleetpkg.process import ProcessOutcome
from fleetpkg.security.scanner import ProcessScanner, ScanStatus, extract_threat_name

DEFENDER = Path("C:/Program Files/Windows Defender/MpCmdRun.exe")


class ScriptedRunner:
    """Runner returning queued outcomes (or raising queued errors) per call."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: list[list[str]] = []

    def __call__(self, command, timeout, *, cancel=None, cwd=None, label=None):
        self.calls.append(list(command))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _outcome(code: int, output: str = "") -> ProcessOutcome:
    return ProcessOutcome(exit_code=code, output=output, duration=0.5)


@pytest.fixture
def sample(tmp_test_dir: Path) -> Path:
    path = tmp_test_dir / "setup.exe"
    path.write_bytes(b"MZ")
    return path


def test_disabled_scanner_skips(sample):
    runner = ScriptedRunner()
    scanner = ProcessScanner(enabled=False, runner=runner)

    result = scanner.scan(sample)

    assert result.status is ScanStatus.SKIPPED
    assert result.scanner == "SKIPPED"
    assert runner.calls == []


def test_missing_file_is_error(tmp_test_dir):
    scanner = ProcessScanner(runner=ScriptedRunner(), defender_locator=lambda: DEFENDER)

    result = scanner.scan(tmp_test_dir / "gone.exe")

    assert result.status is ScanStatus.ERROR
    assert not result.completed


class TestCustomScanner:
    def test_clean_with_file_placeholder(self, sample):
        runner = ScriptedRunner(_outcome(0))
        scanner = ProcessScanner(
            custom_scanner_path="C:/Tools/scan.exe",
            custom_scanner_args="--scan {file} --quiet",
            runner=runner,
        )

        result = scanner.scan(sample)

        assert result.status is ScanStatus.CLEAN
        assert result.scanner == "CustomScanner"
        assert runner.calls[0] == [
            "C:/Tools/scan.exe",
            "--scan",
            str(sample.resolve()),
            "--quiet",
        ]

    def test_no_args_passes_path_alone(self, sample):
        runner = ScriptedRunner(_outcome(0))
        scanner = ProcessScanner(custom_scanner_path="scan", runner=runner)

        scanner.scan(sample)

        assert runner.calls[0] == ["scan", str(sample.resolve())]

    def test_nonzero_exit_is_threat(self, sample):
        scanner = ProcessScanner(custom_scanner_path="scan", runner=ScriptedRunner(_outcome(5)))

        result = scanner.scan(sample)

        assert result.is_threat
        assert result.threat_name == "Threat detected (exit code 5)"

    @pytest.mark.parametrize(
        "error",
        [ProcessTimeoutError("CustomScanner", 300), ProcessStartError("Failed to start scan")],
    )
    def test_failure_falls_back_to_defender(self, sample, error):
        runner = ScriptedRunner(error, _outcome(0))
        scanner = ProcessScanner(
            custom_scanner_path="scan", runner=runner, defender_locator=lambda: DEFENDER
        )

        result = scanner.scan(sample)

        assert result.status is ScanStatus.CLEAN
        assert result.scanner == "WindowsDefender"
        assert runner.calls[1][0] == str(DEFENDER)


class TestDefender:
    def test_command_line(self, sample):
        runner = ScriptedRunner(_outcome(0))
        scanner = ProcessScanner(runner=runner, defender_locator=lambda: DEFENDER)

        scanner.scan(sample)

        assert runner.calls[0] == [
            str(DEFENDER),
            "-Scan",
            "-ScanType",
            "3",
            "-File",
            str(sample.resolve()),
            "-DisableRemediation",
        ]

    def test_exit_two_is_threat(self, sample):
        output = "Scan starting...\nThreat Trojan:Win32/Wacatac.B!ml identified.\n"
        scanner = ProcessScanner(
            runner=ScriptedRunner(_outcome(2, output)), defender_locator=lambda: DEFENDER
        )

        result = scanner.scan(sample)

        assert result.is_threat
        assert result.threat_name == "Threat Trojan:Win32/Wacatac.B!ml identified."

    def test_unexpected_exit_treated_as_clean(self, sample):
        scanner = ProcessScanner(
            runner=ScriptedRunner(_outcome(1, "odd")), defender_locator=lambda: DEFENDER
        )

        assert scanner.scan(sample).status is ScanStatus.CLEAN

    def test_timeout_is_error(self, sample):
        scanner = ProcessScanner(
            timeout=10,
            runner=ScriptedRunner(ProcessTimeoutError("WindowsDefender", 10)),
            defender_locator=lambda: DEFENDER,
        )

        result = scanner.scan(sample)

        assert result.status is ScanStatus.ERROR
        assert result.message == "Scan timed out after 10 seconds"

    def test_defender_not_found(self, sample):
        scanner = ProcessScanner(runner=ScriptedRunner(), defender_locator=lambda: None)

        result = scanner.scan(sample)

        assert result.status is ScanStatus.ERROR
        assert result.message == "Windows Defender not found"


def test_is_available(tmp_test_dir):
    assert not ProcessScanner(enabled=False).is_available()
    assert ProcessScanner(defender_locator=lambda: DEFENDER).is_available()
    assert not ProcessScanner(defender_locator=lambda: None).is_available()


def test_extract_threat_name_default():
    assert extract_threat_name(["nothing here"]) == "Unknown threat detected"
