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

"""Malware scanning for fleetpkg.

ProcessScanner runs a configured command-line scanner and falls back to
Windows Defender (``MpCmdRun.exe``). Outcomes:

- CLEAN: scanner ran and found nothing
- THREAT: scanner reported a threat (always aborts an install)
- ERROR: scanner could not run or timed out (logged, never aborts)
- SKIPPED: scanning disabled in configuration (treated as clean)

Exit code contracts:

- Custom scanner: 0 clean, anything else a threat
- Defender: 0 clean, 2 threat (name taken from the first output line that
  mentions a threat); other codes are logged and treated as clean because
  the scan itself completed
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from fleetpkg.exceptions import ProcessStartError, ProcessTimeoutError
from fleetpkg.logging import get_global_logger
from fleetpkg.process import ProcessOutcome, run_process

if TYPE_CHECKING:
    from fleetpkg.progress import CancellationToken

DEFAULT_SCAN_TIMEOUT = 300

DEFENDER_PATH = Path("C:/Program Files/Windows Defender/MpCmdRun.exe")
DEFENDER_PLATFORM_DIR = Path("C:/ProgramData/Microsoft/Windows Defender/Platform")

DEFENDER_THREAT_EXIT_CODE = 2


class ScanStatus(str, Enum):
    CLEAN = "clean"
    THREAT = "threat"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ScanResult:
    """Outcome of scanning one file.

    Attributes:
        status: CLEAN, THREAT, ERROR or SKIPPED.
        scanner: Which scanner produced the result.
        threat_name: Reported threat (THREAT only).
        message: Error or skip reason.
        duration: Seconds the scan took.
    """

    status: ScanStatus
    scanner: str
    threat_name: str | None = None
    message: str | None = None
    duration: float = 0.0

    @classmethod
    def clean(cls, scanner: str, duration: float = 0.0) -> ScanResult:
        return cls(ScanStatus.CLEAN, scanner, duration=duration)

    @classmethod
    def threat(cls, name: str, scanner: str, duration: float = 0.0) -> ScanResult:
        return cls(ScanStatus.THREAT, scanner, threat_name=name, duration=duration)

    @classmethod
    def error(cls, message: str, scanner: str) -> ScanResult:
        return cls(ScanStatus.ERROR, scanner, message=message)

    @classmethod
    def skipped(cls, reason: str) -> ScanResult:
        return cls(ScanStatus.SKIPPED, "SKIPPED", message=reason)

    @property
    def is_threat(self) -> bool:
        return self.status is ScanStatus.THREAT

    @property
    def completed(self) -> bool:
        return self.status is not ScanStatus.ERROR


class MalwareScanner(Protocol):
    """Anything that can scan a file for malware."""

    def scan(self, path: Path, cancel: CancellationToken | None = None) -> ScanResult: ...


def find_defender() -> Path | None:
    """Locate MpCmdRun.exe, preferring the newest platform directory."""
    if DEFENDER_PATH.exists():
        return DEFENDER_PATH
    if DEFENDER_PLATFORM_DIR.is_dir():
        versions = sorted(
            (p for p in DEFENDER_PLATFORM_DIR.iterdir() if p.is_dir()),
            key=lambda p: p.name,
            reverse=True,
        )
        if versions and (versions[0] / "MpCmdRun.exe").exists():
            return versions[0] / "MpCmdRun.exe"
    return None


def extract_threat_name(lines: list[str]) -> str:
    for line in lines:
        if "threat" in line.lower():
            return line.strip()
    return "Unknown threat detected"


class ProcessScanner:
    """Scan files with a custom command-line scanner or Windows Defender.

    Args:
        enabled: When False every scan is SKIPPED.
        timeout: Seconds before the scanner is killed.
        custom_scanner_path: Optional scanner executable, tried first.
        custom_scanner_args: Argument string; ``{file}`` is replaced with the
            artifact path. Without arguments the path is passed alone.
        runner: Process runner (replaceable in tests).
        defender_locator: Returns the Defender path or None (replaceable in
            tests).
    """

    def __init__(
        self,
        enabled: bool = True,
        timeout: float = DEFAULT_SCAN_TIMEOUT,
        custom_scanner_path: str | None = None,
        custom_scanner_args: str | None = None,
        runner: Callable[..., ProcessOutcome] = run_process,
        defender_locator: Callable[[], Path | None] = find_defender,
    ) -> None:
        self.enabled = enabled
        self.timeout = timeout
        self.custom_scanner_path = custom_scanner_path
        self.custom_scanner_args = custom_scanner_args
        self._run = runner
        self._find_defender = defender_locator

    def scan(self, path: Path, cancel: CancellationToken | None = None) -> ScanResult:
        logger = get_global_logger()
        if not self.enabled:
            logger.debug("SCAN", "Virus scanning is disabled")
            return ScanResult.skipped("Virus scanning disabled in configuration")

        path = Path(path)
        if not path.exists():
            return ScanResult.error(f"File does not exist: {path}", "NONE")

        if self.custom_scanner_path:
            result = self._scan_custom(path, cancel)
            if result.completed:
                return result
            logger.warning("SCAN", "Custom scanner failed, falling back to Windows Defender")

        return self._scan_defender(path, cancel)

    def is_available(self) -> bool:
        if not self.enabled:
            return False
        if self.custom_scanner_path and Path(self.custom_scanner_path).exists():
            return True
        return self._find_defender() is not None

    def _scan_custom(self, path: Path, cancel: CancellationToken | None) -> ScanResult:
        target = str(path.resolve())
        command = [self.custom_scanner_path]
        if self.custom_scanner_args:
            args = self.custom_scanner_args.split()
            command += [arg.replace("{file}", target) for arg in args]
        else:
            command.append(target)

        try:
            outcome = self._run(command, self.timeout, cancel=cancel, label="CustomScanner")
        except ProcessTimeoutError:
            return ScanResult.error("Scan timed out", "CustomScanner")
        except ProcessStartError as err:
            return ScanResult.error(f"Custom scan failed: {err}", "CustomScanner")

        if outcome.exit_code == 0:
            get_global_logger().verbose("SCAN", f"Custom scanner reports clean: {path.name}")
            return ScanResult.clean("CustomScanner", outcome.duration)
        return ScanResult.threat(
            f"Threat detected (exit code {outcome.exit_code})", "CustomScanner", outcome.duration
        )

    def _scan_defender(self, path: Path, cancel: CancellationToken | None) -> ScanResult:
        logger = get_global_logger()
        defender = self._find_defender()
        if defender is None:
            return ScanResult.error("Windows Defender not found", "WindowsDefender")

        command = [
            str(defender),
            "-Scan",
            "-ScanType",
            "3",
            "-File",
            str(path.resolve()),
            "-DisableRemediation",
        ]
        try:
            outcome = self._run(command, self.timeout, cancel=cancel, label="WindowsDefender")
        except ProcessTimeoutError:
            return ScanResult.error(
                f"Scan timed out after {self.timeout:g} seconds", "WindowsDefender"
            )
        except ProcessStartError as err:
            return ScanResult.error(f"Scan failed: {err}", "WindowsDefender")

        if outcome.exit_code == 0:
            logger.verbose("SCAN", f"Windows Defender scan clean for: {path.name}")
            return ScanResult.clean("WindowsDefender", outcome.duration)
        if outcome.exit_code == DEFENDER_THREAT_EXIT_CODE:
            name = extract_threat_name(outcome.lines)
            logger.warning("SCAN", f"Windows Defender found threat in {path.name}: {name}")
            return ScanResult.threat(name, "WindowsDefender", outcome.duration)

        logger.warning(
            "SCAN",
            f"Windows Defender returned unexpected exit code {outcome.exit_code}: "
            + "; ".join(outcome.lines),
        )
        return ScanResult.clean("WindowsDefender", outcome.duration)
