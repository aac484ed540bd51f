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

"""External process runner for fleetpkg.

Installers, the signature inspector and malware scanners are all external
programs. run_process() starts one, captures combined stdout/stderr, and
enforces a timeout. While waiting it polls an optional cancellation token;
on timeout or cancellation the child is killed before the error is raised.

Example:
    ```python
    from fleetpkg.process import run_process

    outcome = run_process(["msiexec", "/i", "app.msi", "/qn"], timeout=1800)
    print(outcome.exit_code)
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import subprocess
import time
from typing import TYPE_CHECKING

from fleetpkg.exceptions import InstallCancelledError, ProcessStartError, ProcessTimeoutError
from fleetpkg.logging import get_global_logger

if TYPE_CHECKING:
    from fleetpkg.progress import CancellationToken

# How often the runner wakes up to check for cancellation.
POLL_INTERVAL = 0.5


@dataclass(frozen=True)
class ProcessOutcome:
    """Exit code, combined output and wall-clock duration of a finished process."""

    exit_code: int
    output: str
    duration: float

    @property
    def lines(self) -> list[str]:
        return self.output.splitlines()


def run_process(
    command: list[str],
    timeout: float,
    *,
    cancel: CancellationToken | None = None,
    cwd: Path | None = None,
    label: str | None = None,
) -> ProcessOutcome:
    """Run a command to completion.

    Args:
        command: Program and arguments.
        timeout: Seconds before the process is killed.
        cancel: Optional token; when cancelled the process is killed.
        cwd: Working directory.
        label: Name used in error messages (defaults to the program).

    Returns:
        The process outcome. A non-zero exit code is NOT an error here;
        callers interpret exit codes.

    Raises:
        ProcessStartError: If the program cannot be started.
        ProcessTimeoutError: If the timeout elapsed (process killed).
        InstallCancelledError: If the token was cancelled (process killed).
    """
    logger = get_global_logger()
    label = label or Path(command[0]).name
    logger.debug("PROCESS", f"Running: {' '.join(command)}")

    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            cwd=cwd,
        )
    except OSError as err:
        raise ProcessStartError(f"Failed to start {label}: {err}") from err

    deadline = started + timeout
    while True:
        wait = max(min(POLL_INTERVAL, deadline - time.monotonic()), 0.01)
        try:
            output, _ = proc.communicate(timeout=wait)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_cancelled:
                _kill(proc)
                raise InstallCancelledError(f"{label} cancelled") from None
            if time.monotonic() >= deadline:
                _kill(proc)
                raise ProcessTimeoutError(label, timeout) from None

    duration = time.monotonic() - started
    logger.debug("PROCESS", f"{label} exited with {proc.returncode} after {duration:.1f}s")
    return ProcessOutcome(exit_code=proc.returncode, output=output or "", duration=duration)


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    try:
        proc.communicate(timeout=10)
    except subprocess.TimeoutExpired:
        get_global_logger().warning("PROCESS", f"Process {proc.pid} did not exit after kill")
