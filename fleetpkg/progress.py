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

"""Progress reporting and cancellation for pipeline runs.

Progress is a fraction in [0.0, 1.0] split into fixed bands:

    prepare       0.00 - 0.05
    download      0.05 - 0.60
    verification  0.60 - 0.70
    execution     0.70 - 0.95
    commit        0.95 - 1.00

ProgressReporter never reports a value lower than one it already reported.
"""

from __future__ import annotations

from collections.abc import Callable
import threading

from fleetpkg.exceptions import InstallCancelledError

ProgressCallback = Callable[[float], None]

PREPARE = (0.0, 0.05)
DOWNLOAD = (0.05, 0.60)
VERIFY = (0.60, 0.70)
EXECUTE = (0.70, 0.95)
COMMIT = (0.95, 1.0)


class CancellationToken:
    """Thread-safe cancellation flag shared between a caller and a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise InstallCancelledError("Operation cancelled")


class ProgressReporter:
    """Monotonic progress sink wrapping an optional callback.

    Args:
        callback: Receives fractions in [0.0, 1.0]. May be None.
    """

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self.value = 0.0

    def report(self, fraction: float) -> None:
        fraction = min(max(fraction, 0.0), 1.0)
        with self._lock:
            if fraction < self.value:
                return
            self.value = fraction
        if self._callback is not None:
            self._callback(fraction)

    def band(self, band: tuple[float, float], fraction: float) -> None:
        """Report a position inside one of the fixed bands."""
        start, end = band
        fraction = min(max(fraction, 0.0), 1.0)
        self.report(start + (end - start) * fraction)
