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

"""Fixed-interval update scheduler.

Each tick runs, in order:

1. Update checks for installed entries that are due
2. Expired-approval sweep
3. Auto-update dispatch on a bounded pool

Ticks are single-flight: a tick that starts while another is still running
returns immediately without doing anything.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import threading

from fleetpkg.catalog.models import CatalogEntry
from fleetpkg.exceptions import FleetPkgError
from fleetpkg.logging import get_global_logger
from fleetpkg.results import UpdateCheckResult, UpdateResult
from fleetpkg.updates.manager import UpdateManager

DEFAULT_INTERVAL_MINUTES = 60


@dataclass
class TickReport:
    """What one tick did. ``ran`` is False when the tick was skipped."""

    ran: bool = True
    checks: dict[str, UpdateCheckResult] = field(default_factory=dict)
    expired: list[CatalogEntry] = field(default_factory=list)
    updates: dict[str, UpdateResult] = field(default_factory=dict)


class UpdateScheduler:
    """Drive UpdateManager ticks on a background thread.

    Args:
        manager: Update manager the ticks call into.
        interval_minutes: Time between tick starts.
        workers: Maximum concurrent auto-updates per tick.
    """

    def __init__(
        self,
        manager: UpdateManager,
        interval_minutes: float = DEFAULT_INTERVAL_MINUTES,
        workers: int = 2,
    ) -> None:
        self.manager = manager
        self.interval = interval_minutes * 60
        self.workers = workers
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self, now: datetime | None = None) -> TickReport:
        """Run one scheduling pass (skipped if another pass is running)."""
        logger = get_global_logger()
        if not self._tick_lock.acquire(blocking=False):
            logger.verbose("SCHEDULER", "Previous tick still running, skipping")
            return TickReport(ran=False)
        try:
            logger.verbose("SCHEDULER", "Running scheduled update check...")
            report = TickReport()
            report.checks = self.manager.check_due(now)
            report.expired = self.manager.sweep_expired_approvals(now)
            try:
                report.updates = self.manager.dispatch_auto_updates(self.workers, now)
            except FleetPkgError as err:
                logger.warning("SCHEDULER", f"Auto-update dispatch failed: {err}")
            return report
        finally:
            self._tick_lock.release()

    def start(self) -> None:
        """Start ticking in a daemon thread; the first tick runs immediately."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="fleetpkg-scheduler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_forever(self) -> None:
        """Tick in the calling thread until stop() is called from elsewhere."""
        self._stop.clear()
        self._loop()

    def _loop(self) -> None:
        logger = get_global_logger()
        while not self._stop.is_set():
            try:
                self.tick()
            except FleetPkgError as err:
                logger.warning("SCHEDULER", f"Tick failed: {err}")
            self._stop.wait(self.interval)
