"""
Tests for fleetpkg.updates.scheduler module.
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

from fleetpkg.exceptions import FleetPkgError
from fleetpkg.updates import UpdateScheduler


def _manager() -> MagicMock:
    manager = MagicMock()
    manager.check_due.return_value = {}
    manager.sweep_expired_approvals.return_value = []
    manager.dispatch_auto_updates.return_value = {}
    return manager


def test_tick_runs_steps_in_order():
    manager = _manager()
    scheduler = UpdateScheduler(manager, interval_minutes=60, workers=3)

    report = scheduler.tick()

    assert report.ran
    names = [call[0] for call in manager.mock_calls]
    assert names == ["check_due", "sweep_expired_approvals", "dispatch_auto_updates"]
    assert manager.dispatch_auto_updates.call_args.args[0] == 3


def test_tick_is_single_flight():
    manager = _manager()
    scheduler = UpdateScheduler(manager)

    scheduler._tick_lock.acquire()
    try:
        report = scheduler.tick()
    finally:
        scheduler._tick_lock.release()

    assert not report.ran
    manager.check_due.assert_not_called()


def test_dispatch_failure_does_not_fail_tick():
    manager = _manager()
    manager.dispatch_auto_updates.side_effect = FleetPkgError("pool broke")
    scheduler = UpdateScheduler(manager)

    report = scheduler.tick()

    assert report.ran
    assert report.updates == {}
    manager.sweep_expired_approvals.assert_called_once()


def test_background_thread_ticks_until_stopped():
    manager = _manager()
    ticked = threading.Event()
    manager.check_due.side_effect = lambda now=None: ticked.set() or {}
    scheduler = UpdateScheduler(manager, interval_minutes=60)

    scheduler.start()
    try:
        assert ticked.wait(timeout=5)
    finally:
        scheduler.stop(timeout=5)

    assert scheduler._thread is None
    assert manager.check_due.call_count == 1
