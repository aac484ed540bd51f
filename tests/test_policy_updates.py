"""
Tests for fleetpkg.policy.updates module.

Pure state transitions with a pinned clock.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from fleetpkg.catalog import UpdatePolicy
from fleetpkg.exceptions import RollbackUnavailableError
from fleetpkg.policy import updates

pytestmark = pytest.mark.unit

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def pending(make_entry):
    entry = make_entry(
        current_version="1.0",
        download_url="https://example.com/v1.msi",
        checksum_sha256="aa" * 32,
        is_installed=True,
    )
    updates.set_new_version_available(
        entry, "2.0", download_url="https://example.com/v2.msi", checksum="bb" * 32, now=NOW
    )
    return entry


class TestNeedsUpdateCheck:
    def test_never_checked(self, make_entry):
        assert updates.needs_update_check(make_entry(), NOW)

    def test_interval(self, make_entry):
        entry = make_entry(last_update_check=NOW, update_check_interval_hours=24)

        assert not updates.needs_update_check(entry, NOW + timedelta(hours=24))
        assert updates.needs_update_check(entry, NOW + timedelta(hours=24, seconds=1))

    def test_disabled_never_checked(self, make_entry):
        assert not updates.needs_update_check(make_entry(update_policy=UpdatePolicy.DISABLED), NOW)


class TestReadiness:
    def test_admin_approved_needs_approval(self, pending):
        assert not updates.is_update_ready_to_install(pending, NOW)

        updates.approve_update(pending, "admin", NOW)

        assert updates.is_update_ready_to_install(pending, NOW)

    def test_auto_approved_on_detection(self, make_entry):
        entry = make_entry(update_policy=UpdatePolicy.AUTO)

        updates.set_new_version_available(entry, "2.0", now=NOW)

        assert entry.update_approved
        assert updates.is_update_ready_to_install(entry, NOW)

    def test_disabled_never_ready(self, pending):
        pending.update_policy = UpdatePolicy.DISABLED
        updates.approve_update(pending, "admin", NOW)

        assert not updates.is_update_ready_to_install(pending, NOW)

    def test_expired_approval_counts_as_revoked(self, pending):
        updates.approve_update(pending, "admin", NOW)
        later = NOW + timedelta(hours=pending.approval_expiration_hours, seconds=1)

        assert updates.is_update_approval_expired(pending, later)
        assert not updates.is_update_ready_to_install(pending, later)
        assert updates.is_pending_approval(pending, later)
        assert pending.update_approved

    def test_sweep_clears_expired(self, pending):
        updates.approve_update(pending, "admin", NOW)

        assert not updates.sweep_expired_approval(pending, NOW + timedelta(hours=1))
        assert updates.sweep_expired_approval(pending, NOW + timedelta(hours=73))
        assert not pending.update_approved
        assert pending.update_available


class TestCompleteAndRollback:
    def test_complete_update_snapshots_previous(self, pending):
        updates.approve_update(pending, "admin", NOW)
        pending.update_failed_count = 2

        updates.complete_update(pending, NOW)

        assert pending.current_version == "2.0"
        assert pending.download_url == "https://example.com/v2.msi"
        assert pending.checksum_sha256 == "bb" * 32
        assert pending.previous_version == "1.0"
        assert pending.previous_download_url == "https://example.com/v1.msi"
        assert pending.previous_checksum == "aa" * 32
        assert pending.rollback_available
        assert not pending.update_available
        assert not pending.update_approved
        assert pending.update_failed_count == 0

    def test_rollback_twice_restores(self, pending):
        updates.complete_update(pending, NOW)

        updates.rollback(pending, NOW)
        assert pending.current_version == "1.0"
        assert pending.previous_version == "2.0"

        updates.rollback(pending, NOW)
        assert pending.current_version == "2.0"
        assert pending.checksum_sha256 == "bb" * 32

    def test_rollback_unavailable(self, make_entry):
        with pytest.raises(RollbackUnavailableError):
            updates.rollback(make_entry())

    def test_clear_rollback(self, pending):
        updates.complete_update(pending, NOW)

        updates.clear_rollback(pending)

        assert not pending.rollback_available
        assert pending.previous_version is None


class TestFailures:
    def test_counter(self, pending):
        updates.mark_update_failed(pending, "boom")
        updates.mark_update_failed(pending, "boom again")

        assert pending.update_failed_count == 2
        assert pending.last_update_error == "boom again"
        assert pending.update_available

    def test_permanent_goes_to_ceiling(self, pending):
        updates.mark_update_failed(pending, "malware", permanent=True)

        assert pending.update_failed_count == updates.MAX_UPDATE_FAILURES

    def test_auto_candidates_respect_breaker(self, make_entry):
        ok = make_entry("a", update_policy=UpdatePolicy.AUTO)
        broken = make_entry("b", update_policy=UpdatePolicy.AUTO)
        manual = make_entry("c", update_policy=UpdatePolicy.MANUAL)
        for entry in (ok, broken, manual):
            updates.set_new_version_available(entry, "2.0", now=NOW)
        updates.approve_update(manual, "admin", NOW)
        broken.update_failed_count = updates.MAX_UPDATE_FAILURES

        selected = updates.select_auto_update_candidates([ok, broken, manual], NOW)

        assert [e.code for e in selected] == ["a"]
