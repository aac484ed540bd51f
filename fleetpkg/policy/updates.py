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

"""Update and rollback state transitions for fleetpkg.

Pure functions over CatalogEntry: no I/O, no repository, no audit. The
UpdateManager and the installation pipeline call them and persist the
result. Every function that takes ``now`` uses it in place of the current
UTC time so tests can pin the clock.

States of an entry's update:

    no update -> available (pending) -> approved -> installed (+rollback)
                       |                    |
                       +--- rejected <------+--- expired (lazy)

An approval whose window has elapsed counts as revoked immediately, even
before sweep_expired_approval() clears the flag.

Example:
    Approve and apply a pending update:

        from fleetpkg.policy.updates import (
            approve_update, complete_update, is_update_ready_to_install,
        )

        approve_update(entry, "admin")
        if is_update_ready_to_install(entry):
            complete_update(entry)
"""

from __future__ import annotations

from datetime import datetime, timedelta

from fleetpkg.catalog.models import CatalogEntry, UpdatePolicy, utcnow
from fleetpkg.exceptions import RollbackUnavailableError

# Auto-updates stop once an entry has failed this many times in a row.
MAX_UPDATE_FAILURES = 3


def needs_update_check(entry: CatalogEntry, now: datetime | None = None) -> bool:
    """True when the entry's check interval has elapsed (never for DISABLED)."""
    if entry.update_policy is UpdatePolicy.DISABLED:
        return False
    if entry.last_update_check is None:
        return True
    now = now or utcnow()
    due = entry.last_update_check + timedelta(hours=entry.update_check_interval_hours)
    return due < now


def is_update_approval_expired(entry: CatalogEntry, now: datetime | None = None) -> bool:
    if not entry.update_approved or entry.update_approval_expires_at is None:
        return False
    return (now or utcnow()) > entry.update_approval_expires_at


def is_update_ready_to_install(entry: CatalogEntry, now: datetime | None = None) -> bool:
    """True when a pending update may be installed under the entry's policy.

    AUTO needs only a pending update; ADMIN_APPROVED and MANUAL need an
    unexpired approval; DISABLED is never ready.
    """
    if not entry.update_available or entry.pending_version is None:
        return False
    if is_update_approval_expired(entry, now):
        return False
    if entry.update_policy is UpdatePolicy.AUTO:
        return True
    if entry.update_policy is UpdatePolicy.DISABLED:
        return False
    return entry.update_approved


def set_new_version_available(
    entry: CatalogEntry,
    version: str,
    download_url: str | None = None,
    checksum: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> None:
    """Record a pending update; AUTO entries are approved on the spot."""
    now = now or utcnow()
    entry.pending_version = version
    entry.pending_download_url = download_url
    entry.pending_checksum = checksum
    entry.update_notes = notes
    entry.update_available = True
    entry.update_approved = entry.update_policy is UpdatePolicy.AUTO
    entry.update_approved_by = None
    entry.update_approved_at = None
    entry.update_approval_expires_at = None
    entry.latest_version = version
    entry.last_update_check = now


def approve_update(entry: CatalogEntry, approved_by: str, now: datetime | None = None) -> None:
    """Approve the pending update; the approval expires after the entry's window."""
    now = now or utcnow()
    entry.update_approved = True
    entry.update_approved_by = approved_by
    entry.update_approved_at = now
    if entry.approval_expiration_hours and entry.approval_expiration_hours > 0:
        entry.update_approval_expires_at = now + timedelta(
            hours=entry.approval_expiration_hours
        )
    else:
        entry.update_approval_expires_at = None


def revoke_update_approval(entry: CatalogEntry) -> None:
    entry.update_approved = False
    entry.update_approved_by = None
    entry.update_approved_at = None
    entry.update_approval_expires_at = None


def clear_pending_update(entry: CatalogEntry) -> None:
    """Drop the pending update (reject or cancel)."""
    entry.pending_version = None
    entry.pending_download_url = None
    entry.pending_checksum = None
    entry.update_notes = None
    entry.update_available = False
    revoke_update_approval(entry)


def complete_update(entry: CatalogEntry, now: datetime | None = None) -> None:
    """Promote the pending update and keep the old version for rollback.

    Current artifact fields move to previous-*, pending-* become current,
    pending and approval fields are cleared and the failure counter resets.
    Fields a pending update did not provide (URL, checksum) keep their
    current values.
    """
    now = now or utcnow()
    new_version = entry.pending_version
    new_url = entry.pending_download_url or entry.download_url
    new_checksum = entry.pending_checksum

    entry.previous_version = entry.current_version
    entry.previous_download_url = entry.download_url
    entry.previous_checksum = entry.checksum_sha256

    entry.current_version = new_version
    entry.latest_version = new_version
    entry.download_url = new_url
    entry.checksum_sha256 = new_checksum

    clear_pending_update(entry)
    entry.update_failed_count = 0
    entry.last_update_error = None
    entry.rollback_available = entry.previous_version is not None
    entry.last_updated = now


def rollback(entry: CatalogEntry, now: datetime | None = None) -> None:
    """Swap current and previous artifact fields.

    Rollback stays available afterwards so a second call undoes the first.

    Raises:
        RollbackUnavailableError: If no previous version is recorded.
    """
    if not entry.rollback_available or entry.previous_version is None:
        raise RollbackUnavailableError(
            f"Rollback not available for this application: {entry.code}"
        )
    (
        entry.current_version,
        entry.download_url,
        entry.checksum_sha256,
        entry.previous_version,
        entry.previous_download_url,
        entry.previous_checksum,
    ) = (
        entry.previous_version,
        entry.previous_download_url,
        entry.previous_checksum,
        entry.current_version,
        entry.download_url,
        entry.checksum_sha256,
    )
    entry.last_updated = now or utcnow()


def clear_rollback(entry: CatalogEntry) -> None:
    """Forget the previous version (the current one is confirmed good)."""
    entry.previous_version = None
    entry.previous_download_url = None
    entry.previous_checksum = None
    entry.rollback_available = False


def mark_update_failed(entry: CatalogEntry, error: str, *, permanent: bool = False) -> None:
    """Record a failed update attempt; the pending update is kept.

    Args:
        entry: Entry whose update failed.
        error: Failure message.
        permanent: Raise the counter straight to MAX_UPDATE_FAILURES so the
            scheduler never retries (security failures).
    """
    if permanent:
        entry.update_failed_count = max(entry.update_failed_count + 1, MAX_UPDATE_FAILURES)
    else:
        entry.update_failed_count += 1
    entry.last_update_error = error


def sweep_expired_approval(entry: CatalogEntry, now: datetime | None = None) -> bool:
    """Clear an expired approval. Returns True when something was revoked."""
    if not (entry.update_available and entry.update_approved):
        return False
    if not is_update_approval_expired(entry, now):
        return False
    revoke_update_approval(entry)
    return True


def is_auto_update_candidate(entry: CatalogEntry, now: datetime | None = None) -> bool:
    return (
        entry.update_policy is UpdatePolicy.AUTO
        and entry.update_available
        and is_update_ready_to_install(entry, now)
        and entry.update_failed_count < MAX_UPDATE_FAILURES
    )


def select_auto_update_candidates(
    entries: list[CatalogEntry], now: datetime | None = None
) -> list[CatalogEntry]:
    """Entries the scheduler may update without a human."""
    return [e for e in entries if is_auto_update_candidate(e, now)]


def is_pending_approval(entry: CatalogEntry, now: datetime | None = None) -> bool:
    """An available update nobody has (validly) approved yet."""
    if not entry.update_available:
        return False
    return not entry.update_approved or is_update_approval_expired(entry, now)
