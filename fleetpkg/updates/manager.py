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

"""Update management for fleetpkg.

UpdateManager ties the pure state transitions in fleetpkg.policy.updates to
the catalog repository, the update checker, the installation pipeline and
the audit sink. Every method reads the entry fresh from the repository,
applies one transition, saves it and writes one audit record.

Lifecycle:

    check_for_update  -> update available (auto-approved under AUTO)
    approve_update    -> approved until the expiry window elapses
    perform_update    -> pipeline run; success promotes pending to current
    rollback          -> swap current and previous (optionally reinstall)
    confirm_current_version -> forget the previous version

Failed updates increment a counter; after MAX_UPDATE_FAILURES the scheduler
stops retrying. Security failures (source denied, signature, malware) jump
straight to the ceiling.

Example:
    ```python
    manager = UpdateManager(store, pipeline, UpdateChecker())
    result = manager.check_for_update("vlc")
    if result.update_found:
        manager.approve_update("vlc", actor="admin")
        manager.perform_update("vlc", actor="admin")
    ```
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING

from fleetpkg.audit import AuditAction, AuditSink, LoggerAuditSink
from fleetpkg.catalog.models import CatalogEntry, UpdatePolicy, utcnow
from fleetpkg.exceptions import (
    CatalogError,
    ConfigError,
    EntryBusyError,
    FleetPkgError,
    InstallCancelledError,
    NetworkError,
    RollbackUnavailableError,
    SecurityError,
)
from fleetpkg.logging import get_global_logger
from fleetpkg.policy import updates as policy
from fleetpkg.results import UpdateCheckResult, UpdateResult

if TYPE_CHECKING:
    from fleetpkg.catalog.repository import CatalogRepository
    from fleetpkg.install.pipeline import InstallationAttempt, InstallationPipeline
    from fleetpkg.updates.checker import UpdateChecker

SYSTEM_ACTOR = "SYSTEM"

_UNCOUNTED_FAILURES = (EntryBusyError, InstallCancelledError)


class UpdateManager:
    """Update checks, approvals, installs and rollbacks.

    Args:
        repository: Catalog storage.
        pipeline: Runs the actual update installs.
        checker: Publisher endpoint client.
        audit: Audit sink. Defaults to LoggerAuditSink.
    """

    def __init__(
        self,
        repository: CatalogRepository,
        pipeline: InstallationPipeline,
        checker: UpdateChecker,
        audit: AuditSink | None = None,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.checker = checker
        self.audit = audit or LoggerAuditSink()

    # -------------------------------
    # Checking
    # -------------------------------

    def check_for_update(self, code: str, now: datetime | None = None) -> UpdateCheckResult:
        """Query the publisher for one entry.

        ``last_update_check`` is recorded whatever the outcome. A network or
        parse failure is returned as an unchecked result, not raised.
        """
        logger = get_global_logger()
        now = now or utcnow()
        entry = self.repository.require(code)
        entry.last_update_check = now

        try:
            remote = self.checker.fetch(entry)
        except (NetworkError, ConfigError) as err:
            self.repository.save_entry(entry)
            logger.warning("UPDATE", f"Update check failed for {entry.name}: {err}")
            return UpdateCheckResult.error(str(err))

        if remote is None:
            self.repository.save_entry(entry)
            return UpdateCheckResult.not_configured()

        if remote.version == entry.current_version:
            self.repository.save_entry(entry)
            return UpdateCheckResult.up_to_date(remote.version)

        if entry.update_available and entry.pending_version == remote.version:
            # Already pending; keep any approval that was given.
            self.repository.save_entry(entry)
            return UpdateCheckResult.found(remote.version)

        policy.set_new_version_available(
            entry,
            remote.version,
            download_url=remote.download_url,
            notes="Update available from publisher",
            now=now,
        )
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.APP_UPDATE,
            SYSTEM_ACTOR,
            f"Update available for {entry.name}: {entry.current_version} -> {remote.version}",
            True,
        )
        logger.verbose(
            "UPDATE",
            f"Update available for {entry.name}: {entry.current_version} -> {remote.version}",
        )
        return UpdateCheckResult.found(remote.version)

    def check_all(self, now: datetime | None = None) -> dict[str, UpdateCheckResult]:
        """Check every installed entry, due or not."""
        return {e.code: self.check_for_update(e.code, now) for e in self.repository.find_installed()}

    def check_due(self, now: datetime | None = None) -> dict[str, UpdateCheckResult]:
        """Check installed entries whose check interval has elapsed."""
        logger = get_global_logger()
        now = now or utcnow()
        results: dict[str, UpdateCheckResult] = {}
        for entry in self.repository.find_installed():
            if not policy.needs_update_check(entry, now):
                continue
            try:
                results[entry.code] = self.check_for_update(entry.code, now)
            except FleetPkgError as err:
                logger.warning("UPDATE", f"Failed to check updates for {entry.name}: {err}")
        return results

    # -------------------------------
    # Approval
    # -------------------------------

    def approve_update(
        self, code: str, actor: str, now: datetime | None = None
    ) -> CatalogEntry:
        """Approve the pending update.

        Raises:
            CatalogError: If the entry has no update available.
        """
        entry = self.repository.require(code)
        if not entry.update_available:
            raise CatalogError("No update available for this application")
        policy.approve_update(entry, actor, now)
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.APP_UPDATE,
            actor,
            f"Approved update for {entry.name} to version {entry.pending_version}",
            True,
        )
        return entry

    def reject_update(self, code: str, actor: str) -> CatalogEntry:
        """Dismiss the pending update (it reappears on a later check)."""
        entry = self.repository.require(code)
        pending = entry.pending_version
        policy.clear_pending_update(entry)
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.APP_UPDATE, actor, f"Rejected update for {entry.name} version {pending}", True
        )
        return entry

    def confirm_current_version(self, code: str, actor: str) -> CatalogEntry:
        """Accept the installed version and drop the rollback snapshot."""
        entry = self.repository.require(code)
        policy.clear_rollback(entry)
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.APP_UPDATE,
            actor,
            f"Confirmed {entry.name} version {entry.current_version}",
            True,
        )
        return entry

    # -------------------------------
    # Installing and rolling back
    # -------------------------------

    def perform_update(
        self,
        code: str,
        actor: str = SYSTEM_ACTOR,
        attempt: InstallationAttempt | None = None,
        now: datetime | None = None,
    ) -> UpdateResult:
        """Install the pending update if it is ready under the entry's policy.

        A failure increments the entry's failure counter (to the ceiling for
        security failures) and keeps the pending update for a later retry.
        """
        logger = get_global_logger()
        entry = self.repository.require(code)
        if not policy.is_update_ready_to_install(entry, now):
            return UpdateResult(
                success=False, error_message=f"Update is not ready to install for {entry.name}"
            )

        logger.verbose("UPDATE", f"Updating {entry.name} to version {entry.pending_version}")
        result = self.pipeline.update(code, actor, attempt)
        if result.success:
            return UpdateResult(success=True, new_version=result.entry.current_version)

        err = result.error
        if not isinstance(err, _UNCOUNTED_FAILURES):
            failed = self.repository.require(code)
            policy.mark_update_failed(
                failed,
                result.error_message or "Update failed",
                permanent=isinstance(err, SecurityError),
            )
            self.repository.save_entry(failed)
        retryable = err is not None and err.retryable
        if retryable:
            logger.verbose("UPDATE", f"{entry.name} update will be retried: {result.error_message}")
        return UpdateResult(success=False, error_message=result.error_message, retryable=retryable)

    def rollback(self, code: str, actor: str, reinstall: bool = False) -> UpdateResult:
        """Restore the previous version.

        Without ``reinstall`` only the catalog fields are swapped (the
        previous binaries are assumed to be put back by other means). With
        ``reinstall`` the previous artifact goes through the full pipeline
        and the swap is persisted only if that succeeds.

        Raises:
            RollbackUnavailableError: If no previous version is recorded.
        """
        entry = self.repository.require(code)
        if not entry.rollback_available or entry.previous_version is None:
            raise RollbackUnavailableError(
                f"Rollback not available for this application: {entry.code}"
            )

        if reinstall:
            result = self.pipeline.reinstall_previous(code, actor)
            if not result.success:
                return UpdateResult(success=False, error_message=result.error_message)
            return UpdateResult(success=True, new_version=result.entry.current_version)

        from_version = entry.current_version
        policy.rollback(entry)
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.UPDATE_ROLLBACK,
            actor,
            f"Rolled back {entry.name} from {from_version} to {entry.current_version}",
            True,
        )
        return UpdateResult(success=True, new_version=entry.current_version)

    # -------------------------------
    # Settings
    # -------------------------------

    def set_update_policy(self, code: str, update_policy: UpdatePolicy, actor: str) -> CatalogEntry:
        entry = self.repository.require(code)
        old = entry.update_policy
        entry.update_policy = UpdatePolicy(update_policy)
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.APP_UPDATE,
            actor,
            f"Changed update policy for {entry.name} from {old.value} to {entry.update_policy.value}",
            True,
        )
        return entry

    def set_update_check_interval(self, code: str, hours: int, actor: str) -> CatalogEntry:
        if hours <= 0:
            raise CatalogError("Update check interval must be at least 1 hour")
        entry = self.repository.require(code)
        entry.update_check_interval_hours = hours
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.APP_UPDATE,
            actor,
            f"Changed update check interval for {entry.name} to {hours} hours",
            True,
        )
        return entry

    def set_approval_expiration(self, code: str, hours: int, actor: str) -> CatalogEntry:
        """Set the approval window; 0 means approvals never expire."""
        if hours < 0:
            raise CatalogError("Approval expiration must not be negative")
        entry = self.repository.require(code)
        entry.approval_expiration_hours = hours
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.APP_UPDATE,
            actor,
            f"Changed approval expiration for {entry.name} to {hours} hours",
            True,
        )
        return entry

    # -------------------------------
    # Scheduled work
    # -------------------------------

    def sweep_expired_approvals(self, now: datetime | None = None) -> list[CatalogEntry]:
        """Revoke approvals whose window has elapsed. Returns the revoked entries."""
        revoked = []
        for entry in self.repository.find_update_pending():
            if policy.sweep_expired_approval(entry, now):
                self.repository.save_entry(entry)
                self.audit.log(
                    AuditAction.APP_UPDATE,
                    SYSTEM_ACTOR,
                    f"Update approval expired for {entry.name} version {entry.pending_version}",
                    True,
                )
                revoked.append(entry)
        if revoked:
            get_global_logger().verbose(
                "UPDATE", f"Revoked {len(revoked)} expired update approvals"
            )
        return revoked

    def dispatch_auto_updates(
        self, workers: int = 2, now: datetime | None = None
    ) -> dict[str, UpdateResult]:
        """Install every auto-update candidate, at most ``workers`` at a time."""
        candidates = policy.select_auto_update_candidates(self.repository.list_entries(), now)
        if not candidates:
            return {}
        logger = get_global_logger()
        for entry in candidates:
            logger.verbose(
                "UPDATE", f"Auto-updating {entry.name} to version {entry.pending_version}"
            )
        with ThreadPoolExecutor(
            max_workers=max(1, workers), thread_name_prefix="fleetpkg-autoupdate"
        ) as pool:
            futures = {
                e.code: pool.submit(self.perform_update, e.code, SYSTEM_ACTOR, None, now)
                for e in candidates
            }
        return {code: future.result() for code, future in futures.items()}

    # -------------------------------
    # Listings
    # -------------------------------

    def list_pending(self, now: datetime | None = None) -> list[CatalogEntry]:
        """Entries with an update nobody has (validly) approved yet."""
        return [e for e in self.repository.find_update_pending() if policy.is_pending_approval(e, now)]

    def list_approved(self, now: datetime | None = None) -> list[CatalogEntry]:
        """Entries whose pending update may be installed now."""
        return [
            e for e in self.repository.find_update_pending()
            if policy.is_update_ready_to_install(e, now)
        ]

    def list_rollback_available(self) -> list[CatalogEntry]:
        return self.repository.find_rollback_available()
