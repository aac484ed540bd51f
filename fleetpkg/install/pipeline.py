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

"""Installation pipeline for fleetpkg.

One pipeline run takes a catalog entry from "approved" to "installed" (or
from one version to the next) through a fixed sequence:

1. Approval check (before any network call)
2. Source policy gate
3. Download into a private per-run temp directory
4. Checksum, signature and malware gates
5. Installer execution via the installer-kind registry
6. Commit: the updated entry is persisted in a single write

States::

    queued -> source_validated -> downloading -> checksum_verified
           -> signature_verified -> scan_completed -> executing -> committed

Any state may end in ``failed`` or ``cancelled``. The run works on a copy
of the entry; nothing is persisted unless the run commits, and the temp
directory is removed whatever the outcome.

Package-manager kinds (winget, chocolatey) have no artifact, so steps 3
and 4 are skipped for them.

The pipeline never raises: every failure becomes an InstallationResult
carrying the error message and the exception class name.

Example:
    ```python
    from fleetpkg.install import InstallationPipeline

    pipeline = InstallationPipeline(store, gates, settings, audit)
    result = pipeline.install("vlc", actor="admin")
    if not result.success:
        print(result.error_kind, result.error_message)
    ```
"""

from __future__ import annotations

from collections.abc import Callable
import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
import shutil
import tempfile
import traceback
from typing import TYPE_CHECKING

from fleetpkg.audit import AuditAction, AuditSink, LoggerAuditSink
from fleetpkg.catalog.models import CatalogEntry, utcnow
from fleetpkg.config.settings import Settings
from fleetpkg.exceptions import (
    CatalogError,
    ChecksumMismatchError,
    ConfigError,
    FleetPkgError,
    InstallCancelledError,
    NotApprovedError,
    SecurityError,
)
from fleetpkg.install.kinds import (
    InstallContext,
    artifact_filename,
    build_uninstall_command,
    get_installer,
)
from fleetpkg.install.locks import EntryLocks
from fleetpkg.io.download import fetch_artifact, is_local_source
from fleetpkg.logging import get_global_logger
from fleetpkg.policy import updates as update_policy
from fleetpkg.process import ProcessOutcome, run_process
from fleetpkg.progress import (
    COMMIT,
    DOWNLOAD,
    EXECUTE,
    PREPARE,
    CancellationToken,
    ProgressCallback,
    ProgressReporter,
)
from fleetpkg.results import InstallationResult

if TYPE_CHECKING:
    import requests

    from fleetpkg.catalog.repository import CatalogRepository
    from fleetpkg.security.gates import GateChain, GateReport


class PipelineState(str, Enum):
    QUEUED = "queued"
    SOURCE_VALIDATED = "source_validated"
    DOWNLOADING = "downloading"
    CHECKSUM_VERIFIED = "checksum_verified"
    SIGNATURE_VERIFIED = "signature_verified"
    SCAN_COMPLETED = "scan_completed"
    EXECUTING = "executing"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ActionKind(str, Enum):
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPDATE = "update"
    ROLLBACK = "rollback"


@dataclass
class InstallationAttempt:
    """Live state of one pipeline run.

    Created by the caller (or the pipeline) before the run starts so the
    caller holds the cancellation token and can watch progress.

    Attributes:
        code: Catalog code being processed.
        action: What the run does.
        actor: Who requested it.
        cancel: Token the caller may cancel.
        progress: Monotonic progress reporter.
        state: Current state.
        history: Every state the run has been in, in order.
    """

    code: str
    action: ActionKind
    actor: str = "SYSTEM"
    cancel: CancellationToken = field(default_factory=CancellationToken)
    progress: ProgressReporter = field(default_factory=ProgressReporter)
    state: PipelineState = PipelineState.QUEUED
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.QUEUED])
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @classmethod
    def create(
        cls,
        code: str,
        action: ActionKind,
        actor: str = "SYSTEM",
        on_progress: ProgressCallback | None = None,
    ) -> InstallationAttempt:
        return cls(code, action, actor, progress=ProgressReporter(on_progress))

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)
        if state in (PipelineState.COMMITTED, PipelineState.FAILED, PipelineState.CANCELLED):
            self.finished_at = utcnow()
        get_global_logger().debug("PIPELINE", f"{self.code} ({self.action.value}): {state.value}")


@dataclass(frozen=True)
class _Plan:
    """Where the artifact comes from and how a successful run is committed."""

    source: str | None
    checksum: str | None
    commit: Callable[[CatalogEntry, GateReport | None, bool, datetime], None]


_FAILURE_ACTIONS = {
    ActionKind.INSTALL: AuditAction.INSTALL_FAILED,
    ActionKind.UPDATE: AuditAction.UPDATE_FAILED,
    ActionKind.ROLLBACK: AuditAction.UPDATE_FAILED,
    ActionKind.UNINSTALL: AuditAction.UNINSTALL_FAILED,
}


def _gate_audited(err: FleetPkgError) -> bool:
    """Gate failures are audited by the gate chain itself."""
    return isinstance(err, (SecurityError, ChecksumMismatchError))


def _record_install(
    entry: CatalogEntry, report: GateReport | None, restart: bool, now: datetime
) -> None:
    entry.is_installed = True
    entry.installed_at = now
    entry.restart_required = restart
    entry.last_updated = now
    if report is not None and report.signature_verified:
        entry.last_verified_signer = report.signer
        entry.last_signature_check = now


class InstallationPipeline:
    """Runs install, update, rollback-reinstall and uninstall for catalog entries.

    Args:
        repository: Catalog storage; the entry is re-read at the start of
            each run and saved once on commit.
        gates: Security gate chain.
        settings: Typed settings (network, install timeouts, directories).
        audit: Audit sink. Defaults to LoggerAuditSink.
        locks: Per-entry locks, shared with anything else that runs
            pipelines against the same catalog.
        session: requests session reused for downloads.
        runner: Process runner for installers (replaceable in tests).
    """

    def __init__(
        self,
        repository: CatalogRepository,
        gates: GateChain,
        settings: Settings,
        audit: AuditSink | None = None,
        locks: EntryLocks | None = None,
        session: requests.Session | None = None,
        runner: Callable[..., ProcessOutcome] = run_process,
    ) -> None:
        self.repository = repository
        self.gates = gates
        self.settings = settings
        self.audit = audit or LoggerAuditSink()
        self.locks = locks or EntryLocks()
        self.session = session
        self._run = runner

    # -------------------------------
    # Public operations
    # -------------------------------

    def install(
        self, code: str, actor: str = "SYSTEM", attempt: InstallationAttempt | None = None
    ) -> InstallationResult:
        """Download, verify and install the entry's configured artifact."""

        def plan(entry: CatalogEntry) -> _Plan:
            def commit(entry, report, restart, now):
                entry.current_version = (
                    entry.latest_version or entry.current_version or "unknown"
                )
                _record_install(entry, report, restart, now)

            return _Plan(entry.source, entry.checksum_sha256, commit)

        return self._execute(code, ActionKind.INSTALL, actor, attempt, plan)

    def update(
        self, code: str, actor: str = "SYSTEM", attempt: InstallationAttempt | None = None
    ) -> InstallationResult:
        """Install the entry's pending update and promote it to current.

        On success the previous version is kept for rollback. Readiness
        (approval, expiry) is the caller's decision; this only requires a
        pending version.
        """

        def plan(entry: CatalogEntry) -> _Plan:
            if not entry.update_available or entry.pending_version is None:
                raise CatalogError(f"No pending update for {entry.code}")

            def commit(entry, report, restart, now):
                update_policy.complete_update(entry, now)
                _record_install(entry, report, restart, now)

            # An empty checksum skips the gate; the current checksum never applies.
            return _Plan(
                entry.pending_download_url or entry.source, entry.pending_checksum or "", commit
            )

        return self._execute(code, ActionKind.UPDATE, actor, attempt, plan)

    def reinstall_previous(
        self, code: str, actor: str = "SYSTEM", attempt: InstallationAttempt | None = None
    ) -> InstallationResult:
        """Roll back by installing the previous version's artifact.

        The current/previous swap is applied to the working copy first so
        the previous URL and checksum drive the download and gates; the swap
        is persisted only if the reinstall succeeds.
        """

        def plan(entry: CatalogEntry) -> _Plan:
            update_policy.rollback(entry)
            return _Plan(
                entry.download_url or entry.local_path, entry.checksum_sha256, _record_install
            )

        return self._execute(code, ActionKind.ROLLBACK, actor, attempt, plan)

    def uninstall(
        self, code: str, actor: str = "SYSTEM", attempt: InstallationAttempt | None = None
    ) -> InstallationResult:
        """Run the stored uninstall command and clear installed state.

        A missing uninstall command is a no-op; a non-zero exit is logged as
        a warning. In both cases installed state is cleared.
        """
        logger = get_global_logger()
        attempt = attempt or InstallationAttempt(code, ActionKind.UNINSTALL, actor)
        entry: CatalogEntry | None = None
        try:
            with self.locks.hold(code):
                entry = self.repository.require(code)
                work = copy.deepcopy(entry)
                attempt.progress.report(0.2)

                if work.uninstall_command and work.uninstall_command.strip():
                    attempt.advance(PipelineState.EXECUTING)
                    outcome = self._run(
                        build_uninstall_command(work.uninstall_command),
                        self.settings.install.timeout_minutes * 60,
                        cancel=attempt.cancel,
                        label=f"{work.name} uninstaller",
                    )
                    if outcome.exit_code != 0:
                        logger.warning(
                            "UNINSTALL",
                            f"Uninstaller exited with code {outcome.exit_code} for {work.name}",
                        )
                else:
                    logger.verbose("UNINSTALL", f"No uninstall command for {work.name}")

                attempt.progress.report(0.8)
                attempt.cancel.raise_if_cancelled()
                work.is_installed = False
                work.installed_at = None
                work.restart_required = False
                work.last_updated = utcnow()
                self.repository.save_entry(work)
                attempt.advance(PipelineState.COMMITTED)
                attempt.progress.report(1.0)
        except FleetPkgError as err:
            return self._fail(attempt, err, entry)
        except Exception as err:
            return self._fail(attempt, _unexpected("uninstall", err), entry)

        self.audit.log(
            AuditAction.UNINSTALL_COMPLETE, actor, f"Successfully uninstalled {work.name}", True
        )
        logger.verbose("UNINSTALL", f"Successfully uninstalled {work.name}")
        return InstallationResult.ok(work)

    # -------------------------------
    # Run skeleton
    # -------------------------------

    def _execute(
        self,
        code: str,
        action: ActionKind,
        actor: str,
        attempt: InstallationAttempt | None,
        make_plan: Callable[[CatalogEntry], _Plan],
    ) -> InstallationResult:
        logger = get_global_logger()
        attempt = attempt or InstallationAttempt(code, action, actor)
        progress = attempt.progress
        cancel = attempt.cancel
        entry: CatalogEntry | None = None
        run_dir: Path | None = None

        try:
            with self.locks.hold(code):
                entry = self.repository.require(code)
                if not entry.is_approved:
                    raise NotApprovedError(
                        f"Application is not approved for installation: {entry.name}"
                    )

                work = copy.deepcopy(entry)
                plan = make_plan(work)
                strategy = get_installer(work.installer_kind)
                progress.band(PREPARE, 1.0)
                cancel.raise_if_cancelled()

                artifact: Path | None = None
                report: GateReport | None = None
                if strategy.needs_artifact:
                    source = self._resolve_source(work, plan.source)
                    self.gates.check_source(_with_source(work, source), actor)
                    attempt.advance(PipelineState.SOURCE_VALIDATED)

                    attempt.advance(PipelineState.DOWNLOADING)
                    run_dir = self._make_run_dir(code)
                    artifact = fetch_artifact(
                        source,
                        run_dir,
                        filename=artifact_filename(work, strategy, source),
                        network=self.settings.network,
                        session=self.session,
                        on_progress=lambda done, total: (
                            progress.band(DOWNLOAD, done / total) if total else None
                        ),
                        cancel=cancel,
                    )
                    progress.band(DOWNLOAD, 1.0)

                    report = self.gates.verify_artifact(
                        work,
                        artifact,
                        actor,
                        expected_checksum=plan.checksum,
                        progress=progress,
                        cancel=cancel,
                    )
                    attempt.advance(PipelineState.CHECKSUM_VERIFIED)
                    attempt.advance(PipelineState.SIGNATURE_VERIFIED)
                    attempt.advance(PipelineState.SCAN_COMPLETED)
                else:
                    logger.verbose(
                        "PIPELINE",
                        f"{work.installer_kind.value} reference install, "
                        "skipping download and artifact gates",
                    )
                    attempt.advance(PipelineState.SOURCE_VALIDATED)

                cancel.raise_if_cancelled()
                attempt.advance(PipelineState.EXECUTING)
                progress.band(EXECUTE, 0.0)
                restart = strategy.install(
                    InstallContext(
                        entry=work,
                        artifact=artifact,
                        install_dir=self._install_dir(work),
                        timeout=self.settings.install.timeout_minutes * 60,
                        cancel=cancel,
                        runner=self._run,
                    )
                )
                progress.band(EXECUTE, 1.0)
                cancel.raise_if_cancelled()

                plan.commit(work, report, restart, utcnow())
                progress.band(COMMIT, 0.0)
                self.repository.save_entry(work)
                attempt.advance(PipelineState.COMMITTED)
                progress.band(COMMIT, 1.0)
        except FleetPkgError as err:
            return self._fail(attempt, err, entry)
        except Exception as err:
            return self._fail(attempt, _unexpected(action.value, err), entry)
        finally:
            if run_dir is not None:
                shutil.rmtree(run_dir, ignore_errors=True)

        self._audit_success(action, actor, work)
        if restart:
            logger.warning("PIPELINE", f"{work.name} requires a restart to finish")
        return InstallationResult.ok(work, restart_required=restart)

    # -------------------------------
    # Helpers
    # -------------------------------

    def _resolve_source(self, entry: CatalogEntry, source: str | None) -> str:
        if not source:
            raise ConfigError(f"No download source configured for {entry.code}")
        if is_local_source(source):
            return source
        return self.settings.network.resolve_url(source)

    def _make_run_dir(self, code: str) -> Path:
        base = self.settings.install.temp_dir
        if base is not None:
            Path(base).mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"fleetpkg-{code}-", dir=base))

    def _install_dir(self, entry: CatalogEntry) -> Path | None:
        if entry.install_path:
            return Path(entry.install_path)
        if self.settings.install.install_base is not None:
            return Path(self.settings.install.install_base) / entry.code.lower()
        return None

    def _fail(
        self,
        attempt: InstallationAttempt,
        err: FleetPkgError,
        entry: CatalogEntry | None,
    ) -> InstallationResult:
        logger = get_global_logger()
        name = entry.name if entry is not None else attempt.code
        if isinstance(err, InstallCancelledError):
            attempt.advance(PipelineState.CANCELLED)
            logger.warning("PIPELINE", f"{attempt.action.value} of {name} cancelled")
        else:
            attempt.advance(PipelineState.FAILED)
            logger.warning("PIPELINE", f"{attempt.action.value} of {name} failed: {err}")

        if not _gate_audited(err):
            self.audit.log(
                _FAILURE_ACTIONS[attempt.action],
                attempt.actor,
                f"{attempt.action.value.capitalize()} failed for {name}: {err}",
                False,
            )
        return InstallationResult.failed(err, entry)

    def _audit_success(self, action: ActionKind, actor: str, entry: CatalogEntry) -> None:
        if action is ActionKind.INSTALL:
            self.audit.log(
                AuditAction.INSTALL_COMPLETE, actor, f"Successfully installed {entry.name}", True
            )
        elif action is ActionKind.UPDATE:
            self.audit.log(
                AuditAction.UPDATE_COMPLETE,
                actor,
                f"Updated {entry.name} from {entry.previous_version} to {entry.current_version}",
                True,
            )
        else:
            self.audit.log(
                AuditAction.UPDATE_ROLLBACK,
                actor,
                f"Rolled back {entry.name} to version {entry.current_version}",
                True,
            )


def _with_source(entry: CatalogEntry, source: str) -> CatalogEntry:
    """Copy of the entry carrying only the resolved source, for the source gate.

    file:// URLs stay in download_url so the policy rules still see them.
    """
    if is_local_source(source) and not source.lower().startswith("file:"):
        return replace(entry, local_path=source, download_url=None)
    return replace(entry, download_url=source, local_path=None)


def _unexpected(operation: str, err: Exception) -> FleetPkgError:
    """Wrap a non-project exception so it can travel in an InstallationResult."""
    get_global_logger().debug("PIPELINE", traceback.format_exc())
    wrapped = FleetPkgError(f"{operation} failed: {type(err).__name__}: {err}")
    wrapped.__cause__ = err
    return wrapped
