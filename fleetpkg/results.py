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

"""Public API return types for fleetpkg.

This module defines dataclasses for return values from the pipeline and the
update manager. The pipeline never lets an exception escape; every failure is
converted into an InstallationResult carrying the message and the exception
class name.

All dataclasses are frozen (immutable) to prevent accidental mutation of
return values.

Example:
    Using result types:
        ```python
        result = pipeline.install("vlc", actor="admin")
        if result.success:
            print(result.entry.current_version)
        else:
            print(f"{result.error_kind}: {result.error_message}")
        ```

Note:
    Only public API return types belong in this module. Domain types
    (like SourceDecision or ScanResult) stay co-located with their logic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from fleetpkg.exceptions import FleetPkgError, SecurityError

if TYPE_CHECKING:
    from fleetpkg.catalog.models import CatalogEntry


@dataclass(frozen=True)
class InstallationResult:
    """Outcome of one install, uninstall or update pipeline run.

    Attributes:
        success: True when the installer ran and state was committed.
        entry: The catalog entry after the run (committed state on success,
            unchanged state on failure). None if the entry was not found.
        error_message: Human-readable failure reason.
        restart_required: True when the installer exited with 3010.
        error_kind: Exception class name of the failure (e.g.,
            "ChecksumMismatchError"), None on success.
        error: The exception itself, for callers that classify failures.
    """

    success: bool
    entry: CatalogEntry | None = None
    error_message: str | None = None
    restart_required: bool = False
    error_kind: str | None = None
    error: FleetPkgError | None = field(default=None, compare=False, repr=False)

    @classmethod
    def ok(cls, entry: CatalogEntry, restart_required: bool = False) -> InstallationResult:
        return cls(success=True, entry=entry, restart_required=restart_required)

    @classmethod
    def failed(
        cls, err: FleetPkgError, entry: CatalogEntry | None = None
    ) -> InstallationResult:
        return cls(
            success=False,
            entry=entry,
            error_message=str(err),
            error_kind=type(err).__name__,
            error=err,
        )

    @property
    def is_security_failure(self) -> bool:
        return isinstance(self.error, SecurityError)


@dataclass(frozen=True)
class UpdateCheckResult:
    """Outcome of querying an entry's update-check endpoint.

    Attributes:
        update_found: True when the remote version differs from current.
        new_version: The remote version when one was found.
        message: Human-readable summary.
        checked: False when the check could not run (no check URL
            configured, network failure); True otherwise.
    """

    update_found: bool
    new_version: str | None
    message: str
    checked: bool = True

    @classmethod
    def found(cls, version: str) -> UpdateCheckResult:
        return cls(True, version, f"Update available: {version}")

    @classmethod
    def up_to_date(cls, version: str | None = None) -> UpdateCheckResult:
        return cls(False, version, "Application is up to date")

    @classmethod
    def not_configured(cls) -> UpdateCheckResult:
        return cls(False, None, "No update source configured", checked=False)

    @classmethod
    def error(cls, message: str) -> UpdateCheckResult:
        return cls(False, None, message, checked=False)


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of applying (or rolling back) an update.

    Attributes:
        success: True when the new version was installed and committed.
        new_version: The version now installed (on success).
        error_message: Failure reason (on failure).
        retryable: True when the failure is transient and the next scheduled
            attempt may succeed (network errors, timeouts, a busy entry).
    """

    success: bool
    new_version: str | None = None
    error_message: str | None = None
    retryable: bool = False
