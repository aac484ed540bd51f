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

"""Exception hierarchy for fleetpkg.

Every failure the deployment pipeline can report has its own exception
class so callers (and the scheduler) can tell them apart:

- ConfigError: Configuration-related errors (YAML parse, missing fields)
- CatalogError: Catalog administration errors (duplicate code, removing an
  installed app, unknown entry)
- NotApprovedError: Install requested for an entry that is not approved
- SecurityError: Base for gate failures that must never be auto-retried
  (source denied, signature problems, malware)
- NetworkError: Download or update-check failures
- ChecksumMismatchError: SHA-256 of the artifact differs from the catalog
- ScanUnavailableError: The malware scanner could not complete (reported on
  the gate report, never raised)
- ProcessTimeoutError / ProcessStartError / ProcessExitError: External
  process failures
- RollbackUnavailableError: Rollback requested without a snapshot
- InstallCancelledError: Caller cancelled an in-flight pipeline run
- EntryBusyError: Another pipeline run already holds the entry

Exceptions whose ``retryable`` attribute is True (NetworkError,
ProcessTimeoutError, EntryBusyError) describe transient conditions; the
update manager copies the flag onto UpdateResult.retryable.

All exceptions inherit from FleetPkgError, allowing users to catch all
fleetpkg errors with a single except clause if needed.

Example:
    Classifying a failed update:
        ```python
        from fleetpkg.exceptions import SecurityError

        result = pipeline.update("vlc", actor="admin")
        if not result.success:
            if isinstance(result.error, SecurityError):
                print(f"Blocked: {result.error_message}")
            elif result.error.retryable:
                print(f"Will retry on next tick: {result.error_message}")
        ```
"""

from __future__ import annotations

__all__ = [
    "FleetPkgError",
    "ConfigError",
    "CatalogError",
    "NotApprovedError",
    "SecurityError",
    "SourceDeniedError",
    "NetworkError",
    "ChecksumMismatchError",
    "SignatureUnsignedError",
    "SignatureInvalidError",
    "PublisherMismatchError",
    "ThumbprintMismatchError",
    "MalwareDetectedError",
    "ScanUnavailableError",
    "ProcessTimeoutError",
    "ProcessStartError",
    "ProcessExitError",
    "RollbackUnavailableError",
    "InstallCancelledError",
    "EntryBusyError",
]


class FleetPkgError(Exception):
    """Base exception for all fleetpkg errors.

    Attributes:
        retryable: True when the scheduler may attempt the same operation
            again on its next tick.
    """

    retryable = False


class ConfigError(FleetPkgError):
    """Raised for configuration-related errors.

    This exception is raised when there are problems with:

    - YAML parsing (syntax errors, invalid structure)
    - Missing or invalid configuration fields
    - Missing configuration files
    - Unknown installer kinds or update policies
    """

    pass


class CatalogError(FleetPkgError):
    """Raised for catalog administration errors.

    Examples are adding an entry whose code already exists, removing an
    entry that is still installed, or looking up an unknown code.
    """

    pass


class NotApprovedError(FleetPkgError):
    """Raised when an install is requested for an unapproved entry."""

    pass


class SecurityError(FleetPkgError):
    """Base for security-classified gate failures.

    These are always fatal for the run, audited at elevated severity and
    never retried automatically by the scheduler.
    """

    pass


class SourceDeniedError(SecurityError):
    """Raised when the source policy engine denies a download source.

    Attributes:
        policy: The matching SourcePolicy, or None when the source was
            rejected before policy evaluation (bad scheme, restricted path).
    """

    def __init__(self, message: str, policy=None) -> None:
        super().__init__(message)
        self.policy = policy


class NetworkError(FleetPkgError):
    """Raised for network/download-related errors.

    This exception is raised when there are problems with:

    - Download failures (HTTP errors, connection timeouts)
    - Local or UNC source files that cannot be read
    - Update-check endpoint failures
    """

    retryable = True


class ChecksumMismatchError(FleetPkgError):
    """Raised when the artifact SHA-256 does not match the catalog value."""

    pass


class SignatureUnsignedError(SecurityError):
    """Raised when a signature is required but the artifact is unsigned."""

    pass


class SignatureInvalidError(SecurityError):
    """Raised when the artifact signature is tampered or untrusted."""

    pass


class PublisherMismatchError(SecurityError):
    """Raised when the signer does not match the expected publisher."""

    pass


class ThumbprintMismatchError(SecurityError):
    """Raised when the signing certificate thumbprint is not the pinned one."""

    pass


class MalwareDetectedError(SecurityError):
    """Raised when the malware scanner reports a threat.

    Attributes:
        threat_name: Name reported by the scanner.
    """

    def __init__(self, threat_name: str) -> None:
        super().__init__(f"Malware detected: {threat_name}")
        self.threat_name = threat_name


class ScanUnavailableError(FleetPkgError):
    """The malware scanner could not complete.

    The gate chain logs this, attaches it to GateReport.scan_error and lets
    the install continue.
    """

    pass


class ProcessTimeoutError(FleetPkgError):
    """Raised when an external process exceeds its timeout and is killed."""

    retryable = True

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"{command} timed out after {timeout:g}s")
        self.command = command
        self.timeout = timeout


class ProcessStartError(FleetPkgError):
    """Raised when an external program cannot be started (missing, denied)."""

    pass


class ProcessExitError(FleetPkgError):
    """Raised when an installer exits with a non-success code.

    Attributes:
        exit_code: The process exit code.
    """

    def __init__(self, exit_code: int, message: str | None = None) -> None:
        super().__init__(message or f"Installer exited with error code: {exit_code}")
        self.exit_code = exit_code


class RollbackUnavailableError(FleetPkgError):
    """Raised when rollback is requested but no snapshot is available."""

    pass


class InstallCancelledError(FleetPkgError):
    """Raised when a caller cancels an in-flight pipeline run."""

    pass


class EntryBusyError(FleetPkgError):
    """Raised when another pipeline run already holds the catalog entry."""

    retryable = True
