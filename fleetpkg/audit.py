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

"""Audit sink interface for fleetpkg.

Every gate failure, successful install/uninstall/update and catalog or
policy change emits exactly one audit record. Transport and storage of
those records are somebody else's job; fleetpkg only needs something that
accepts them.

Two sinks ship with the package:

- LoggerAuditSink: forwards records to the project logger (the default)
- MemoryAuditSink: keeps records in a list (tests, CLI summaries)

Example:
    ```python
    from fleetpkg.audit import AuditAction, MemoryAuditSink, Severity

    sink = MemoryAuditSink()
    sink.log(AuditAction.APP_APPROVE, "admin", "Approved vlc", True)
    assert sink.records[0].severity is Severity.INFO
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
import threading
from typing import Protocol

from fleetpkg.logging import get_global_logger


class AuditAction(str, Enum):
    """Audited events."""

    APP_ADD = "app_add"
    APP_UPDATE = "app_update"
    APP_REMOVE = "app_remove"
    APP_APPROVE = "app_approve"
    APP_REVOKE = "app_revoke"
    INSTALL_COMPLETE = "install_complete"
    INSTALL_FAILED = "install_failed"
    UNINSTALL_COMPLETE = "uninstall_complete"
    UNINSTALL_FAILED = "uninstall_failed"
    UPDATE_COMPLETE = "update_complete"
    UPDATE_FAILED = "update_failed"
    UPDATE_ROLLBACK = "update_rollback"
    DOWNLOAD_SOURCE_BLOCKED = "download_source_blocked"
    CHECKSUM_FAILED = "checksum_failed"
    SIGNATURE_VERIFICATION_FAILED = "signature_verification_failed"
    VIRUS_SCAN_FAILED = "virus_scan_failed"
    SECURITY_SETTINGS_CHANGE = "security_settings_change"
    CONFIG_CHANGE = "config_change"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AuditRecord:
    """One audited event."""

    action: AuditAction
    actor: str
    details: str
    success: bool
    severity: Severity
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class AuditSink(Protocol):
    """Anything that accepts audit records."""

    def log(
        self,
        action: AuditAction,
        actor: str,
        details: str,
        success: bool,
        severity: Severity | None = None,
    ) -> None:
        """Record one event.

        Args:
            action: What happened.
            actor: Who triggered it (user name, "scheduler", "system").
            details: Free-text description.
            success: Whether the action succeeded.
            severity: Explicit severity. Defaults to INFO on success and
                WARNING on failure.
        """
        ...


def _default_severity(success: bool, severity: Severity | None) -> Severity:
    if severity is not None:
        return severity
    return Severity.INFO if success else Severity.WARNING


class LoggerAuditSink:
    """Audit sink that writes records through the global logger.

    INFO records go to verbose output; anything more severe is printed as a
    warning so it is visible without --verbose.
    """

    def log(
        self,
        action: AuditAction,
        actor: str,
        details: str,
        success: bool,
        severity: Severity | None = None,
    ) -> None:
        severity = _default_severity(success, severity)
        line = f"{action.value} by {actor}: {details} (success={success})"
        logger = get_global_logger()
        if severity is Severity.INFO:
            logger.verbose("AUDIT", line)
        else:
            logger.warning("AUDIT", f"[{severity.value.upper()}] {line}")


class MemoryAuditSink:
    """Audit sink that keeps records in memory.

    Attributes:
        records: Records in the order they were logged.
    """

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def log(
        self,
        action: AuditAction,
        actor: str,
        details: str,
        success: bool,
        severity: Severity | None = None,
    ) -> None:
        record = AuditRecord(
            action=action,
            actor=actor,
            details=details,
            success=success,
            severity=_default_severity(success, severity),
        )
        with self._lock:
            self.records.append(record)

    def actions(self) -> list[AuditAction]:
        """Recorded actions in order."""
        with self._lock:
            return [r.action for r in self.records]
