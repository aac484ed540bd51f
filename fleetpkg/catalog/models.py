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

"""Catalog data model for fleetpkg.

A CatalogEntry describes one deployable application together with its
install, update and rollback state. Entries are plain mutable dataclasses;
the state transitions that mutate them live in fleetpkg.policy.updates and
the pipeline, and are persisted through a CatalogRepository.

Field groups:

- Identity: code (unique key), name, category, publisher
- Artifact: installer_kind, download_url / local_path, checksum_sha256,
  silent_args, uninstall_command, install_path
- Approval: is_approved, approved_by, approved_at
- Installation: is_installed, installed_at, current_version, restart_required
- Signature: require_signature, expected_publisher, expected_cert_thumbprint,
  last_verified_signer, last_signature_check
- Update: update_policy, update_check_url, pending_*, update_approved*,
  approval_expiration_hours, failure counter
- Rollback: previous_*, rollback_available

Example:
    Create an entry and round-trip it through a dict:
        ```python
        from fleetpkg.catalog.models import CatalogEntry, InstallerKind

        entry = CatalogEntry(
            code="vlc",
            name="VLC media player",
            installer_kind=InstallerKind.MSI,
            download_url="https://get.videolan.org/vlc/vlc-3.0.21-win64.msi",
        )
        same = CatalogEntry.from_dict(entry.to_dict())
        ```
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from fleetpkg.exceptions import ConfigError


class InstallerKind(str, Enum):
    """How an artifact is installed on the managed machine."""

    EXE = "exe"
    MSI = "msi"
    MSIX = "msix"
    ZIP = "zip"
    PORTABLE = "portable"
    WINGET = "winget"
    CHOCOLATEY = "chocolatey"


class UpdatePolicy(str, Enum):
    """How pending updates become installable."""

    AUTO = "auto"
    ADMIN_APPROVED = "admin_approved"
    MANUAL = "manual"
    DISABLED = "disabled"


_DATETIME_FIELDS = {
    "approved_at",
    "installed_at",
    "last_signature_check",
    "update_approved_at",
    "update_approval_expires_at",
    "last_update_check",
    "created_at",
    "last_updated",
}


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


@dataclass
class CatalogEntry:
    """One deployable application and its lifecycle state."""

    code: str
    name: str
    installer_kind: InstallerKind
    category: str = "other"
    publisher: str | None = None
    description: str | None = None

    current_version: str | None = None
    latest_version: str | None = None
    download_url: str | None = None
    local_path: str | None = None
    checksum_sha256: str | None = None
    silent_args: str | None = None
    uninstall_command: str | None = None
    install_path: str | None = None
    executable_name: str | None = None

    is_approved: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None

    is_installed: bool = False
    installed_at: datetime | None = None
    restart_required: bool = False

    require_signature: bool = True
    expected_publisher: str | None = None
    expected_cert_thumbprint: str | None = None
    last_verified_signer: str | None = None
    last_signature_check: datetime | None = None

    update_policy: UpdatePolicy = UpdatePolicy.ADMIN_APPROVED
    update_check_url: str | None = None
    update_version_path: str | None = None
    update_download_url_path: str | None = None
    update_check_interval_hours: int = 24
    last_update_check: datetime | None = None

    pending_version: str | None = None
    pending_download_url: str | None = None
    pending_checksum: str | None = None
    update_notes: str | None = None
    update_available: bool = False

    update_approved: bool = False
    update_approved_by: str | None = None
    update_approved_at: datetime | None = None
    update_approval_expires_at: datetime | None = None
    approval_expiration_hours: int = 72

    update_failed_count: int = 0
    last_update_error: str | None = None

    previous_version: str | None = None
    previous_download_url: str | None = None
    previous_checksum: str | None = None
    rollback_available: bool = False

    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime | None = None

    @property
    def source(self) -> str | None:
        """The configured artifact source; a local path wins over a URL."""
        return self.local_path or self.download_url

    def has_update(self) -> bool:
        """True when the catalog lists a latest version different from current."""
        if self.latest_version is None or self.current_version is None:
            return False
        return self.latest_version != self.current_version

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dict (enums by value, ISO datetimes)."""
        data = asdict(self)
        data["installer_kind"] = self.installer_kind.value
        data["update_policy"] = self.update_policy.value
        for name in _DATETIME_FIELDS:
            value = data.get(name)
            if isinstance(value, datetime):
                data[name] = value.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CatalogEntry:
        """Build an entry from a dict produced by to_dict() or a YAML file.

        Unknown keys are ignored so older catalog files keep loading.

        Raises:
            ConfigError: If code, name or installer_kind is missing, or an
                enum value is not recognized.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}

        for required in ("code", "name", "installer_kind"):
            if not kwargs.get(required):
                raise ConfigError(f"Catalog entry is missing required field: {required}")

        try:
            kwargs["installer_kind"] = InstallerKind(kwargs["installer_kind"])
            if "update_policy" in kwargs and kwargs["update_policy"] is not None:
                kwargs["update_policy"] = UpdatePolicy(kwargs["update_policy"])
        except ValueError as err:
            raise ConfigError(f"Invalid catalog entry {kwargs['code']!r}: {err}") from err

        for name in _DATETIME_FIELDS:
            value = kwargs.get(name)
            if isinstance(value, str):
                parsed = datetime.fromisoformat(value)
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=UTC)
                kwargs[name] = parsed

        if kwargs.get("created_at") is None:
            kwargs.pop("created_at", None)

        return cls(**kwargs)
