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

"""Catalog administration for fleetpkg.

Adding, editing, approving and removing catalog entries, each audited.
Entries can also be imported from YAML files:

```yaml
entries:
  - code: vlc
    name: VLC media player
    installer_kind: msi
    publisher: VideoLAN
    download_url: https://get.videolan.org/vlc/3.0.21/win64/vlc-3.0.21-win64.msi
    checksum_sha256: 4f1c...
    expected_publisher: VideoLAN
    update_policy: admin_approved
```
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import yaml

from fleetpkg.audit import AuditAction, AuditSink, LoggerAuditSink
from fleetpkg.catalog.models import CatalogEntry, utcnow
from fleetpkg.catalog.repository import CatalogRepository
from fleetpkg.exceptions import CatalogError, ConfigError
from fleetpkg.logging import get_global_logger


@dataclass(frozen=True)
class CatalogStats:
    total: int
    approved: int
    installed: int


class CatalogAdmin:
    """Administrative operations on catalog entries.

    Args:
        repository: Catalog storage.
        audit: Audit sink. Defaults to LoggerAuditSink.
    """

    def __init__(self, repository: CatalogRepository, audit: AuditSink | None = None):
        self.repository = repository
        self.audit = audit or LoggerAuditSink()

    def add(self, entry: CatalogEntry, actor: str, now: datetime | None = None) -> CatalogEntry:
        """Add a new entry, always unapproved and not installed.

        Raises:
            CatalogError: If an entry with the same code already exists.
        """
        if self.repository.exists(entry.code):
            raise CatalogError(f"Application with code {entry.code} already exists")

        entry.created_at = now or utcnow()
        entry.is_approved = False
        entry.approved_by = None
        entry.approved_at = None
        entry.is_installed = False
        entry.installed_at = None
        self.repository.save_entry(entry)

        self.audit.log(
            AuditAction.APP_ADD, actor, f"Added {entry.name} to software catalog", True
        )
        get_global_logger().verbose("CATALOG", f"Added {entry.code} by {actor}")
        return entry

    def update(self, entry: CatalogEntry, actor: str, now: datetime | None = None) -> CatalogEntry:
        """Save edits to an existing entry.

        Raises:
            CatalogError: If the entry does not exist.
        """
        if not self.repository.exists(entry.code):
            raise CatalogError(f"Application not found: {entry.code}")
        entry.last_updated = now or utcnow()
        self.repository.save_entry(entry)
        self.audit.log(AuditAction.APP_UPDATE, actor, f"Updated {entry.name}", True)
        return entry

    def approve(self, code: str, actor: str, now: datetime | None = None) -> CatalogEntry:
        entry = self.repository.require(code)
        entry.is_approved = True
        entry.approved_by = actor
        entry.approved_at = now or utcnow()
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.APP_APPROVE, actor, f"Approved {entry.name} for deployment", True
        )
        return entry

    def revoke(self, code: str, actor: str) -> CatalogEntry:
        entry = self.repository.require(code)
        entry.is_approved = False
        entry.approved_by = None
        entry.approved_at = None
        self.repository.save_entry(entry)
        self.audit.log(
            AuditAction.APP_REVOKE, actor, f"Revoked approval for {entry.name}", True
        )
        return entry

    def remove(self, code: str, actor: str) -> None:
        """Delete an entry.

        Raises:
            CatalogError: If the entry is unknown or still installed.
        """
        entry = self.repository.require(code)
        if entry.is_installed:
            raise CatalogError("Cannot remove installed application. Uninstall first.")
        self.audit.log(
            AuditAction.APP_REMOVE, actor, f"Removed {entry.name} from catalog", True
        )
        self.repository.delete_entry(code)

    def stats(self) -> CatalogStats:
        entries = self.repository.list_entries()
        return CatalogStats(
            total=len(entries),
            approved=sum(1 for e in entries if e.is_approved),
            installed=sum(1 for e in entries if e.is_installed),
        )

    def search(self, term: str, approved_only: bool = False) -> list[CatalogEntry]:
        """Entries whose name, code or publisher contains term (case-insensitive)."""
        needle = term.lower()
        results = []
        for entry in self.repository.list_entries():
            if approved_only and not entry.is_approved:
                continue
            haystack = " ".join(filter(None, [entry.code, entry.name, entry.publisher]))
            if needle in haystack.lower():
                results.append(entry)
        return results

    def by_category(self, category: str) -> list[CatalogEntry]:
        return [
            e for e in self.repository.list_entries() if e.category.lower() == category.lower()
        ]

    def import_yaml(self, path: Path, actor: str) -> list[CatalogEntry]:
        """Add every entry listed in a YAML file.

        Returns:
            The added entries.

        Raises:
            ConfigError: If the file is unreadable or malformed.
            CatalogError: If an entry's code already exists. Entries before
                it in the file have already been added.
        """
        path = Path(path)
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as err:
            raise ConfigError(f"Catalog file not found: {path}") from err
        except yaml.YAMLError as err:
            raise ConfigError(f"Error parsing YAML: {path}: {err}") from err

        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            raise ConfigError(f"Catalog file must contain an 'entries' list: {path}")

        added = []
        for raw in data["entries"]:
            if not isinstance(raw, dict):
                raise ConfigError(f"Catalog entry must be a mapping: {raw!r}")
            added.append(self.add(CatalogEntry.from_dict(raw), actor))
        return added
