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

"""Catalog persistence for fleetpkg.

The pipeline, update manager and scheduler only depend on the
CatalogRepository and PolicyRepository protocols. CatalogStore is the
bundled implementation: a single JSON file holding catalog entries and
download source policies.

Key Features:

- JSON-based storage (fast parsing, standard library)
- Entries are stored as dicts and handed out as fresh CatalogEntry objects,
  so a caller mutating an entry changes nothing until it calls save_entry()
- Every save rewrites the file atomically (.tmp then rename)
- Corrupted files are backed up and replaced with a fresh store
- Thread-safe: a re-entrant lock guards the in-memory state and the file

Example:
    Basic usage:
        ```python
        from pathlib import Path
        from fleetpkg.catalog import CatalogStore

        store = CatalogStore(Path("state/catalog.json"))
        store.load()
        entry = store.require("vlc")
        entry.latest_version = "3.0.21"
        store.save_entry(entry)
        ```
"""

from __future__ import annotations

from datetime import UTC, datetime
import json
from pathlib import Path
import threading
from typing import Any, Protocol

from fleetpkg import __version__
from fleetpkg.catalog.models import CatalogEntry
from fleetpkg.exceptions import CatalogError
from fleetpkg.policy.sources import SourcePolicy

SCHEMA_VERSION = "1"


class CatalogRepository(Protocol):
    """Persistence interface for catalog entries."""

    def get(self, code: str) -> CatalogEntry | None: ...

    def require(self, code: str) -> CatalogEntry: ...

    def exists(self, code: str) -> bool: ...

    def list_entries(self) -> list[CatalogEntry]: ...

    def save_entry(self, entry: CatalogEntry) -> None: ...

    def delete_entry(self, code: str) -> None: ...

    def find_approved(self) -> list[CatalogEntry]: ...

    def find_installed(self) -> list[CatalogEntry]: ...

    def find_update_pending(self) -> list[CatalogEntry]: ...

    def find_rollback_available(self) -> list[CatalogEntry]: ...


class PolicyRepository(Protocol):
    """Persistence interface for download source policies."""

    def list_policies(self, active_only: bool = False) -> list[SourcePolicy]: ...

    def find_policy(self, pattern: str) -> SourcePolicy | None: ...

    def save_policy(self, policy: SourcePolicy) -> None: ...

    def delete_policy(self, pattern: str) -> None: ...


def create_default_store() -> dict[str, Any]:
    """Create an empty store structure with a metadata section."""
    return {
        "metadata": {
            "fleetpkg_version": __version__,
            "schema_version": SCHEMA_VERSION,
            "last_updated": datetime.now(UTC).isoformat(),
        },
        "apps": {},
        "policies": [],
    }


class CatalogStore:
    """JSON-file implementation of CatalogRepository and PolicyRepository.

    Attributes:
        store_file: Path to the JSON file.
        state: In-memory store dictionary.
    """

    def __init__(self, store_file: Path):
        self.store_file = Path(store_file)
        self.state: dict[str, Any] = create_default_store()
        self._lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        """Load the store from disk.

        Creates the file if it doesn't exist. A corrupted file is renamed to
        ``<name>.json.backup`` and a fresh store is written in its place.

        Returns:
            The loaded store dictionary.

        Raises:
            CatalogError: If the file was corrupted (after the backup has
                been made and a fresh store saved).
        """
        with self._lock:
            try:
                with open(self.store_file, encoding="utf-8") as f:
                    self.state = json.load(f)
            except FileNotFoundError:
                self.state = create_default_store()
                self.save()
            except json.JSONDecodeError as err:
                backup = self.store_file.with_suffix(".json.backup")
                self.store_file.rename(backup)
                self.state = create_default_store()
                self.save()
                raise CatalogError(
                    f"Corrupted catalog file backed up to {backup}. "
                    f"Created fresh catalog file."
                ) from err

            self.state.setdefault("apps", {})
            self.state.setdefault("policies", [])
            return self.state

    def save(self) -> None:
        """Write the store to disk atomically.

        Updates metadata.last_updated and creates parent directories.
        """
        with self._lock:
            self.state.setdefault("metadata", {})
            self.state["metadata"]["last_updated"] = datetime.now(UTC).isoformat()
            self.store_file.parent.mkdir(parents=True, exist_ok=True)

            tmp = self.store_file.with_suffix(self.store_file.suffix + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self.state, f, indent=2, sort_keys=True)
                f.write("\n")
            tmp.replace(self.store_file)

    # -------------------------------
    # Catalog entries
    # -------------------------------

    def get(self, code: str) -> CatalogEntry | None:
        with self._lock:
            data = self.state["apps"].get(code)
            return CatalogEntry.from_dict(data) if data else None

    def require(self, code: str) -> CatalogEntry:
        """Like get(), but raises CatalogError for unknown codes."""
        entry = self.get(code)
        if entry is None:
            raise CatalogError(f"Application not found: {code}")
        return entry

    def exists(self, code: str) -> bool:
        with self._lock:
            return code in self.state["apps"]

    def list_entries(self) -> list[CatalogEntry]:
        """All entries ordered by display name."""
        with self._lock:
            entries = [CatalogEntry.from_dict(d) for d in self.state["apps"].values()]
        return sorted(entries, key=lambda e: e.name.lower())

    def save_entry(self, entry: CatalogEntry) -> None:
        """Persist every field of the entry in one write."""
        with self._lock:
            self.state["apps"][entry.code] = entry.to_dict()
            self.save()

    def delete_entry(self, code: str) -> None:
        with self._lock:
            if self.state["apps"].pop(code, None) is not None:
                self.save()

    def find_approved(self) -> list[CatalogEntry]:
        return [e for e in self.list_entries() if e.is_approved]

    def find_installed(self) -> list[CatalogEntry]:
        return [e for e in self.list_entries() if e.is_installed]

    def find_update_pending(self) -> list[CatalogEntry]:
        return [e for e in self.list_entries() if e.update_available]

    def find_rollback_available(self) -> list[CatalogEntry]:
        return [e for e in self.list_entries() if e.rollback_available]

    # -------------------------------
    # Source policies
    # -------------------------------

    def list_policies(self, active_only: bool = False) -> list[SourcePolicy]:
        """Policies ordered by ascending priority (stable for ties)."""
        with self._lock:
            policies = [SourcePolicy.from_dict(p) for p in self.state["policies"]]
        if active_only:
            policies = [p for p in policies if p.is_active]
        return sorted(policies, key=lambda p: p.priority)

    def find_policy(self, pattern: str) -> SourcePolicy | None:
        wanted = pattern.lower()
        for policy in self.list_policies():
            if policy.pattern.lower() == wanted:
                return policy
        return None

    def save_policy(self, policy: SourcePolicy) -> None:
        """Insert or replace the policy with the same (case-insensitive) pattern."""
        with self._lock:
            wanted = policy.pattern.lower()
            policies = self.state["policies"]
            for i, existing in enumerate(policies):
                if existing["pattern"].lower() == wanted:
                    policies[i] = policy.to_dict()
                    break
            else:
                policies.append(policy.to_dict())
            self.save()

    def delete_policy(self, pattern: str) -> None:
        with self._lock:
            wanted = pattern.lower()
            before = len(self.state["policies"])
            self.state["policies"] = [
                p for p in self.state["policies"] if p["pattern"].lower() != wanted
            ]
            if len(self.state["policies"]) != before:
                self.save()
