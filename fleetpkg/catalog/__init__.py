"""
fleetpkg.catalog

The application catalog: entry model, JSON-backed store and administration.

Example:
    from pathlib import Path
    from fleetpkg.catalog import CatalogAdmin, CatalogStore

    store = CatalogStore(Path("state/catalog.json"))
    store.load()
    CatalogAdmin(store).approve("vlc", actor="admin")
"""

from .models import CatalogEntry, InstallerKind, UpdatePolicy
from .repository import CatalogRepository, CatalogStore, PolicyRepository
from .admin import CatalogAdmin, CatalogStats

__all__ = [
    "CatalogEntry",
    "InstallerKind",
    "UpdatePolicy",
    "CatalogRepository",
    "PolicyRepository",
    "CatalogStore",
    "CatalogAdmin",
    "CatalogStats",
]
