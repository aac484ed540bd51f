"""
Update checking, approval, installation and rollback for fleetpkg.

Modules
-------
checker : module
    Publisher update-check endpoint client (JSONPath and regex extraction).
manager : module
    UpdateManager: the update lifecycle on top of the catalog and pipeline.
scheduler : module
    UpdateScheduler: fixed-interval, single-flight ticks.
"""

from .checker import RemoteVersion, UpdateChecker
from .manager import UpdateManager
from .scheduler import TickReport, UpdateScheduler

__all__ = [
    "RemoteVersion",
    "TickReport",
    "UpdateChecker",
    "UpdateManager",
    "UpdateScheduler",
]
