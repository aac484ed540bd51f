"""
Installation pipeline for fleetpkg.

Modules
-------
kinds : module
    InstallerStrategy registry keyed by installer kind, exit-code rules.
locks : module
    EntryLocks: one in-flight run per catalog entry.
pipeline : module
    InstallationPipeline: approval, gates, download, execution, commit.
queue : module
    InstallQueue: bounded worker pool with cancellation tokens.
"""

from .kinds import (
    InstallerStrategy,
    classify_exit_code,
    get_installer,
    register_installer,
)
from .locks import EntryLocks
from .pipeline import (
    ActionKind,
    InstallationAttempt,
    InstallationPipeline,
    PipelineState,
)
from .queue import InstallQueue

__all__ = [
    "ActionKind",
    "EntryLocks",
    "InstallQueue",
    "InstallationAttempt",
    "InstallationPipeline",
    "InstallerStrategy",
    "PipelineState",
    "classify_exit_code",
    "get_installer",
    "register_installer",
]
