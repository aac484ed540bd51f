"""
fleetpkg - secure deployment and update pipeline for managed fleets

A Python library and CLI that deploys third-party Windows software to
managed machines under central IT policy.

fleetpkg provides:
  - A curated application catalog stored as a JSON file
  - Ordered allow/deny download source policies
  - Security gates: source policy, SHA-256 checksum, Authenticode
    signature and malware scan, in that order
  - An installation pipeline for MSI, EXE, MSIX, ZIP, portable and
    winget/Chocolatey references, with progress and cancellation
  - Update detection, admin approval with expiry, and one-step rollback
  - A scheduler that checks for updates, sweeps expired approvals and
    dispatches auto-updates behind a failure circuit breaker

Quick Start
-----------
Check whether a download source is permitted:

    $ fleetpkg check-source https://github.com/org/tool/releases/x.msi

Install an approved catalog entry:

    $ fleetpkg install vlc --config site.yaml

For full CLI documentation:

    $ fleetpkg --help

Package Structure
-----------------
cli : module
    Command-line interface with argparse.
catalog : package
    Catalog entry model, JSON store and administration.
config : package
    YAML configuration loading and typed settings.
policy : package
    Source policies and the update/rollback state machine.
security : package
    Checksum, signature and malware scan gates.
install : package
    Installer strategies, process runner and the pipeline.
updates : package
    Update checks, update orchestration and the scheduler.
io : package
    Artifact downloads.

Project Information
-------------------
Author: Roger Cibrian
License: Apache-2.0
"""

__version__ = "0.1.0"
__author__ = "Roger Cibrian"
__license__ = "Apache-2.0"
__description__ = "Secure deployment and update pipeline for managed fleets"

# Re-export commonly used entry points for convenience
from fleetpkg.catalog import CatalogEntry, CatalogStore, InstallerKind, UpdatePolicy
from fleetpkg.config import load_effective_config, settings_from_config
from fleetpkg.install import InstallationPipeline
from fleetpkg.updates import UpdateManager, UpdateScheduler

__all__ = [
    "__version__",
    "__author__",
    "__license__",
    "__description__",
    "CatalogEntry",
    "CatalogStore",
    "InstallerKind",
    "UpdatePolicy",
    "load_effective_config",
    "settings_from_config",
    "InstallationPipeline",
    "UpdateManager",
    "UpdateScheduler",
]
