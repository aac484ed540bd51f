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

"""Command-line interface for fleetpkg.

Commands:

    check-source: Evaluate a download URL against the source policies
    import: Add catalog entries from a YAML file
    list: Show catalog entries and their state
    approve: Approve a catalog entry for installation
    install: Download, verify and install an approved entry
    uninstall: Run an entry's uninstall command
    check-updates: Query publishers for new versions
    approve-update / reject-update: Decide on a pending update
    update: Install an approved pending update
    rollback: Return to the previous version
    confirm: Keep the current version and drop the rollback snapshot
    policy: List, add, remove or toggle download source policies
    scheduler: Run update ticks (once or forever)

Example:
    Check a source:
        ```bash
        $ fleetpkg check-source https://get.videolan.org/vlc/vlc.msi
        ```

    Install with a site config:
        ```bash
        $ fleetpkg install vlc --config site.yaml --actor admin
        ```

    Run one scheduler tick with verbose output:
        ```bash
        $ fleetpkg scheduler --once --verbose
        ```

Exit Codes:

- 0: Success
- 1: Error (configuration, policy, verification or installer failure)

Note:
    Each command has its own handler function (cmd_<command>).
    Verbose mode shows full tracebacks on errors for debugging.
    Debug mode implies verbose mode.
"""

from __future__ import annotations

import argparse
from collections.abc import Callable
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
import sys
import traceback

from dotenv import load_dotenv

from fleetpkg.audit import LoggerAuditSink
from fleetpkg.catalog import CatalogAdmin, CatalogStore
from fleetpkg.catalog.models import UpdatePolicy
from fleetpkg.config import Settings, load_effective_config, settings_from_config
from fleetpkg.exceptions import FleetPkgError
from fleetpkg.install import ActionKind, EntryLocks, InstallationAttempt, InstallationPipeline
from fleetpkg.io import make_session
from fleetpkg.logging import get_logger, set_global_logger
from fleetpkg.policy import PolicyDirection, SourcePolicyEngine
from fleetpkg.results import InstallationResult
from fleetpkg.security import GateChain, PowerShellSignatureInspector, ProcessScanner
from fleetpkg.updates import UpdateChecker, UpdateManager, UpdateScheduler


@dataclass
class Services:
    """Components wired from one Settings object."""

    settings: Settings
    store: CatalogStore
    admin: CatalogAdmin
    engine: SourcePolicyEngine
    pipeline: InstallationPipeline
    manager: UpdateManager


def build_services(settings: Settings) -> Services:
    """Load the catalog and wire every component from settings."""
    audit = LoggerAuditSink()
    store = CatalogStore(settings.catalog_path)
    store.load()

    engine = SourcePolicyEngine(store, audit)
    engine.bootstrap_defaults()

    security = settings.security
    gates = GateChain(
        engine,
        PowerShellSignatureInspector(timeout=security.signature_timeout_seconds),
        ProcessScanner(
            enabled=security.virus_scan_enabled,
            timeout=security.virus_scan_timeout_seconds,
            custom_scanner_path=security.custom_scanner_path,
            custom_scanner_args=security.custom_scanner_args,
        ),
        audit,
    )
    session = make_session(settings.network)
    pipeline = InstallationPipeline(
        store, gates, settings, audit, locks=EntryLocks(), session=session
    )
    checker = UpdateChecker(session=session, timeout=settings.scheduler.update_check_timeout)
    manager = UpdateManager(store, pipeline, checker, audit)
    return Services(settings, store, CatalogAdmin(store, audit), engine, pipeline, manager)


def _load_settings(args: argparse.Namespace) -> Settings:
    load_dotenv()
    if args.config:
        return settings_from_config(load_effective_config(Path(args.config)))
    return settings_from_config({})


def _configure_logger(args: argparse.Namespace) -> None:
    set_global_logger(get_logger(verbose=args.verbose, debug=args.debug))


def _report_error(args: argparse.Namespace, err: Exception) -> int:
    print(f"Error: {err}")
    if args.verbose or args.debug:
        traceback.print_exc()
    return 1


def _run(args: argparse.Namespace, body: Callable[[Services], int]) -> int:
    """Configure logging, build services and run a command body."""
    _configure_logger(args)
    try:
        services = build_services(_load_settings(args))
        return body(services)
    except FleetPkgError as err:
        return _report_error(args, err)


def _print_progress(fraction: float) -> None:
    print(f"progress: {int(fraction * 100)}%", end="\r")


def _print_result(title: str, result: InstallationResult) -> int:
    print()
    print("=" * 70)
    print(title)
    print("=" * 70)
    if result.entry is not None:
        print(f"App:             {result.entry.name} ({result.entry.code})")
        print(f"Version:         {result.entry.current_version}")
        print(f"Installed:       {result.entry.is_installed}")
    print(f"Success:         {result.success}")
    if result.restart_required:
        print("Restart:         required")
    if not result.success:
        print(f"Error:           {result.error_kind}: {result.error_message}")
    print("=" * 70)
    if result.success:
        print()
        print("[SUCCESS] Operation completed.")
        return 0
    print()
    print("[FAILED] Operation failed.")
    return 1


def cmd_check_source(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg check-source' command."""

    def body(services: Services) -> int:
        decision = services.engine.evaluate(args.url)
        print("=" * 70)
        print("SOURCE POLICY DECISION")
        print("=" * 70)
        print(f"URL:             {args.url}")
        print(f"Allowed:         {decision.allowed}")
        print(f"Reason:          {decision.reason}")
        if decision.matched_policy is not None:
            print(f"Matched Policy:  {decision.matched_policy.pattern}")
        print("=" * 70)
        return 0 if decision.allowed else 1

    return _run(args, body)


def cmd_import(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg import' command."""

    def body(services: Services) -> int:
        added = services.admin.import_yaml(Path(args.file), actor=args.actor)
        for entry in added:
            print(f"  [+] {entry.code}: {entry.name}")
        print()
        print(f"[SUCCESS] Imported {len(added)} catalog entries (not yet approved).")
        return 0

    return _run(args, body)


def cmd_list(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg list' command."""

    def body(services: Services) -> int:
        entries = services.store.list_entries()
        print(f"{'CODE':<20} {'VERSION':<14} {'APPROVED':<9} {'INSTALLED':<10} UPDATE")
        for e in entries:
            pending = e.pending_version if e.update_available else ""
            print(
                f"{e.code:<20} {(e.current_version or '-'):<14} "
                f"{str(e.is_approved):<9} {str(e.is_installed):<10} {pending}"
            )
        stats = services.admin.stats()
        print()
        print(f"{stats.total} entries, {stats.approved} approved, {stats.installed} installed")
        return 0

    return _run(args, body)


def cmd_approve(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg approve' command."""

    def body(services: Services) -> int:
        if args.revoke:
            entry = services.admin.revoke(args.code, actor=args.actor)
            print(f"[SUCCESS] Approval revoked for {entry.name}.")
        else:
            entry = services.admin.approve(args.code, actor=args.actor)
            print(f"[SUCCESS] {entry.name} approved by {entry.approved_by}.")
        return 0

    return _run(args, body)


def cmd_install(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg install' command.

    Runs the full pipeline: approval, source policy, download, checksum,
    signature, malware scan, installer execution and commit.
    """

    def body(services: Services) -> int:
        print(f"Installing: {args.code}")
        attempt = InstallationAttempt.create(
            args.code, ActionKind.INSTALL, args.actor, _print_progress
        )
        result = services.pipeline.install(args.code, args.actor, attempt)
        return _print_result("INSTALLATION RESULTS", result)

    return _run(args, body)


def cmd_uninstall(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg uninstall' command."""

    def body(services: Services) -> int:
        print(f"Uninstalling: {args.code}")
        result = services.pipeline.uninstall(args.code, args.actor)
        return _print_result("UNINSTALL RESULTS", result)

    return _run(args, body)


def cmd_check_updates(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg check-updates' command."""

    def body(services: Services) -> int:
        manager = services.manager
        if args.code:
            results = {args.code: manager.check_for_update(args.code)}
        else:
            results = manager.check_all()

        print("=" * 70)
        print("UPDATE CHECK RESULTS")
        print("=" * 70)
        for code, result in results.items():
            marker = "[UPDATE]" if result.update_found else "[OK]" if result.checked else "[SKIP]"
            print(f"  {marker:<9} {code}: {result.message}")
        print("=" * 70)
        return 0

    return _run(args, body)


def cmd_approve_update(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg approve-update' command."""

    def body(services: Services) -> int:
        entry = services.manager.approve_update(args.code, actor=args.actor)
        expires = entry.update_approval_expires_at
        print(f"[SUCCESS] Update to {entry.pending_version} approved for {entry.name}.")
        if expires is not None:
            print(f"Approval expires at {expires.isoformat()}")
        return 0

    return _run(args, body)


def cmd_reject_update(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg reject-update' command."""

    def body(services: Services) -> int:
        entry = services.manager.reject_update(args.code, actor=args.actor)
        print(f"[SUCCESS] Pending update rejected for {entry.name}.")
        return 0

    return _run(args, body)


def cmd_update(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg update' command."""

    def body(services: Services) -> int:
        result = services.manager.perform_update(args.code, actor=args.actor)
        if result.success:
            print(f"[SUCCESS] {args.code} updated to {result.new_version}.")
            return 0
        print(f"[FAILED] {result.error_message}")
        if result.retryable:
            print("         The scheduler will retry on its next run.")
        return 1

    return _run(args, body)


def cmd_rollback(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg rollback' command."""

    def body(services: Services) -> int:
        result = services.manager.rollback(args.code, actor=args.actor, reinstall=args.reinstall)
        if result.success:
            print(f"[SUCCESS] {args.code} rolled back to {result.new_version}.")
            return 0
        print(f"[FAILED] {result.error_message}")
        return 1

    return _run(args, body)


def cmd_confirm(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg confirm' command."""

    def body(services: Services) -> int:
        entry = services.manager.confirm_current_version(args.code, actor=args.actor)
        print(f"[SUCCESS] {entry.name} {entry.current_version} confirmed; rollback cleared.")
        return 0

    return _run(args, body)


def cmd_set_policy(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg set-update-policy' command."""

    def body(services: Services) -> int:
        manager = services.manager
        entry = manager.set_update_policy(args.code, UpdatePolicy(args.policy), args.actor)
        if args.interval is not None:
            entry = manager.set_update_check_interval(args.code, args.interval, args.actor)
        if args.expiration is not None:
            entry = manager.set_approval_expiration(args.code, args.expiration, args.actor)
        print(
            f"[SUCCESS] {entry.name}: policy={entry.update_policy.value}, "
            f"check every {entry.update_check_interval_hours}h, "
            f"approvals expire after {entry.approval_expiration_hours}h"
        )
        return 0

    return _run(args, body)


def cmd_policy(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg policy' command."""

    def body(services: Services) -> int:
        engine = services.engine
        if args.policy_action == "add":
            policy = engine.add_policy(
                args.pattern,
                PolicyDirection(args.direction),
                priority=args.priority,
                description=args.description,
                actor=args.actor,
            )
            print(f"[SUCCESS] Added {policy.direction.value.upper()} {policy.pattern}")
        elif args.policy_action == "remove":
            if not engine.remove_policy(args.pattern, actor=args.actor):
                print(f"Error: Policy not found: {args.pattern}")
                return 1
            print(f"[SUCCESS] Removed {args.pattern}")
        elif args.policy_action == "toggle":
            policy = engine.toggle_policy(args.pattern, actor=args.actor)
            state = "enabled" if policy.is_active else "disabled"
            print(f"[SUCCESS] {policy.pattern} {state}")
        else:
            for p in engine.list_policies():
                active = "" if p.is_active else " (inactive)"
                print(
                    f"  {p.priority:>4} {p.direction.value.upper():<5} "
                    f"{p.pattern:<30} {p.description}{active}"
                )
        return 0

    return _run(args, body)


def cmd_scheduler(args: argparse.Namespace) -> int:
    """Handler for 'fleetpkg scheduler' command."""

    def body(services: Services) -> int:
        settings = services.settings.scheduler
        scheduler = UpdateScheduler(
            services.manager,
            interval_minutes=args.interval or settings.interval_minutes,
            workers=settings.auto_update_workers,
        )
        if not args.once:
            print(f"Scheduler running every {scheduler.interval / 60:g} minutes (Ctrl+C to stop)")
            try:
                scheduler.run_forever()
            except KeyboardInterrupt:
                print()
                print("Scheduler stopped.")
            return 0

        report = scheduler.tick()
        print("=" * 70)
        print("SCHEDULER TICK")
        print("=" * 70)
        print(f"Checked:         {len(report.checks)}")
        print(f"Updates found:   {sum(1 for r in report.checks.values() if r.update_found)}")
        print(f"Expired:         {len(report.expired)}")
        print(f"Auto-updated:    {sum(1 for r in report.updates.values() if r.success)}")
        print(f"Failed updates:  {sum(1 for r in report.updates.values() if not r.success)}")
        print("=" * 70)
        return 0

    return _run(args, body)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default=None,
        help="Site configuration YAML (default: built-in settings)",
    )
    parser.add_argument(
        "--actor",
        default="SYSTEM",
        help="Name recorded in audit records (default: SYSTEM)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show progress and high-level status updates",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Show detailed debugging output (implies --verbose)",
    )


def _package_version() -> str:
    try:
        return version("fleetpkg")
    except PackageNotFoundError:
        from fleetpkg import __version__

        return __version__


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetpkg",
        description="Secure deployment and update pipeline for managed fleets.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"fleetpkg {_package_version()}",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    p = subparsers.add_parser("check-source", help="Evaluate a URL against the source policies")
    p.add_argument("url", help="Download URL or local/UNC path")
    _add_common_args(p)
    p.set_defaults(func=cmd_check_source)

    p = subparsers.add_parser("import", help="Add catalog entries from a YAML file")
    p.add_argument("file", help="YAML file with an 'entries' list")
    _add_common_args(p)
    p.set_defaults(func=cmd_import)

    p = subparsers.add_parser("list", help="Show catalog entries")
    _add_common_args(p)
    p.set_defaults(func=cmd_list)

    p = subparsers.add_parser("approve", help="Approve a catalog entry for installation")
    p.add_argument("code", help="Catalog code")
    p.add_argument("--revoke", action="store_true", help="Revoke approval instead")
    _add_common_args(p)
    p.set_defaults(func=cmd_approve)

    for name, func, text in (
        ("install", cmd_install, "Download, verify and install an approved entry"),
        ("uninstall", cmd_uninstall, "Run the entry's uninstall command"),
        ("approve-update", cmd_approve_update, "Approve the pending update"),
        ("reject-update", cmd_reject_update, "Reject the pending update"),
        ("update", cmd_update, "Install the approved pending update"),
        ("confirm", cmd_confirm, "Keep the current version and clear rollback data"),
    ):
        p = subparsers.add_parser(name, help=text)
        p.add_argument("code", help="Catalog code")
        _add_common_args(p)
        p.set_defaults(func=func)

    p = subparsers.add_parser("check-updates", help="Query publishers for new versions")
    p.add_argument("code", nargs="?", help="Catalog code (default: all installed entries)")
    _add_common_args(p)
    p.set_defaults(func=cmd_check_updates)

    p = subparsers.add_parser("rollback", help="Return to the previous version")
    p.add_argument("code", help="Catalog code")
    p.add_argument(
        "--reinstall",
        action="store_true",
        help="Download and install the previous artifact instead of only swapping records",
    )
    _add_common_args(p)
    p.set_defaults(func=cmd_rollback)

    p = subparsers.add_parser("set-update-policy", help="Change an entry's update settings")
    p.add_argument("code", help="Catalog code")
    p.add_argument("policy", choices=[u.value for u in UpdatePolicy], help="Update policy")
    p.add_argument("--interval", type=int, default=None, help="Check interval in hours")
    p.add_argument(
        "--expiration", type=int, default=None, help="Approval expiration in hours (0 = never)"
    )
    _add_common_args(p)
    p.set_defaults(func=cmd_set_policy)

    p = subparsers.add_parser("policy", help="Manage download source policies")
    p.add_argument("policy_action", choices=["list", "add", "remove", "toggle"])
    p.add_argument("pattern", nargs="?", help="Domain, wildcard or substring pattern")
    p.add_argument("--direction", choices=["allow", "deny"], default="deny")
    p.add_argument("--priority", type=int, default=100, help="Lower runs first (default: 100)")
    p.add_argument("--description", default="", help="Shown in policy decisions")
    _add_common_args(p)
    p.set_defaults(func=cmd_policy)

    p = subparsers.add_parser("scheduler", help="Run update scheduler ticks")
    p.add_argument("--once", action="store_true", help="Run a single tick and exit")
    p.add_argument(
        "--interval", type=float, default=None, help="Minutes between ticks (default: config)"
    )
    _add_common_args(p)
    p.set_defaults(func=cmd_scheduler)

    return parser


def main() -> None:
    """Main entry point for the fleetpkg CLI."""
    parser = build_parser()
    args = parser.parse_args()
    if args.command == "policy" and args.policy_action != "list" and not args.pattern:
        parser.error("policy add/remove/toggle requires a pattern")
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
