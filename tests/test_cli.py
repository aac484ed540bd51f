"""
Tests for fleetpkg.cli module.

Tests the command-line interface including:
- Argument parsing for subcommands
- Source policy checks and policy management
- Catalog import, listing and approval against a site config
- Error reporting and exit codes
"""

from __future__ import annotations

import pytest

from fleetpkg.cli import build_parser


@pytest.fixture
def site_config(create_yaml_file):
    """Site config that keeps the catalog and work dirs inside the temp dir."""
    return create_yaml_file(
        "site.yaml",
        {
            "paths": {"catalog": "state/catalog.json", "temp_dir": "work"},
            "security": {"virus_scan": {"enabled": False}},
        },
    )


@pytest.fixture
def run_cli(site_config):
    def _run(*argv: str) -> int:
        args = build_parser().parse_args([*argv, "--config", str(site_config)])
        return args.func(args)

    return _run


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(["install", "vlc"])

        assert args.code == "vlc"
        assert args.actor == "SYSTEM"
        assert args.config is None
        assert not args.verbose

    def test_rollback_reinstall_flag(self):
        args = build_parser().parse_args(["rollback", "vlc", "--reinstall"])

        assert args.reinstall

    def test_invalid_update_policy(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["set-update-policy", "vlc", "sometimes"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    def test_check_source_allowed(self, run_cli, capsys):
        assert run_cli("check-source", "https://get.videolan.org/vlc.msi") == 0

        out = capsys.readouterr().out
        assert "Allowed:         True" in out
        assert "Matched Policy:  videolan.org" in out

    def test_check_source_denied(self, run_cli, capsys):
        assert run_cli("check-source", "https://mirror.example.ru/vlc.msi") == 1

        assert "Blocked by policy" in capsys.readouterr().out

    def test_import_list_approve(self, run_cli, create_yaml_file, capsys):
        catalog = create_yaml_file(
            "entries.yaml",
            {
                "entries": [
                    {
                        "code": "vlc",
                        "name": "VLC media player",
                        "installer_kind": "msi",
                        "current_version": "3.0.20",
                    }
                ]
            },
        )

        assert run_cli("import", str(catalog)) == 0
        assert run_cli("approve", "vlc", "--actor", "alice") == 0
        assert run_cli("list") == 0

        out = capsys.readouterr().out
        assert "[SUCCESS] Imported 1 catalog entries" in out
        assert "VLC media player approved by alice." in out
        assert "1 entries, 1 approved, 0 installed" in out

    def test_unknown_entry_reports_error(self, run_cli, capsys):
        assert run_cli("approve", "nope") == 1

        assert "Error: Application not found: nope" in capsys.readouterr().out

    def test_policy_add_and_list(self, run_cli, capsys):
        assert (
            run_cli(
                "policy",
                "add",
                "downloads.example.com",
                "--direction",
                "deny",
                "--priority",
                "2",
                "--description",
                "Untrusted mirror",
            )
            == 0
        )
        assert run_cli("check-source", "https://downloads.example.com/a.msi") == 1
        assert run_cli("policy", "list") == 0

        out = capsys.readouterr().out
        assert "[SUCCESS] Added DENY downloads.example.com" in out
        assert "Untrusted mirror" in out

    def test_remove_missing_policy(self, run_cli, capsys):
        assert run_cli("policy", "remove", "nothing.example.com") == 1

        assert "Policy not found" in capsys.readouterr().out
