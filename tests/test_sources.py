"""
Tests for fleetpkg.policy.sources module.

Tests download source policy evaluation including:
- Domain, subdomain, wildcard and substring matching
- Priority ordering and inactive rules
- Scheme checks and local/UNC paths
- Entry source validation (restricted local paths)
- Policy administration and auditing
"""

from __future__ import annotations

import pytest

from fleetpkg.audit import AuditAction
from fleetpkg.exceptions import CatalogError
from fleetpkg.policy.sources import (
    DEFAULT_POLICIES,
    PolicyDirection,
    SourcePolicy,
    evaluate_policies,
    is_local_path,
)


def _policy(pattern, direction=PolicyDirection.ALLOW, priority=100, **kwargs):
    return SourcePolicy(pattern=pattern, direction=direction, priority=priority, **kwargs)


class TestPolicyMatching:
    """Tests for SourcePolicy.matches()."""

    def test_exact_domain(self):
        assert _policy("github.com").matches("https://github.com/org/repo/releases/x.msi")

    def test_subdomain_matches(self):
        assert _policy("microsoft.com").matches("https://download.microsoft.com/app.exe")

    def test_suffix_without_dot_does_not_match(self):
        assert not _policy("microsoft.com").matches("https://notmicrosoft.com/app.exe")

    def test_case_insensitive(self):
        assert _policy("GitHub.COM").matches("https://GITHUB.com/x.msi")

    def test_wildcard_tld_matches_host(self):
        assert _policy("*.ru").matches("https://mirror.example.ru/app.msi")

    def test_wildcard_substring_matches_url(self):
        assert _policy("*crack*").matches("https://files.example.com/crack/app.exe")

    def test_pattern_with_path_is_substring(self):
        policy = _policy("example.com/approved/")
        assert policy.matches("https://example.com/approved/app.msi")
        assert not policy.matches("https://example.com/other/app.msi")

    def test_unc_path_uses_substring(self):
        assert _policy("fileserver").matches("\\\\fileserver\\deploy\\app.msi")

    def test_empty_url_never_matches(self):
        assert not _policy("github.com").matches("")
        assert not _policy("github.com").matches(None)


class TestEvaluatePolicies:
    """Tests for evaluate_policies() with the default rule set."""

    def test_allowed_by_vendor_policy(self):
        decision = evaluate_policies(
            "https://get.videolan.org/vlc/vlc.msi", list(DEFAULT_POLICIES)
        )

        assert decision.allowed
        assert decision.matched_policy.pattern == "videolan.org"
        assert decision.reason == "Allowed by policy: VLC media player"

    def test_high_risk_tld_blocked(self):
        decision = evaluate_policies("https://downloads.example.ru/app.msi", list(DEFAULT_POLICIES))

        assert not decision.allowed
        assert decision.matched_policy.pattern == "*.ru"
        assert decision.reason.startswith("Blocked by policy:")

    def test_deny_beats_allow_by_priority(self):
        decision = evaluate_policies(
            "https://github.com/someone/torrent-client.exe", list(DEFAULT_POLICIES)
        )

        assert not decision.allowed
        assert decision.matched_policy.pattern == "*torrent*"

    def test_no_match_is_allowed(self):
        decision = evaluate_policies("https://downloads.example.com/app.msi", list(DEFAULT_POLICIES))

        assert decision.allowed
        assert decision.matched_policy is None
        assert decision.reason == "No blocking policy found"

    def test_empty_url_denied(self):
        decision = evaluate_policies("", list(DEFAULT_POLICIES))

        assert not decision.allowed
        assert decision.reason == "Empty URL"

    def test_unsupported_scheme_denied(self):
        decision = evaluate_policies("ftp://files.example.com/app.msi", [])

        assert not decision.allowed
        assert decision.reason == "Invalid URL scheme: ftp"

    def test_inactive_policy_ignored(self):
        policies = [_policy("example.com", PolicyDirection.DENY, 1, is_active=False)]

        decision = evaluate_policies("https://example.com/app.msi", policies)

        assert decision.allowed
        assert decision.matched_policy is None

    def test_lower_priority_value_wins(self):
        policies = [
            _policy("example.com", PolicyDirection.ALLOW, 50, description="allow"),
            _policy("example.com/bad", PolicyDirection.DENY, 10, description="deny"),
        ]

        assert not evaluate_policies("https://example.com/bad/app.msi", policies).allowed
        assert evaluate_policies("https://example.com/good/app.msi", policies).allowed

    def test_local_paths_skip_scheme_check(self):
        decision = evaluate_policies("C:\\Installers\\app.msi", [])

        assert decision.allowed


class TestIsLocalPath:
    @pytest.mark.parametrize(
        "source",
        ["\\\\server\\share\\app.msi", "C:\\Installers\\app.msi", "d:/apps/tool.zip"],
    )
    def test_local(self, source):
        assert is_local_path(source)

    @pytest.mark.parametrize("source", ["https://example.com/a.msi", "relative/app.msi"])
    def test_not_local(self, source):
        assert not is_local_path(source)


class TestSourcePolicyEngine:
    """Tests for SourcePolicyEngine administration and entry validation."""

    def test_bootstrap_defaults_only_once(self, store, memory_audit):
        from fleetpkg.policy import SourcePolicyEngine

        engine = SourcePolicyEngine(store, memory_audit)

        assert engine.bootstrap_defaults() == len(DEFAULT_POLICIES)
        assert engine.bootstrap_defaults() == 0
        assert len(engine.list_policies()) == len(DEFAULT_POLICIES)

    def test_policies_listed_by_priority(self, engine):
        priorities = [p.priority for p in engine.list_policies()]

        assert priorities == sorted(priorities)

    def test_add_policy_audited(self, engine, memory_audit):
        policy = engine.add_policy(
            "badvendor.com", PolicyDirection.DENY, priority=2, description="Known bad", actor="admin"
        )

        assert policy.created_by == "admin"
        assert not engine.evaluate("https://cdn.badvendor.com/x.exe").allowed
        assert memory_audit.actions()[-1] is AuditAction.SECURITY_SETTINGS_CHANGE

    def test_add_duplicate_pattern_rejected(self, engine):
        with pytest.raises(CatalogError, match="already exists"):
            engine.add_policy("GITHUB.com", PolicyDirection.DENY)

    def test_add_empty_pattern_rejected(self, engine):
        with pytest.raises(CatalogError):
            engine.add_policy("  ", PolicyDirection.DENY)

    def test_remove_policy(self, engine):
        assert engine.remove_policy("github.com", actor="admin")
        assert not engine.remove_policy("github.com", actor="admin")

    def test_toggle_policy(self, engine):
        toggled = engine.toggle_policy("*.ru")

        assert not toggled.is_active
        assert engine.evaluate("https://example.ru/app.msi").allowed

        assert engine.toggle_policy("*.ru").is_active

    def test_toggle_unknown_policy(self, engine):
        with pytest.raises(CatalogError, match="Policy not found"):
            engine.toggle_policy("nope.example")

    def test_validate_entry_download_url(self, engine, make_entry):
        entry = make_entry(download_url="https://warez.example.com/app.msi")

        assert not engine.validate_entry_source(entry).allowed

    @pytest.mark.parametrize(
        "local_path",
        [
            "C:\\Windows\\System32\\evil.exe",
            "c:/program files/common files/x.msi",
            "\\\\server\\share\\..\\..\\secret.msi",
        ],
    )
    def test_validate_entry_restricted_local_path(self, engine, make_entry, local_path):
        decision = engine.validate_entry_source(make_entry(local_path=local_path))

        assert not decision.allowed
        assert "restricted directory" in decision.reason

    def test_validate_entry_allowed(self, engine, make_entry):
        entry = make_entry(
            download_url="https://get.videolan.org/vlc.msi",
            local_path="\\\\fileserver\\deploy\\vlc.msi",
        )

        decision = engine.validate_entry_source(entry)

        assert decision.allowed
        assert decision.reason == "Download source validated"
