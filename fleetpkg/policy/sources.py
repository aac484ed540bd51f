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

"""Download source policies for fleetpkg.

A download source is checked against an ordered list of allow/deny rules
before anything is fetched. Rules are evaluated by ascending priority (ties
keep insertion order) and the first matching rule decides. When nothing
matches the source is ALLOWED: the rule set is a blocklist with a few
explicit trust anchors, not a whitelist.

Pattern forms:

- ``*`` wildcard (``*torrent*``, ``*.ru``): full match against the
  lower-cased URL; patterns without ``/`` are also full-matched against
  the host name, so ``*.ru`` catches ``http://example.ru/setup.exe``
- domain (``github.com``): the host equals the domain or is a subdomain of
  it (``objects.github.com`` matches, ``notgithub.com`` does not)
- anything else: substring of the lower-cased URL

Before any rule is consulted the URL must be non-empty and use http, https
or file, or be a UNC (``\\\\server\\share``) or drive-letter path. Plain
http is logged as a warning but not blocked.

Example:
    ```python
    from fleetpkg.policy.sources import SourcePolicyEngine

    engine = SourcePolicyEngine(store)
    engine.bootstrap_defaults()
    decision = engine.evaluate("https://get.videolan.org/vlc/vlc.msi")
    print(decision.allowed, decision.reason)
    ```
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from fleetpkg.audit import AuditAction, AuditSink, LoggerAuditSink
from fleetpkg.exceptions import CatalogError, ConfigError
from fleetpkg.logging import get_global_logger

if TYPE_CHECKING:
    from fleetpkg.catalog.models import CatalogEntry
    from fleetpkg.catalog.repository import PolicyRepository

ALLOWED_SCHEMES = ("http", "https", "file")
RESTRICTED_LOCAL_PREFIXES = ("c:\\windows", "c:\\program files\\common")

_DRIVE_PATH = re.compile(r"^[A-Za-z]:")


class PolicyDirection(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class SourcePolicy:
    """One allow/deny rule.

    Attributes:
        pattern: Domain, wildcard or substring pattern (unique,
            case-insensitive).
        direction: ALLOW or DENY.
        priority: Lower values are evaluated first.
        is_active: Inactive rules are skipped.
        description: Why the rule exists; shown in decisions.
        created_by: Who added the rule ("SYSTEM" for defaults).
    """

    pattern: str
    direction: PolicyDirection
    priority: int = 100
    is_active: bool = True
    description: str = ""
    created_by: str = "SYSTEM"
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None

    def matches(self, url: str | None) -> bool:
        """True when this rule applies to the URL."""
        if not url or not self.pattern:
            return False
        normalized = url.lower()
        pattern = self.pattern.lower()
        host = _host_of(url)

        if "*" in pattern:
            regex = re.compile(re.escape(pattern).replace(r"\*", ".*"))
            if regex.fullmatch(normalized):
                return True
            return "/" not in pattern and host is not None and bool(regex.fullmatch(host))

        if "/" not in pattern:
            if host is not None and (host == pattern or host.endswith("." + pattern)):
                return True
            # Local paths have no host; fall through to substring match.
            if host is not None:
                return False

        return pattern in normalized

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["direction"] = self.direction.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourcePolicy:
        try:
            direction = PolicyDirection(str(data["direction"]).lower())
            pattern = data["pattern"]
        except (KeyError, ValueError) as err:
            raise ConfigError(f"Invalid source policy {data!r}: {err}") from err
        kwargs: dict[str, Any] = {
            "pattern": pattern,
            "direction": direction,
            "priority": int(data.get("priority", 100)),
            "is_active": bool(data.get("is_active", True)),
            "description": data.get("description") or "",
            "created_by": data.get("created_by") or "SYSTEM",
            "updated_at": _parse_dt(data.get("updated_at")),
        }
        created_at = _parse_dt(data.get("created_at"))
        if created_at is not None:
            kwargs["created_at"] = created_at
        return cls(**kwargs)


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def is_local_path(source: str) -> bool:
    """True for UNC (\\\\server\\share) and drive-letter paths."""
    return source.startswith("\\\\") or bool(_DRIVE_PATH.match(source))


def _host_of(url: str) -> str | None:
    if is_local_path(url):
        return None
    host = urlparse(url).hostname
    return host.lower() if host else None


@dataclass(frozen=True)
class SourceDecision:
    """Outcome of evaluating a source.

    Attributes:
        allowed: Whether the source may be used.
        reason: Human-readable explanation.
        matched_policy: The deciding rule, if a rule decided.
    """

    allowed: bool
    reason: str
    matched_policy: SourcePolicy | None = None

    @classmethod
    def allow(cls, reason: str) -> SourceDecision:
        return cls(True, reason)

    @classmethod
    def deny(cls, reason: str) -> SourceDecision:
        return cls(False, reason)

    @classmethod
    def by_policy(cls, policy: SourcePolicy) -> SourceDecision:
        if policy.direction is PolicyDirection.DENY:
            return cls(False, f"Blocked by policy: {policy.description}", policy)
        return cls(True, f"Allowed by policy: {policy.description}", policy)


def _system(pattern: str, direction: PolicyDirection, priority: int, description: str):
    return SourcePolicy(
        pattern=pattern,
        direction=direction,
        priority=priority,
        description=description,
        created_by="SYSTEM",
    )


_A, _D = PolicyDirection.ALLOW, PolicyDirection.DENY

DEFAULT_POLICIES: tuple[SourcePolicy, ...] = (
    _system("microsoft.com", _A, 10, "Microsoft official downloads"),
    _system("google.com", _A, 10, "Google official downloads"),
    _system("mozilla.org", _A, 10, "Mozilla official downloads"),
    _system("adobe.com", _A, 10, "Adobe official downloads"),
    _system("github.com", _A, 20, "GitHub releases"),
    _system("githubusercontent.com", _A, 20, "GitHub raw content"),
    _system("sourceforge.net", _A, 30, "SourceForge downloads"),
    _system("geogebra.org", _A, 20, "GeoGebra educational software"),
    _system("scratch.mit.edu", _A, 20, "MIT Scratch programming"),
    _system("python.org", _A, 20, "Python official downloads"),
    _system("zoom.us", _A, 20, "Zoom video conferencing"),
    _system("libreoffice.org", _A, 20, "LibreOffice suite"),
    _system("videolan.org", _A, 20, "VLC media player"),
    _system("7-zip.org", _A, 20, "7-Zip archiver"),
    _system("notepad-plus-plus.org", _A, 20, "Notepad++ text editor"),
    _system("nvaccess.org", _A, 20, "NVDA screen reader"),
    _system("*.ru", _D, 1, "Block .ru domains (high-risk TLD)"),
    _system("*.cn", _D, 1, "Block .cn domains (high-risk TLD)"),
    _system("*torrent*", _D, 5, "Block torrent-related sites"),
    _system("*crack*", _D, 5, "Block sites with 'crack' in URL"),
    _system("*warez*", _D, 5, "Block warez sites"),
)


def evaluate_policies(url: str | None, policies: list[SourcePolicy]) -> SourceDecision:
    """Evaluate a URL against a rule list.

    Args:
        url: Download URL or local/UNC path.
        policies: Rules in any order; inactive rules are ignored.

    Returns:
        The decision of the first matching active rule by priority, a
        denial for empty URLs or unsupported schemes, or an allow when no
        rule matches.
    """
    logger = get_global_logger()

    if not url:
        return SourceDecision.deny("Empty URL")

    if not is_local_path(url):
        scheme = urlparse(url).scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            return SourceDecision.deny(f"Invalid URL scheme: {scheme or 'none'}")
        if scheme == "http":
            logger.warning("SOURCE", f"Insecure HTTP download URL: {url}")

    active = sorted((p for p in policies if p.is_active), key=lambda p: p.priority)
    for policy in active:
        if policy.matches(url):
            decision = SourceDecision.by_policy(policy)
            logger.verbose("SOURCE", f"{url} -> {decision.reason}")
            return decision

    logger.debug("SOURCE", f"No matching policy for {url}")
    return SourceDecision.allow("No blocking policy found")


class SourcePolicyEngine:
    """Source policy evaluation and administration on top of a repository.

    Args:
        repository: Where rules are stored.
        audit: Sink for policy changes. Defaults to LoggerAuditSink.
    """

    def __init__(self, repository: PolicyRepository, audit: AuditSink | None = None):
        self.repository = repository
        self.audit = audit or LoggerAuditSink()

    def bootstrap_defaults(self) -> int:
        """Store DEFAULT_POLICIES when the repository has no rules yet.

        Returns:
            Number of rules created (0 when rules already existed).
        """
        if self.repository.list_policies():
            return 0
        for policy in DEFAULT_POLICIES:
            self.repository.save_policy(policy)
        get_global_logger().verbose(
            "SOURCE", f"Created {len(DEFAULT_POLICIES)} default source policies"
        )
        return len(DEFAULT_POLICIES)

    def list_policies(self, active_only: bool = False) -> list[SourcePolicy]:
        return self.repository.list_policies(active_only=active_only)

    def evaluate(self, url: str | None) -> SourceDecision:
        return evaluate_policies(url, self.repository.list_policies(active_only=True))

    def validate_entry_source(self, entry: CatalogEntry) -> SourceDecision:
        """Check an entry's download URL and local path.

        The URL goes through evaluate(). A local path is rejected when it
        contains ``..`` or points into a system directory.
        """
        if entry.download_url:
            decision = self.evaluate(entry.download_url)
            if not decision.allowed:
                return decision

        if entry.local_path:
            normalized = entry.local_path.lower().replace("/", "\\")
            if ".." in normalized or normalized.startswith(RESTRICTED_LOCAL_PREFIXES):
                return SourceDecision.deny(
                    "Local path attempts to access restricted directory"
                )

        return SourceDecision.allow("Download source validated")

    def add_policy(
        self,
        pattern: str,
        direction: PolicyDirection,
        priority: int = 100,
        description: str = "",
        actor: str = "SYSTEM",
    ) -> SourcePolicy:
        """Add a rule.

        Raises:
            CatalogError: If a rule with the same pattern (case-insensitive)
                already exists.
        """
        if not pattern or not pattern.strip():
            raise CatalogError("Policy pattern must not be empty")
        if self.repository.find_policy(pattern) is not None:
            raise CatalogError("Policy with this pattern already exists")

        policy = SourcePolicy(
            pattern=pattern.strip(),
            direction=PolicyDirection(direction),
            priority=priority,
            description=description,
            created_by=actor,
        )
        self.repository.save_policy(policy)
        self.audit.log(
            AuditAction.SECURITY_SETTINGS_CHANGE,
            actor,
            f"Added download source policy: {policy.direction.value.upper()} {policy.pattern}",
            True,
        )
        return policy

    def remove_policy(self, pattern: str, actor: str = "SYSTEM") -> bool:
        """Delete a rule. Returns False when no rule had that pattern."""
        existing = self.repository.find_policy(pattern)
        if existing is None:
            return False
        self.repository.delete_policy(existing.pattern)
        self.audit.log(
            AuditAction.SECURITY_SETTINGS_CHANGE,
            actor,
            f"Removed download source policy: {existing.pattern}",
            True,
        )
        return True

    def toggle_policy(self, pattern: str, actor: str = "SYSTEM") -> SourcePolicy:
        """Flip a rule between active and inactive.

        Raises:
            CatalogError: If no rule has that pattern.
        """
        existing = self.repository.find_policy(pattern)
        if existing is None:
            raise CatalogError(f"Policy not found: {pattern}")
        toggled = replace(
            existing, is_active=not existing.is_active, updated_at=datetime.now(UTC)
        )
        self.repository.save_policy(toggled)
        state = "Enabled" if toggled.is_active else "Disabled"
        self.audit.log(
            AuditAction.SECURITY_SETTINGS_CHANGE,
            actor,
            f"{state} download source policy: {toggled.pattern}",
            True,
        )
        return toggled
