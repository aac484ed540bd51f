"""
Pytest configuration and shared fixtures for fleetpkg tests.

This module provides reusable fixtures and test doubles used across
the test suite: a catalog store in a temp directory, an entry factory,
fake signature inspector, malware scanner and process runner, and a
fully wired installation pipeline built on them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
import zipfile

import pytest
import yaml

from fleetpkg.audit import MemoryAuditSink
from fleetpkg.catalog import CatalogEntry, CatalogStore, InstallerKind
from fleetpkg.config.settings import InstallSettings, Settings
from fleetpkg.exceptions import FleetPkgError
from fleetpkg.install import InstallationPipeline
from fleetpkg.policy import SourcePolicyEngine
from fleetpkg.process import ProcessOutcome
from fleetpkg.security import GateChain, ScanResult, SignatureInspection, SignatureStatus


class FakeRunner:
    """Process runner double that records commands and returns a fixed outcome."""

    def __init__(self, exit_code: int = 0, output: str = "") -> None:
        self.exit_code = exit_code
        self.output = output
        self.error: FleetPkgError | None = None
        self.calls: list[list[str]] = []

    def __call__(self, command, timeout, *, cancel=None, cwd=None, label=None):
        self.calls.append(list(command))
        if self.error is not None:
            raise self.error
        return ProcessOutcome(exit_code=self.exit_code, output=self.output, duration=0.1)


class FakeInspector:
    """Signature inspector double."""

    def __init__(self, inspection: SignatureInspection) -> None:
        self.inspection = inspection
        self.calls: list[Path] = []

    def inspect(self, path, cancel=None):
        self.calls.append(Path(path))
        return self.inspection


class FakeScanner:
    """Malware scanner double."""

    def __init__(self, result: ScanResult) -> None:
        self.result = result
        self.calls: list[Path] = []

    def scan(self, path, cancel=None):
        self.calls.append(Path(path))
        return self.result


@pytest.fixture
def tmp_test_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary directory for test artifacts.

    Automatically cleaned up after test completion.
    """
    return tmp_path


@pytest.fixture
def create_yaml_file(tmp_test_dir: Path):
    """
    Factory fixture for creating temporary YAML files.

    Usage:
        yaml_path = create_yaml_file("site.yaml", {"key": "value"})
    """

    def _create(filename: str, data: Any) -> Path:
        path = tmp_test_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            yaml.dump(data, f)
        return path

    return _create


@pytest.fixture
def store(tmp_test_dir: Path) -> CatalogStore:
    """Empty catalog store backed by a JSON file in the temp directory."""
    s = CatalogStore(tmp_test_dir / "state" / "catalog.json")
    s.load()
    return s


@pytest.fixture
def artifact_file(tmp_test_dir: Path):
    """
    Factory fixture writing a fake installer into tmp/src.

    Usage:
        path = artifact_file("vlc-3.0.20.msi", b"installer bytes")
    """

    def _create(name: str = "vlc-3.0.20.msi", content: bytes = b"fake msi payload") -> Path:
        path = tmp_test_dir / "src" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    return _create


@pytest.fixture
def unsupported_zip(tmp_test_dir: Path):
    """
    Factory fixture writing a one-member ZIP whose compression method (99,
    AES) the standard zipfile module cannot extract.

    Usage:
        path = unsupported_zip("tool.zip")
    """

    def _create(name: str = "tool.zip") -> Path:
        path = tmp_test_dir / "src" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
            zf.writestr("bin/tool.exe", b"MZ")
        data = bytearray(path.read_bytes())
        # Method field: offset 8 in the local header, 10 in the central directory
        data[8:10] = (99).to_bytes(2, "little")
        central = data.rfind(b"PK\x01\x02")
        data[central + 10 : central + 12] = (99).to_bytes(2, "little")
        path.write_bytes(bytes(data))
        return path

    return _create


@pytest.fixture
def make_entry():
    """
    Factory fixture for catalog entries with sensible defaults.

    Usage:
        entry = make_entry("vlc", local_path="/tmp/vlc.msi", is_approved=True)
    """

    def _make(code: str = "vlc", **overrides: Any) -> CatalogEntry:
        data: dict[str, Any] = {
            "code": code,
            "name": "VLC media player" if code == "vlc" else code.title(),
            "installer_kind": InstallerKind.MSI,
            "publisher": "VideoLAN",
            "current_version": "3.0.20",
            "latest_version": "3.0.20",
        }
        data.update(overrides)
        return CatalogEntry(**data)

    return _make


@pytest.fixture
def add_entry(store: CatalogStore, make_entry):
    """
    Factory fixture that saves an approved entry into the store.

    Usage:
        entry = add_entry("vlc", local_path=str(artifact))
    """

    def _add(code: str = "vlc", **overrides: Any) -> CatalogEntry:
        overrides.setdefault("is_approved", True)
        entry = make_entry(code, **overrides)
        store.save_entry(entry)
        return entry

    return _add


@pytest.fixture
def memory_audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def valid_inspection() -> SignatureInspection:
    return SignatureInspection(
        status=SignatureStatus.VALID,
        signer="VideoLAN",
        issuer="CN=DigiCert Trusted G4 Code Signing RSA4096 SHA384 2021 CA1",
        thumbprint="4B1D9C3A00FF",
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_inspector(valid_inspection: SignatureInspection) -> FakeInspector:
    return FakeInspector(valid_inspection)


@pytest.fixture
def fake_scanner() -> FakeScanner:
    return FakeScanner(ScanResult.clean("FakeScanner"))


@pytest.fixture
def engine(store: CatalogStore, memory_audit: MemoryAuditSink) -> SourcePolicyEngine:
    """Source policy engine with the default rules installed."""
    e = SourcePolicyEngine(store, memory_audit)
    e.bootstrap_defaults()
    return e


@pytest.fixture
def gates(engine, fake_inspector, fake_scanner, memory_audit) -> GateChain:
    return GateChain(engine, fake_inspector, fake_scanner, memory_audit)


@pytest.fixture
def settings(store: CatalogStore, tmp_test_dir: Path) -> Settings:
    return Settings(
        catalog_path=store.store_file,
        install=InstallSettings(
            temp_dir=tmp_test_dir / "work",
            install_base=tmp_test_dir / "apps",
            timeout_minutes=1,
        ),
    )


@pytest.fixture
def pipeline(store, gates, settings, memory_audit, fake_runner) -> InstallationPipeline:
    return InstallationPipeline(store, gates, settings, memory_audit, runner=fake_runner)
