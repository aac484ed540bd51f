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

"""Installer strategies and registry for fleetpkg.

Each InstallerKind maps to a strategy that knows how to put an artifact on
the machine:

- msi: ``msiexec /i <file>`` plus silent args (default ``/qn /norestart``)
- exe: the installer itself plus the entry's silent args
- msix: PowerShell ``Add-AppxPackage``
- zip: extracted in-process into the install directory
- portable: copied in-process into the install directory
- winget / chocolatey: package-manager reference install by entry code;
  these carry no artifact, so download and artifact gates are skipped

Design Philosophy:
    - Strategies are Protocol classes (structural subtyping, not inheritance)
    - Registration happens at module import time
    - Registry is a simple dict keyed by InstallerKind
    - Strategies are stateless; get_installer() returns a new instance

Exit codes from command-based installers:

- 0: success
- 3010: success, restart required
- anything else: ProcessExitError

Example:
    ```python
    from fleetpkg.catalog.models import InstallerKind
    from fleetpkg.install.kinds import get_installer

    strategy = get_installer(InstallerKind.MSI)
    print(strategy.build_command(entry, Path("vlc.msi")))
    ```
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
import shutil
from typing import TYPE_CHECKING, Protocol
import zipfile

from fleetpkg.catalog.models import InstallerKind
from fleetpkg.exceptions import ConfigError, ProcessExitError
from fleetpkg.logging import get_global_logger
from fleetpkg.process import ProcessOutcome, run_process

if TYPE_CHECKING:
    from fleetpkg.catalog.models import CatalogEntry
    from fleetpkg.progress import CancellationToken

RESTART_REQUIRED_EXIT_CODE = 3010

DEFAULT_MSI_ARGS = "/qn /norestart"


def classify_exit_code(exit_code: int) -> bool:
    """Interpret an installer exit code.

    Returns:
        True when a restart is required (3010), False for plain success (0).

    Raises:
        ProcessExitError: For any other code.
    """
    if exit_code == 0:
        return False
    if exit_code == RESTART_REQUIRED_EXIT_CODE:
        get_global_logger().verbose("INSTALL", "Installation completed but requires restart")
        return True
    raise ProcessExitError(exit_code)


@dataclass
class InstallContext:
    """Everything a strategy needs for one install.

    Attributes:
        entry: Entry being installed.
        artifact: Downloaded file (None for package-manager kinds).
        install_dir: Target directory for zip/portable kinds.
        timeout: Seconds before the installer is killed.
        cancel: Cancellation token passed to the process runner.
        runner: Process runner (replaceable in tests).
    """

    entry: CatalogEntry
    artifact: Path | None
    install_dir: Path | None
    timeout: float
    cancel: CancellationToken | None = None
    runner: Callable[..., ProcessOutcome] = run_process


class InstallerStrategy(Protocol):
    """Protocol for installer strategies.

    Attributes:
        needs_artifact: False for package-manager kinds.
        extension: File extension given to the downloaded artifact.
    """

    needs_artifact: bool
    extension: str

    def build_command(self, entry: CatalogEntry, artifact: Path | None) -> list[str] | None:
        """Command line to run, or None for in-process strategies."""
        ...

    def install(self, ctx: InstallContext) -> bool:
        """Install and return True when a restart is required.

        Raises:
            ProcessExitError: Installer reported failure.
            ProcessTimeoutError: Installer ran past the timeout.
            ConfigError: Entry lacks what the strategy needs.
        """
        ...


def _split_args(args: str | None, default: str = "") -> list[str]:
    return (args if args else default).split()


class _CommandInstaller:
    needs_artifact = True
    extension = ""

    def build_command(self, entry: CatalogEntry, artifact: Path | None) -> list[str] | None:
        raise NotImplementedError

    def install(self, ctx: InstallContext) -> bool:
        command = self.build_command(ctx.entry, ctx.artifact)
        outcome = ctx.runner(
            command, ctx.timeout, cancel=ctx.cancel, label=f"{ctx.entry.name} installer"
        )
        for line in outcome.lines:
            get_global_logger().debug("INSTALL", line)
        return classify_exit_code(outcome.exit_code)


class MsiInstaller(_CommandInstaller):
    extension = ".msi"

    def build_command(self, entry: CatalogEntry, artifact: Path | None) -> list[str]:
        return ["msiexec", "/i", str(artifact), *_split_args(entry.silent_args, DEFAULT_MSI_ARGS)]


class ExeInstaller(_CommandInstaller):
    extension = ".exe"

    def build_command(self, entry: CatalogEntry, artifact: Path | None) -> list[str]:
        return [str(artifact), *_split_args(entry.silent_args)]


class MsixInstaller(_CommandInstaller):
    extension = ".msix"

    def build_command(self, entry: CatalogEntry, artifact: Path | None) -> list[str]:
        path = str(artifact).replace("'", "''")
        return [
            "powershell",
            "-NoProfile",
            "-NonInteractive",
            "-Command",
            f"Add-AppxPackage -Path '{path}'",
        ]


class WingetInstaller(_CommandInstaller):
    needs_artifact = False

    def build_command(self, entry: CatalogEntry, artifact: Path | None) -> list[str]:
        return [
            "winget",
            "install",
            "--id",
            entry.code,
            "--silent",
            "--accept-package-agreements",
            "--accept-source-agreements",
        ]


class ChocolateyInstaller(_CommandInstaller):
    needs_artifact = False

    def build_command(self, entry: CatalogEntry, artifact: Path | None) -> list[str]:
        return ["choco", "install", entry.code, "-y", "--no-progress"]


def _require_install_dir(ctx: InstallContext) -> Path:
    if ctx.install_dir is None:
        raise ConfigError(f"No install path configured for {ctx.entry.code}")
    ctx.install_dir.mkdir(parents=True, exist_ok=True)
    return ctx.install_dir


class ZipInstaller:
    needs_artifact = True
    extension = ".zip"

    def build_command(self, entry: CatalogEntry, artifact: Path | None) -> None:
        return None

    def install(self, ctx: InstallContext) -> bool:
        target = _require_install_dir(ctx)
        get_global_logger().verbose("INSTALL", f"Extracting {ctx.artifact} -> {target}")
        try:
            with zipfile.ZipFile(ctx.artifact) as archive:
                for member in archive.infolist():
                    if ctx.cancel is not None:
                        ctx.cancel.raise_if_cancelled()
                    archive.extract(member, target)
        except (zipfile.BadZipFile, OSError, RuntimeError, NotImplementedError) as err:
            raise ProcessExitError(1, f"Failed to extract {ctx.artifact}: {err}") from err
        return False


class PortableInstaller:
    needs_artifact = True
    extension = ".exe"

    def build_command(self, entry: CatalogEntry, artifact: Path | None) -> None:
        return None

    def install(self, ctx: InstallContext) -> bool:
        target = _require_install_dir(ctx)
        name = ctx.entry.executable_name or ctx.artifact.name
        get_global_logger().verbose("INSTALL", f"Copying {ctx.artifact} -> {target / name}")
        try:
            shutil.copy2(ctx.artifact, target / name)
        except OSError as err:
            raise ProcessExitError(1, f"Failed to copy {ctx.artifact}: {err}") from err
        return False


_INSTALLER_REGISTRY: dict[InstallerKind, type[InstallerStrategy]] = {}


def register_installer(kind: InstallerKind, strategy_class: type[InstallerStrategy]) -> None:
    """Register a strategy for an installer kind.

    Registering the same kind twice overwrites the previous registration
    (allows swapping a strategy in tests).
    """
    _INSTALLER_REGISTRY[InstallerKind(kind)] = strategy_class


def get_installer(kind: InstallerKind) -> InstallerStrategy:
    """Return a new strategy instance for an installer kind.

    Raises:
        ConfigError: If no strategy is registered for the kind.
    """
    try:
        return _INSTALLER_REGISTRY[InstallerKind(kind)]()
    except (KeyError, ValueError) as err:
        available = ", ".join(k.value for k in _INSTALLER_REGISTRY)
        raise ConfigError(
            f"Unknown installer kind: {kind!r}. Available: {available or '(none)'}"
        ) from err


def artifact_filename(entry: CatalogEntry, strategy: InstallerStrategy, source: str) -> str:
    """Temp file name for an entry's artifact: ``<code><extension>``.

    Portable artifacts keep the extension of their source.
    """
    extension = strategy.extension
    if entry.installer_kind is InstallerKind.PORTABLE:
        suffix = Path(source.replace("\\", "/").split("?", 1)[0]).suffix
        extension = suffix or extension
    return f"{entry.code}{extension}"


def build_uninstall_command(command: str) -> list[str]:
    """Argument list for a stored uninstall command.

    msiexec invocations and commands with arguments go through ``cmd /c``;
    a bare executable path runs directly.
    """
    command = command.strip()
    if command.lower().startswith("msiexec") or " " in command:
        return ["cmd", "/c", command]
    return [command]


register_installer(InstallerKind.MSI, MsiInstaller)
register_installer(InstallerKind.EXE, ExeInstaller)
register_installer(InstallerKind.MSIX, MsixInstaller)
register_installer(InstallerKind.ZIP, ZipInstaller)
register_installer(InstallerKind.PORTABLE, PortableInstaller)
register_installer(InstallerKind.WINGET, WingetInstaller)
register_installer(InstallerKind.CHOCOLATEY, ChocolateyInstaller)
