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

"""Typed settings built from the effective configuration dict.

Components never read the raw config dict; they receive one of the frozen
dataclasses below. Every field has a default, so an empty config is valid.

Configuration layout (all sections optional):

```yaml
paths:
  catalog: state/catalog.json
  temp_dir: tmp
  install_base: C:/Program Files/Fleet
network:
  server_type: auto            # auto | local | cloud
  local_server_path: \\\\fileserver\\deploy
  cloud_server_url: https://deploy.example.org
  connect_timeout: 30
  read_timeout: 60
  proxy:
    enabled: true
    host: proxy.example.org
    port: 3128
    type: HTTP                 # HTTP | SOCKS4 | SOCKS5
security:
  signature_timeout_seconds: 30
  virus_scan:
    enabled: true
    timeout_seconds: 300
    custom_scanner_path: C:/Tools/scan.exe
    custom_scanner_args: --scan {file}
install:
  timeout_minutes: 30
  workers: 2
scheduler:
  interval_minutes: 60
  update_check_timeout: 10
  auto_update_workers: 2
```

Proxy credentials missing from the file are read from the
``FLEETPKG_PROXY_USERNAME`` and ``FLEETPKG_PROXY_PASSWORD`` environment
variables. The CLI loads a ``.env`` file from the working directory first
(python-dotenv), so credentials can stay out of the YAML.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import os
from pathlib import Path
from typing import Any
from urllib.parse import quote, urljoin

from fleetpkg.exceptions import ConfigError

ENV_PREFIX = "FLEETPKG_"


class ServerType(str, Enum):
    AUTO = "auto"
    LOCAL = "local"
    CLOUD = "cloud"


@dataclass(frozen=True)
class ProxySettings:
    enabled: bool = False
    host: str | None = None
    port: int | None = None
    type: str = "HTTP"
    username: str | None = None
    password: str | None = None

    def url(self) -> str | None:
        """Proxy URL in the form requests expects, or None when disabled."""
        if not self.enabled or not self.host:
            return None
        scheme = {"SOCKS5": "socks5h", "SOCKS4": "socks4"}.get(self.type.upper(), "http")
        auth = ""
        if self.username:
            auth = quote(self.username, safe="")
            if self.password:
                auth += ":" + quote(self.password, safe="")
            auth += "@"
        port = f":{self.port}" if self.port else ""
        return f"{scheme}://{auth}{self.host}{port}"


@dataclass(frozen=True)
class NetworkSettings:
    """Network/proxy configuration provider.

    Attributes:
        proxy: Outbound proxy.
        server_type: Where relative download URLs are served from.
        local_server_path: LAN share or URL of the local deployment server.
        cloud_server_url: URL of the cloud deployment server.
        connect_timeout: Download connect timeout in seconds.
        read_timeout: Download read timeout in seconds.
    """

    proxy: ProxySettings = field(default_factory=ProxySettings)
    server_type: ServerType = ServerType.AUTO
    local_server_path: str | None = None
    cloud_server_url: str | None = None
    connect_timeout: float = 30
    read_timeout: float = 60

    def proxies(self) -> dict[str, str]:
        """Proxy mapping for requests; empty when no proxy is configured."""
        url = self.proxy.url()
        if url is None:
            return {}
        return {"http": url, "https": url}

    def resolve_server_base(self) -> str | None:
        """Pick the deployment server base.

        AUTO prefers the local server when its path is reachable from this
        machine and falls back to the cloud URL.
        """
        if self.server_type is ServerType.LOCAL:
            return self.local_server_path
        if self.server_type is ServerType.CLOUD:
            return self.cloud_server_url
        if self.local_server_path and _local_server_reachable(self.local_server_path):
            return self.local_server_path
        return self.cloud_server_url

    def resolve_url(self, url: str) -> str:
        """Join a relative download URL onto the resolved server base.

        Absolute URLs, UNC paths and drive-letter paths are returned as-is.
        """
        if "://" in url or url.startswith("\\\\") or (len(url) > 1 and url[1] == ":"):
            return url
        base = self.resolve_server_base()
        if not base:
            return url
        if "://" in base:
            return urljoin(base.rstrip("/") + "/", url.lstrip("/"))
        return str(Path(base) / url)


def _local_server_reachable(path: str) -> bool:
    if "://" in path:
        return True
    return Path(path).exists()


@dataclass(frozen=True)
class SecuritySettings:
    signature_timeout_seconds: float = 30
    virus_scan_enabled: bool = True
    virus_scan_timeout_seconds: float = 300
    custom_scanner_path: str | None = None
    custom_scanner_args: str | None = None


@dataclass(frozen=True)
class InstallSettings:
    temp_dir: Path | None = None
    install_base: Path | None = None
    timeout_minutes: float = 30
    workers: int = 2


@dataclass(frozen=True)
class SchedulerSettings:
    interval_minutes: float = 60
    update_check_timeout: float = 10
    auto_update_workers: int = 2


@dataclass(frozen=True)
class Settings:
    """All typed settings plus the catalog location."""

    catalog_path: Path
    network: NetworkSettings = field(default_factory=NetworkSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    install: InstallSettings = field(default_factory=InstallSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)


def _section(cfg: dict[str, Any], name: str) -> dict[str, Any]:
    value = cfg.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return value


def _env(key: str) -> str | None:
    return os.getenv(f"{ENV_PREFIX}{key}") or None


def _number(section: dict[str, Any], key: str, default: float, name: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
        raise ConfigError(f"Config value '{name}.{key}' must be a non-negative number")
    return value


def settings_from_config(cfg: dict[str, Any]) -> Settings:
    """Build Settings from an effective configuration dict.

    Args:
        cfg: Output of load_effective_config().

    Returns:
        Settings with defaults for everything not configured.

    Raises:
        ConfigError: If a section is not a mapping or a value has the wrong
            type.
    """
    paths = _section(cfg, "paths")
    network = _section(cfg, "network")
    security = _section(cfg, "security")
    install = _section(cfg, "install")
    scheduler = _section(cfg, "scheduler")

    proxy_cfg = network.get("proxy") or {}
    if not isinstance(proxy_cfg, dict):
        raise ConfigError("Config section 'network.proxy' must be a mapping")

    try:
        server_type = ServerType(str(network.get("server_type", "auto")).lower())
    except ValueError as err:
        raise ConfigError(f"Invalid network.server_type: {err}") from err

    scan_cfg = security.get("virus_scan") or {}
    if not isinstance(scan_cfg, dict):
        raise ConfigError("Config section 'security.virus_scan' must be a mapping")

    temp_dir = paths.get("temp_dir")
    install_base = paths.get("install_base")

    return Settings(
        catalog_path=Path(paths.get("catalog", "state/catalog.json")),
        network=NetworkSettings(
            proxy=ProxySettings(
                enabled=bool(proxy_cfg.get("enabled", False)),
                host=proxy_cfg.get("host"),
                port=proxy_cfg.get("port"),
                type=str(proxy_cfg.get("type", "HTTP")),
                username=proxy_cfg.get("username") or _env("PROXY_USERNAME"),
                password=proxy_cfg.get("password") or _env("PROXY_PASSWORD"),
            ),
            server_type=server_type,
            local_server_path=network.get("local_server_path"),
            cloud_server_url=network.get("cloud_server_url"),
            connect_timeout=_number(network, "connect_timeout", 30, "network"),
            read_timeout=_number(network, "read_timeout", 60, "network"),
        ),
        security=SecuritySettings(
            signature_timeout_seconds=_number(
                security, "signature_timeout_seconds", 30, "security"
            ),
            virus_scan_enabled=bool(scan_cfg.get("enabled", True)),
            virus_scan_timeout_seconds=_number(
                scan_cfg, "timeout_seconds", 300, "security.virus_scan"
            ),
            custom_scanner_path=scan_cfg.get("custom_scanner_path") or None,
            custom_scanner_args=scan_cfg.get("custom_scanner_args") or None,
        ),
        install=InstallSettings(
            temp_dir=Path(temp_dir) if temp_dir else None,
            install_base=Path(install_base) if install_base else None,
            timeout_minutes=_number(install, "timeout_minutes", 30, "install"),
            workers=int(_number(install, "workers", 2, "install")) or 1,
        ),
        scheduler=SchedulerSettings(
            interval_minutes=_number(scheduler, "interval_minutes", 60, "scheduler"),
            update_check_timeout=_number(
                scheduler, "update_check_timeout", 10, "scheduler"
            ),
            auto_update_workers=int(
                _number(scheduler, "auto_update_workers", 2, "scheduler")
            )
            or 1,
        ),
    )
