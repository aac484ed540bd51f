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

"""Configuration loading and management for fleetpkg.

This module provides tools for loading and merging YAML-based configuration
files with a layered approach:

  - Organization-wide defaults (defaults/org.yaml)
  - Site-specific configuration (any YAML file below the defaults directory)

The loader performs deep merging where dicts are merged recursively and
lists/scalars are replaced (last wins). Relative paths are resolved against
the site config file location for relocatability.

Public API:

- load_effective_config: Load and merge configuration for a site
- settings_from_config: Build typed Settings from the merged dict

Example:
    Basic usage:

        from pathlib import Path
        from fleetpkg.config import load_effective_config, settings_from_config

        settings = settings_from_config(load_effective_config(Path("site.yaml")))
        print(settings.network.proxies())

"""

from .loader import load_effective_config
from .settings import (
    InstallSettings,
    NetworkSettings,
    ProxySettings,
    SchedulerSettings,
    SecuritySettings,
    ServerType,
    Settings,
    settings_from_config,
)

__all__ = [
    "load_effective_config",
    "settings_from_config",
    "Settings",
    "NetworkSettings",
    "ProxySettings",
    "SecuritySettings",
    "InstallSettings",
    "SchedulerSettings",
    "ServerType",
]
