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

"""
Configuration loader for fleetpkg.

This module loads a site configuration file and merges it on top of the
organization defaults, producing one effective configuration dict.

Configuration Layers
--------------------
1. **Organization defaults** (defaults/org.yaml)
   - Found by walking upward from the site config's directory
   - Optional; shared network, security and scheduler settings

2. **Site configuration** (any YAML file, e.g. sites/lab-a.yaml)
   - Always required
   - Overrides organization defaults

Merge Behavior
--------------
The loader performs deep merging with "last wins" semantics:
  - **Dicts**: Recursively merged (keys from overlay override base)
  - **Lists**: Completely replaced (NOT appended/extended)
  - **Scalars**: Overwritten (strings, numbers, booleans)

Path Resolution
---------------
Relative paths are resolved against the SITE CONFIG FILE location, so a
site directory can be moved as a unit. Currently resolved paths:
  - paths.catalog
  - paths.temp_dir
  - paths.install_base

Error Handling
--------------
- ConfigError: Missing file, YAML parse errors, empty file or a top-level
  value that is not a mapping
- All errors are chained with "from err" for better debugging

Examples
--------
Basic usage:

    >>> from pathlib import Path
    >>> from fleetpkg.config import load_effective_config
    >>> cfg = load_effective_config(Path("sites/lab-a.yaml"))
    >>> print(cfg["paths"]["catalog"])
    /srv/fleet/sites/state/catalog.json
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from fleetpkg.exceptions import ConfigError
from fleetpkg.logging import get_global_logger

PATH_KEYS = ("catalog", "temp_dir", "install_base")

# -------------------------------
# YAML helpers
# -------------------------------


def _load_yaml_file(p: Path) -> Any:
    """
    Load a YAML file and return the parsed Python object.

    Raises:
      ConfigError - when the file does not exist, is empty or is invalid YAML
    """
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as err:
        raise ConfigError(f"Error parsing YAML: {p}: {err}") from err
    if data is None:
        raise ConfigError(f"YAML file is empty: {p}")
    return data


# -------------------------------
# Merge logic
# -------------------------------


def _deep_merge_dicts(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """
    Deep-merge two dicts with "overlay wins".

    Rules:
      - dict + dict -> deep merge
      - list + list -> overlay REPLACES base (not concatenated)
      - everything else -> overlay overwrites base

    This function does not mutate inputs; returns a new dict.
    """
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


# -------------------------------
# Defaults discovery
# -------------------------------


def _find_org_defaults(start_dir: Path) -> Path | None:
    """
    Walk upward from 'start_dir' looking for 'defaults/org.yaml'.
    Returns the path to org.yaml or None if not found.
    """
    for parent in [start_dir] + list(start_dir.parents):
        candidate = parent / "defaults" / "org.yaml"
        if candidate.exists():
            return candidate
    return None


# -------------------------------
# Path resolution
# -------------------------------


def _resolve_known_paths(cfg: dict[str, Any], config_dir: Path) -> None:
    """
    Resolve relative entries of cfg["paths"] against 'config_dir'.
    Modifies cfg in place.
    """
    paths = cfg.get("paths")
    if not isinstance(paths, dict):
        return
    for key in PATH_KEYS:
        raw_path = paths.get(key)
        if isinstance(raw_path, str) and raw_path:
            p = Path(raw_path)
            if not p.is_absolute():
                paths[key] = str((config_dir / p).resolve())


# -------------------------------
# Public API
# -------------------------------


def load_effective_config(config_path: Path) -> dict[str, Any]:
    """
    Load and merge the effective configuration for a site.

    Steps
      1) Read the site config YAML.
      2) Find defaults/org.yaml by scanning upwards from the config directory.
      3) Merge: org -> site (dicts deep-merge, lists replace).
      4) Resolve known relative paths (relative to the config directory).

    Returns
      A merged configuration dict ready for settings_from_config().

    Raises
      ConfigError on a missing file, YAML parse errors or a non-mapping
      top-level value.
    """
    logger = get_global_logger()

    config_path = Path(config_path).resolve()
    config_dir = config_path.parent

    logger.verbose("CONFIG", f"Loading site config: {config_path}")

    site_obj = _load_yaml_file(config_path)
    if not isinstance(site_obj, dict):
        raise ConfigError(f"Top-level YAML must be a mapping (dict): {config_path}")

    merged: dict[str, Any] = {}
    org_path = _find_org_defaults(config_dir)
    if org_path is not None and org_path != config_path:
        logger.verbose("CONFIG", f"Loading org defaults: {org_path}")
        org_defaults = _load_yaml_file(org_path)
        if isinstance(org_defaults, dict):
            merged = _deep_merge_dicts(merged, org_defaults)

    merged = _deep_merge_dicts(merged, site_obj)
    _resolve_known_paths(merged, config_dir)

    logger.debug("CONFIG", f"Effective config keys: {sorted(merged)}")
    return merged
