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

"""Publisher update-check endpoint client.

An entry's ``update_check_url`` returns JSON, an HTML release page, or plain
text. ``update_version_path`` and ``update_download_url_path`` are JSONPath
expressions when they start with ``$`` and CSS selectors otherwise.

The version token is taken from, in order:

1. The JSONPath (JSON responses) or the text of the first element the CSS
   selector matches (HTML responses)
2. The first ``"version": "..."`` field anywhere in the body
3. The first dotted version number (``1.2.3`` or ``1.2.3.4``)

The download URL for the new version comes from the JSONPath or the
``href`` of the selected element (resolved against the check URL), then the
first ``download_url``, ``downloadUrl`` or ``url`` field, then the entry's
current download URL.

Configuration example (catalog YAML):
    ```yaml
    update_check_url: https://api.example.com/app/latest
    update_version_path: "$.release.version"
    update_download_url_path: "$.release.assets[0].url"
    ```

    HTML release page:
    ```yaml
    update_check_url: https://www.example.org/downloads.html
    update_version_path: "span.release-version"
    update_download_url_path: "a.download-msi"
    ```

Note:
    - JSONPath uses the jsonpath-ng library
    - CSS selectors use BeautifulSoup4 with the stdlib html.parser
    - Version comparison is equality only: any version different from the
      installed one is reported as an update
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from jsonpath_ng import parse as jsonpath_parse
import requests

from fleetpkg.exceptions import ConfigError, NetworkError
from fleetpkg.io.download import make_session
from fleetpkg.logging import get_global_logger

if TYPE_CHECKING:
    from fleetpkg.catalog.models import CatalogEntry
    from fleetpkg.config.settings import NetworkSettings

DEFAULT_CHECK_TIMEOUT = 10

_VERSION_FIELD = re.compile(r'"version"\s*:\s*"([^"]+)"')
_VERSION_NUMBER = re.compile(r"(\d+\.\d+\.\d+(?:\.\d+)?)")
_DOWNLOAD_URL_FIELD = re.compile(r'"(?:download_url|downloadUrl|url)"\s*:\s*"([^"]+)"')
_ANY_VERSION = re.compile(r"\d+(?:\.\d+)+")


@dataclass(frozen=True)
class RemoteVersion:
    """What the publisher endpoint advertises."""

    version: str
    download_url: str | None


def _json_or_none(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _is_jsonpath(path: str) -> bool:
    return path.lstrip().startswith("$")


def _find_path(data: Any, path: str | None) -> str | None:
    if data is None or not path:
        return None
    try:
        expr = jsonpath_parse(path)
    except Exception as err:
        raise ConfigError(f"Invalid JSONPath {path!r}: {err}") from err
    matches = expr.find(data)
    if not matches or matches[0].value is None:
        return None
    return str(matches[0].value)


def _select(text: str, selector: str):
    """First element matching a CSS selector, or None."""
    soup = BeautifulSoup(text, "html.parser")
    try:
        return soup.select_one(selector)
    except Exception as err:
        raise ConfigError(f"Invalid CSS selector {selector!r}: {err}") from err


def extract_version(text: str, version_path: str | None = None) -> str | None:
    """Pull a version token out of an update-check response body."""
    if version_path and not _is_jsonpath(version_path):
        element = _select(text, version_path)
        if element is not None:
            element_text = element.get_text(" ", strip=True)
            match = _ANY_VERSION.search(element_text)
            if match:
                return match.group(0)
            if element_text:
                return element_text
    else:
        found = _find_path(_json_or_none(text), version_path)
        if found:
            return found
    match = _VERSION_FIELD.search(text) or _VERSION_NUMBER.search(text)
    return match.group(1) if match else None


def extract_download_url(
    text: str,
    url_path: str | None = None,
    fallback: str | None = None,
    base_url: str | None = None,
) -> str | None:
    """Pull the new version's download URL out of a response body.

    Relative links found through a CSS selector are resolved against
    ``base_url``.
    """
    if url_path and not _is_jsonpath(url_path):
        element = _select(text, url_path)
        if element is not None:
            href = element.get("href") or element.get_text(strip=True)
            if href:
                return urljoin(base_url, href) if base_url else href
    else:
        found = _find_path(_json_or_none(text), url_path)
        if found:
            return found
    match = _DOWNLOAD_URL_FIELD.search(text)
    return match.group(1) if match else fallback


class UpdateChecker:
    """Query an entry's update-check endpoint.

    Args:
        session: requests session to use (one is created when omitted).
        timeout: Connect/read timeout in seconds.
        network: Proxy settings for a created session.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_CHECK_TIMEOUT,
        network: NetworkSettings | None = None,
    ) -> None:
        self.session = session or make_session(network)
        self.timeout = timeout

    def fetch(self, entry: CatalogEntry) -> RemoteVersion | None:
        """Ask the publisher which version is current.

        Returns:
            The advertised version and download URL, or None when the entry
            has no update-check URL.

        Raises:
            NetworkError: Endpoint unreachable, HTTP error, or no version
                token in the response.
            ConfigError: A configured JSONPath or CSS selector does not parse.
        """
        logger = get_global_logger()
        url = entry.update_check_url
        if not url:
            return None

        logger.verbose("UPDATE", f"Checking {entry.name} at {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as err:
            raise NetworkError(
                f"Update check failed for {entry.name}: "
                f"{err.response.status_code} {err.response.reason}"
            ) from err
        except requests.RequestException as err:
            raise NetworkError(f"Update check failed for {entry.name}: {err}") from err

        text = response.text
        logger.debug("UPDATE", f"Response: {text[:200]}")

        version = extract_version(text, entry.update_version_path)
        if version is None:
            raise NetworkError(f"No version found in update check response for {entry.name}")

        download_url = extract_download_url(
            text, entry.update_download_url_path, entry.download_url, base_url=response.url
        )
        logger.verbose("UPDATE", f"Publisher reports {entry.name} {version}")
        return RemoteVersion(version=version, download_url=download_url)
