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
Artifact retrieval for fleetpkg.

Installers come from two kinds of source:

- **HTTP(S) URLs** - streamed through a requests session that retries
  transient failures (429, 500, 502, 503, 504) with exponential backoff,
  uses the configured proxy and separate connect/read timeouts.
- **Local, UNC and file:// paths** - stream-copied from the share.

Both paths write to ``<filename>.part`` and rename on success, so a
half-written artifact never appears under its final name. Both check the
cancellation token between chunks and report ``(bytes_done, total)`` to an
optional callback (total is 0 when unknown).

Constants:

- DEFAULT_CHUNK (int): Stream chunk size (1 MiB).

Example:
    ```python
    from pathlib import Path
    from fleetpkg.io import fetch_artifact

    path = fetch_artifact(
        "https://get.videolan.org/vlc/3.0.21/win64/vlc-3.0.21-win64.msi",
        Path("./tmp"),
    )
    ```

Notes:
    Accept-Encoding is pinned to identity so installers arrive byte-for-byte
    as published and Content-Length matches what is written.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from fleetpkg import __version__
from fleetpkg.exceptions import InstallCancelledError, NetworkError
from fleetpkg.logging import get_global_logger
from fleetpkg.policy.sources import is_local_path

if TYPE_CHECKING:
    from fleetpkg.config.settings import NetworkSettings
    from fleetpkg.progress import CancellationToken

# Stream size per chunk (1 MiB).
DEFAULT_CHUNK = 1024 * 1024

ByteProgress = Callable[[int, int], None]


def _filename_from_cd(content_disposition: str) -> str | None:
    """
    Extract a filename from a Content-Disposition header if present.

    Example header:
      'attachment; filename="setup.msi"'
    """
    if not content_disposition:
        return None
    for part in (s.strip() for s in content_disposition.split(";")):
        if part.lower().startswith("filename="):
            value = part.split("=", 1)[1].strip().strip('"')
            return Path(value).name or None
    return None


def _content_length(value: str | None) -> int:
    """Declared body size, or 0 (unknown) when missing or malformed."""
    try:
        total = int(value or 0)
    except ValueError:
        get_global_logger().debug("HTTP", f"Ignoring invalid Content-Length: {value!r}")
        return 0
    return max(total, 0)


def _filename_from_url(url: str) -> str:
    name = Path(unquote(urlparse(url).path)).name
    return name or "download.bin"


def _local_source_path(source: str) -> Path:
    if source.lower().startswith("file:"):
        parsed = urlparse(source)
        # file://server/share/x.msi carries the server in netloc
        if parsed.netloc and parsed.netloc.lower() != "localhost":
            return Path(url2pathname(f"//{parsed.netloc}{parsed.path}"))
        return Path(url2pathname(parsed.path))
    return Path(source)


def is_local_source(source: str) -> bool:
    """True for drive-letter, UNC and absolute paths and file:// URLs."""
    if is_local_path(source) or source.lower().startswith("file:"):
        return True
    return "://" not in source and Path(source).is_absolute()


def make_session(network: NetworkSettings | None = None) -> requests.Session:
    """
    Create a requests.Session with retry/backoff defaults.

    - Retries on common transient status codes.
    - Applies exponential backoff.
    - Sets a User-Agent identifying fleetpkg.
    - Routes through the configured proxy, if any.
    """
    s = requests.Session()
    retries = Retry(
        total=5,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET", "HEAD"),
        raise_on_status=False,
    )
    s.headers.update(
        {
            "User-Agent": f"fleetpkg/{__version__}",
            "Accept-Encoding": "identity",
        }
    )
    s.mount("http://", HTTPAdapter(max_retries=retries))
    s.mount("https://", HTTPAdapter(max_retries=retries))
    if network is not None:
        s.proxies.update(network.proxies())
    return s


def fetch_artifact(
    source: str,
    destination_folder: Path,
    *,
    filename: str | None = None,
    network: NetworkSettings | None = None,
    session: requests.Session | None = None,
    on_progress: ByteProgress | None = None,
    cancel: CancellationToken | None = None,
) -> Path:
    """Retrieve an artifact into destination_folder.

    Args:
        source: HTTP(S) URL, file:// URL, UNC path or local path.
        destination_folder: Folder to save into (created if missing).
        filename: Name for the saved file. Defaults to the
            Content-Disposition name, then the last path segment.
        network: Proxy and timeout settings for HTTP sources.
        session: Session to reuse (a new one is created otherwise).
        on_progress: Called with (bytes_done, total) after each chunk.
        cancel: Checked between chunks.

    Returns:
        Path to the saved artifact.

    Raises:
        NetworkError: Source unreachable, HTTP error or local file missing.
        InstallCancelledError: The token was cancelled mid-transfer.
    """
    destination_folder = Path(destination_folder)
    destination_folder.mkdir(parents=True, exist_ok=True)

    if is_local_source(source):
        return _copy_local(source, destination_folder, filename, on_progress, cancel)
    return _download_http(
        source, destination_folder, filename, network, session, on_progress, cancel
    )


def _download_http(
    url: str,
    destination_folder: Path,
    filename: str | None,
    network: NetworkSettings | None,
    session: requests.Session | None,
    on_progress: ByteProgress | None,
    cancel: CancellationToken | None,
) -> Path:
    logger = get_global_logger()
    timeout = (network.connect_timeout, network.read_timeout) if network else (30, 60)
    own_session = session is None
    session = session or make_session(network)

    logger.verbose("HTTP", f"GET {url}")
    try:
        resp = session.get(url, stream=True, allow_redirects=True, timeout=timeout)
    except requests.RequestException as err:
        if own_session:
            session.close()
        raise NetworkError(f"Download failed for {url}: {err}") from err

    try:
        for hist in resp.history:
            logger.debug(
                "HTTP", f"Redirect {hist.status_code} -> {hist.headers.get('Location', 'unknown')}"
            )
        try:
            resp.raise_for_status()
        except requests.HTTPError as err:
            raise NetworkError(f"Download failed for {url}: {err}") from err

        logger.verbose("HTTP", f"Response: {resp.status_code} {resp.reason}")

        cd_name = _filename_from_cd(resp.headers.get("Content-Disposition", ""))
        name = filename or cd_name or _filename_from_url(resp.url or url)
        target = destination_folder / name
        total = _content_length(resp.headers.get("Content-Length"))

        tmp = target.with_suffix(target.suffix + ".part")
        logger.debug("FILE", f"Downloading to: {tmp}")
        try:
            _write_chunks(resp.iter_content(chunk_size=DEFAULT_CHUNK), tmp, total, on_progress, cancel)
        except requests.RequestException as err:
            raise NetworkError(f"Download interrupted for {url}: {err}") from err
    finally:
        resp.close()
        if own_session:
            session.close()

    tmp.replace(target)
    logger.verbose("FILE", f"Download complete: {target}")
    return target


def _copy_local(
    source: str,
    destination_folder: Path,
    filename: str | None,
    on_progress: ByteProgress | None,
    cancel: CancellationToken | None,
) -> Path:
    logger = get_global_logger()
    src = _local_source_path(source)
    if not src.is_file():
        raise NetworkError(f"Local file not found: {src}")

    target = destination_folder / (filename or src.name)
    tmp = target.with_suffix(target.suffix + ".part")
    total = src.stat().st_size
    logger.verbose("FILE", f"Copying {src} -> {target}")

    try:
        with src.open("rb") as f:
            _write_chunks(iter(lambda: f.read(DEFAULT_CHUNK), b""), tmp, total, on_progress, cancel)
    except OSError as err:
        raise NetworkError(f"Failed to copy {src}: {err}") from err

    tmp.replace(target)
    return target


def _write_chunks(chunks, tmp: Path, total: int, on_progress, cancel) -> None:
    done = 0
    try:
        with tmp.open("wb") as f:
            for chunk in chunks:
                if cancel is not None and cancel.is_cancelled:
                    raise InstallCancelledError("Download cancelled")
                if not chunk:
                    continue
                f.write(chunk)
                done += len(chunk)
                if on_progress is not None:
                    on_progress(done, total)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
