"""Input/Output operations for fleetpkg.

Modules:

download : module
    Artifact retrieval from HTTP(S) URLs and local/UNC paths with retries,
    proxies, atomic writes and cancellation.

Public API:

fetch_artifact : function
    Retrieve an installer into a folder.
make_session : function
    requests.Session with retry/backoff, User-Agent and proxy settings.

Example:
    from pathlib import Path
    from fleetpkg.io import fetch_artifact

    path = fetch_artifact("https://example.com/installer.msi", Path("./tmp"))
"""

from .download import fetch_artifact, is_local_source, make_session

__all__ = ["fetch_artifact", "is_local_source", "make_session"]
