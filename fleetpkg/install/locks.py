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

"""Per-entry mutual exclusion for pipeline runs."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import threading

from fleetpkg.exceptions import EntryBusyError


class EntryLocks:
    """At most one pipeline run per catalog code.

    A second request for a held code fails immediately with EntryBusyError
    instead of queueing behind the first.

    Example:
        ```python
        locks = EntryLocks()
        with locks.hold("vlc"):
            ...  # install vlc
        ```
    """

    def __init__(self) -> None:
        self._held: set[str] = set()
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, code: str) -> Iterator[None]:
        key = code.lower()
        with self._guard:
            if key in self._held:
                raise EntryBusyError(f"Another operation is already running for {code}")
            self._held.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(key)

    def is_held(self, code: str) -> bool:
        with self._guard:
            return code.lower() in self._held
