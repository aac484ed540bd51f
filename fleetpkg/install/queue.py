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

"""Bounded worker pool for pipeline runs.

Example:
    ```python
    queue = InstallQueue(pipeline, workers=2)
    future, attempt = queue.submit("vlc", ActionKind.INSTALL, actor="admin")
    attempt.cancel.cancel()          # stop it
    result = future.result()         # InstallationResult, never raises
    queue.shutdown()
    ```
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor

from fleetpkg.install.pipeline import ActionKind, InstallationAttempt, InstallationPipeline
from fleetpkg.progress import ProgressCallback
from fleetpkg.results import InstallationResult


class InstallQueue:
    """Run install/uninstall/update jobs on a fixed number of threads.

    Args:
        pipeline: Pipeline that executes each job.
        workers: Maximum number of concurrent runs.
    """

    def __init__(self, pipeline: InstallationPipeline, workers: int = 2) -> None:
        self.pipeline = pipeline
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, workers), thread_name_prefix="fleetpkg-install"
        )
        self._operations = {
            ActionKind.INSTALL: pipeline.install,
            ActionKind.UNINSTALL: pipeline.uninstall,
            ActionKind.UPDATE: pipeline.update,
            ActionKind.ROLLBACK: pipeline.reinstall_previous,
        }

    def submit(
        self,
        code: str,
        action: ActionKind,
        actor: str = "SYSTEM",
        on_progress: ProgressCallback | None = None,
    ) -> tuple[Future[InstallationResult], InstallationAttempt]:
        """Queue a run.

        Returns:
            The future holding the InstallationResult and the attempt whose
            token cancels the run (also while it is still queued).
        """
        attempt = InstallationAttempt.create(code, action, actor, on_progress)
        operation = self._operations[action]
        future = self._executor.submit(operation, code, actor, attempt)
        return future, attempt

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def __enter__(self) -> InstallQueue:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
