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

"""User session detection for the userland phase.

When the program is started at boot, the userland phase has to wait until
someone has logged on. A user session is taken to exist when an
``explorer.exe`` process is running, as reported by::

    tasklist.exe /FI "IMAGENAME eq explorer.exe" /NH /FO CSV

Example:
    ```python
    from installapplications.installers import ProcessRunner
    from installapplications.session import wait_for_user_session

    if wait_for_user_session(ProcessRunner(), timeout=3600):
        print("user logged on")
    ```
"""

from __future__ import annotations

from collections.abc import Callable
import time
from typing import TYPE_CHECKING

from installapplications.exceptions import InstallError
from installapplications.logging import Logger, get_global_logger

if TYPE_CHECKING:
    from installapplications.installers.process import ProcessRunner

SESSION_PROCESS = "explorer.exe"
CHECK_TIMEOUT = 30
ERROR_RETRY_DELAY = 30.0


def user_session_active(runner: ProcessRunner) -> bool:
    """Return True if an explorer.exe process is running.

    Raises:
        InstallError: If tasklist.exe cannot be run or exits non-zero.
    """
    result = runner.run(
        [
            "tasklist.exe",
            "/FI",
            f"IMAGENAME eq {SESSION_PROCESS}",
            "/NH",
            "/FO",
            "CSV",
        ],
        timeout=CHECK_TIMEOUT,
    )
    if not result.ok:
        raise InstallError(f"tasklist.exe failed with exit code {result.exit_code}")
    return f'"{SESSION_PROCESS}"' in result.stdout.lower()


def wait_for_user_session(
    runner: ProcessRunner,
    *,
    timeout: float = 0,
    poll_interval: float = 10,
    logger: Logger | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll until a user session exists.

    A failed check is logged as a warning and retried after a longer delay.

    Args:
        runner: Process runner for tasklist.exe.
        timeout: Seconds to wait; 0 waits without limit.
        poll_interval: Seconds between checks.
        logger: Optional logger; defaults to the global logger.
        sleep: Sleep function.
        clock: Monotonic clock.

    Returns:
        True once a session is found, False if the timeout passed first.
    """
    logger = logger or get_global_logger()
    deadline = clock() + timeout if timeout > 0 else None
    announced = False

    while True:
        delay = poll_interval
        try:
            if user_session_active(runner):
                logger.info("User session detected")
                return True
        except InstallError as err:
            logger.warning("SESSION", f"Error checking for user session: {err}")
            delay = max(poll_interval, ERROR_RETRY_DELAY)

        if not announced:
            logger.info("Waiting for a user to log on")
            announced = True

        if deadline is not None:
            remaining = deadline - clock()
            if remaining <= 0:
                logger.warning("SESSION", f"No user session after {timeout:g}s")
                return False
            delay = min(delay, remaining)
        sleep(delay)
