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

"""External process execution for InstallApplications.

All installers, the package manager, and the service wrapper start processes
through ProcessRunner, so tests can substitute a fake runner instead of
patching subprocess everywhere.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import subprocess

from installapplications.exceptions import InstallError
from installapplications.logging import Logger
from installapplications.results import ProcessResult


class ProcessRunner:
    """Runs a command to completion and captures its output."""

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        """Run a command and wait for it to exit.

        Args:
            args: Program and arguments. No shell is involved.
            timeout: Seconds before the process is killed. None waits forever.
            env: Environment for the child; inherits the current one if None.

        Returns:
            ProcessResult with the exit code and captured output.

        Raises:
            InstallError: If the program cannot be started or times out.
                A non-zero exit code is not an error here.
        """
        argv = [str(a) for a in args]
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
                env=dict(env) if env is not None else None,
                check=False,
            )
        except subprocess.TimeoutExpired as err:
            raise InstallError(f"{argv[0]} timed out after {err.timeout}s") from err
        except OSError as err:
            raise InstallError(f"Failed to start {argv[0]}: {err}") from err

        return ProcessResult(
            args=tuple(argv),
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


def log_process_output(logger: Logger, prefix: str, result: ProcessResult) -> None:
    """Log captured stdout/stderr and the exit code at debug level."""
    if result.stdout.strip():
        for line in result.stdout.strip().splitlines():
            logger.debug(prefix, f"stdout: {line}")
    if result.stderr.strip():
        for line in result.stderr.strip().splitlines():
            logger.debug(prefix, f"stderr: {line}")
    logger.debug(prefix, f"Exit code: {result.exit_code}")


def combined_output(result: ProcessResult) -> str:
    parts = []
    if result.stdout.strip():
        parts.append(f"STDOUT:\n{result.stdout.strip()}")
    if result.stderr.strip():
        parts.append(f"STDERR:\n{result.stderr.strip()}")
    return "\n".join(parts)
