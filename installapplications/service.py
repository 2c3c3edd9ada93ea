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

"""Boot-time service management for InstallApplications.

The service is a scheduled task that runs at system startup as SYSTEM with
highest privileges. The task runs this program's ``install`` command for
both phases with ``--wait-for-session``, reading the repository URL that
``bootstrap`` recorded under ``HKLM\\SOFTWARE\\InstallApplications``. The
Task Scheduler starts plain console programs; the service control manager
only starts programs that register with its dispatcher, which this one
does not.

Commands issued (a thin wrapper around ``schtasks.exe``):

- install:   ``schtasks.exe /Create /TN <name> /TR <command> /SC ONSTART /RU SYSTEM /RL HIGHEST /F``
- uninstall: ``schtasks.exe /Delete /TN <name> /F``
- start:     ``schtasks.exe /Run /TN <name>``
- stop:      ``schtasks.exe /End /TN <name>``
- status:    ``schtasks.exe /Query /TN <name> /FO LIST`` (Status line parsed)

Example:
    ```python
    from installapplications.service import ServiceManager

    manager = ServiceManager("InstallApplicationsService")
    print(manager.status())
    ```
"""

from __future__ import annotations

from collections.abc import Sequence
import subprocess
import sys

from installapplications.config import Settings
from installapplications.exceptions import ConfigError, InstallError
from installapplications.installers.process import ProcessRunner, log_process_output
from installapplications.logging import Logger, get_global_logger
from installapplications.registry import (
    RegistryBackend,
    default_registry,
    write_repository_url,
)
from installapplications.results import BootstrapResult, ProcessResult

SCHTASKS_EXE = "schtasks.exe"
SCHTASKS_TIMEOUT = 120
# schtasks.exe reports a missing task with exit code 1 and this text
TASK_NOT_FOUND_TEXT = "cannot find"
NOT_INSTALLED = "NOT_INSTALLED"
RUNNING = "RUNNING"


def default_service_command() -> list[str]:
    """Command line the startup task runs when none is configured."""
    return [
        sys.executable,
        "-m",
        "installapplications",
        "install",
        "--phase",
        "all",
        "--wait-for-session",
    ]


def parse_task_state(output: str) -> str | None:
    """Extract the task state from ``schtasks.exe /Query /FO LIST`` output.

    Example:
        ```python
        parse_task_state("Status:                               Running")
        # 'RUNNING'
        ```
    """
    for line in output.splitlines():
        name, sep, value = line.partition(":")
        if sep and name.strip().upper() == "STATUS":
            state = value.strip()
            if state:
                return state.upper()
    return None


class ServiceManager:
    """Creates, removes, starts, stops and queries the startup task.

    Args:
        name: Task name.
        runner: Process runner for schtasks.exe.
        logger: Optional logger; defaults to the global logger.
    """

    def __init__(
        self,
        name: str,
        runner: ProcessRunner | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.name = name
        self.runner = runner or ProcessRunner()
        self.logger = logger or get_global_logger()

    def _schtasks(self, *args: str) -> ProcessResult:
        cmd = [SCHTASKS_EXE, *args]
        self.logger.verbose("SERVICE", f"Running: {' '.join(cmd)}")
        result = self.runner.run(cmd, timeout=SCHTASKS_TIMEOUT)
        log_process_output(self.logger, "SERVICE", result)
        return result

    def _checked(self, action: str, *args: str) -> ProcessResult:
        result = self._schtasks(*args)
        if not result.ok:
            detail = (result.stderr.strip() or result.stdout.strip()).splitlines()
            raise InstallError(
                f"Failed to {action} service '{self.name}' "
                f"(exit code {result.exit_code})"
                + (f": {detail[-1].strip()}" if detail else "")
            )
        return result

    def install(self, command: Sequence[str]) -> None:
        """Register the task to run ``command`` at every startup.

        Raises:
            InstallError: If schtasks.exe fails.
        """
        task_command = subprocess.list2cmdline(list(command))
        self._checked(
            "create",
            "/Create",
            "/TN",
            self.name,
            "/TR",
            task_command,
            "/SC",
            "ONSTART",
            "/RU",
            "SYSTEM",
            "/RL",
            "HIGHEST",
            "/F",
        )
        self.logger.success(f"Service '{self.name}' installed")

    def uninstall(self) -> None:
        if self.status() == RUNNING:
            self.stop()
        self._checked("delete", "/Delete", "/TN", self.name, "/F")
        self.logger.success(f"Service '{self.name}' removed")

    def start(self) -> None:
        self._checked("start", "/Run", "/TN", self.name)
        self.logger.success(f"Service '{self.name}' started")

    def stop(self) -> None:
        self._checked("stop", "/End", "/TN", self.name)
        self.logger.success(f"Service '{self.name}' stopped")

    def status(self) -> str:
        """Return the task state (e.g. "READY", "RUNNING") or NOT_INSTALLED.

        Raises:
            InstallError: If schtasks.exe cannot be run or reports another error.
        """
        result = self._schtasks("/Query", "/TN", self.name, "/FO", "LIST")
        if not result.ok:
            output = f"{result.stdout}\n{result.stderr}".lower()
            if TASK_NOT_FOUND_TEXT in output:
                return NOT_INSTALLED
            raise InstallError(
                f"Failed to query service '{self.name}' (exit code {result.exit_code})"
            )
        return parse_task_state(result.stdout) or "UNKNOWN"


def bootstrap(
    repository_url: str,
    settings: Settings,
    *,
    auto_start: bool = True,
    registry: RegistryBackend | None = None,
    runner: ProcessRunner | None = None,
    logger: Logger | None = None,
) -> BootstrapResult:
    """Prepare a machine for unattended installs.

    Records the repository URL in both registry views, registers the startup
    task if it is not registered yet, and runs it now unless ``auto_start``
    is off.

    Args:
        repository_url: Package repository URL.
        settings: Effective settings (service name and command).
        auto_start: Run the task right after registering it.
        registry: Registry backend; default_registry() if None.
        runner: Process runner for schtasks.exe.
        logger: Optional logger; defaults to the global logger.

    Returns:
        BootstrapResult describing what was done.

    Raises:
        ConfigError: If the repository URL cannot be recorded.
        InstallError: If the task cannot be registered or started.
    """
    logger = logger or get_global_logger()
    registry = registry or default_registry()

    logger.step(1, 3, "Recording repository URL")
    try:
        write_repository_url(registry, repository_url)
    except OSError as err:
        raise ConfigError(f"Cannot record repository URL in the registry: {err}") from err

    manager = ServiceManager(settings.service_name, runner=runner, logger=logger)

    logger.step(2, 3, f"Installing service '{settings.service_name}'")
    installed = False
    if manager.status() == NOT_INSTALLED:
        manager.install(settings.service_command or default_service_command())
        installed = True
    else:
        logger.skipped(f"Service '{settings.service_name}' is already installed")

    logger.step(3, 3, "Starting service")
    started = False
    if auto_start:
        if manager.status() == RUNNING:
            logger.skipped(f"Service '{settings.service_name}' is already running")
        else:
            manager.start()
            started = True
    else:
        logger.skipped("Auto-start disabled")

    return BootstrapResult(
        repository_url=repository_url,
        service_name=settings.service_name,
        service_installed=installed,
        service_started=started,
    )
