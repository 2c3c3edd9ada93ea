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

"""Executable (.exe) packages, run directly with the manifest arguments."""

from __future__ import annotations

from pathlib import Path

from installapplications.installers.base import register_installer
from installapplications.installers.process import (
    ProcessRunner,
    combined_output,
    log_process_output,
)
from installapplications.logging import Logger
from installapplications.manifest import Package, PackageType
from installapplications.results import InstallResult


class ExeInstaller:
    """Installer that runs the downloaded executable in the current context."""

    def install(
        self,
        local_path: Path,
        package: Package,
        *,
        runner: ProcessRunner,
        timeout: float | None,
        logger: Logger,
    ) -> InstallResult:
        cmd = [str(local_path), *package.arguments]
        logger.verbose("EXE", f"Running: {' '.join(cmd)}")
        result = runner.run(cmd, timeout=timeout)
        log_process_output(logger, "EXE", result)
        return InstallResult(
            exit_code=result.exit_code,
            success=result.ok,
            output=combined_output(result),
        )


register_installer(PackageType.EXE, ExeInstaller)
