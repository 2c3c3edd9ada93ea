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

"""Windows Installer (.msi) packages.

Runs ``msiexec.exe /i <path> /quiet /norestart <arguments>``. Any non-zero
exit code is a failure. Exit codes 1641 and 3010 (restart initiated or
required) also log a restart warning.
"""

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

MSI_RESTART_CODES = frozenset({1641, 3010})


class MsiInstaller:
    """Installer for MSI packages."""

    def build_command(self, local_path: Path, package: Package) -> list[str]:
        return [
            "msiexec.exe",
            "/i",
            str(local_path),
            "/quiet",
            "/norestart",
            *package.arguments,
        ]

    def install(
        self,
        local_path: Path,
        package: Package,
        *,
        runner: ProcessRunner,
        timeout: float | None,
        logger: Logger,
    ) -> InstallResult:
        cmd = self.build_command(local_path, package)
        logger.verbose("MSI", f"Running: {' '.join(cmd)}")
        result = runner.run(cmd, timeout=timeout)
        log_process_output(logger, "MSI", result)

        if result.exit_code in MSI_RESTART_CODES:
            logger.warning("MSI", f"{package.name} requires a restart (exit {result.exit_code})")
        return InstallResult(
            exit_code=result.exit_code,
            success=result.ok,
            output=combined_output(result),
        )


register_installer(PackageType.MSI, MsiInstaller)
