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

"""Installer strategy protocol and registry for InstallApplications.

This module defines the foundational components for installer dispatch:

- InstallerStrategy protocol: Interface that all installers implement
- Installer registry: Global dict mapping package types to implementations
- Registration and lookup functions: register_installer() and get_installer()

Design Philosophy:
    - Strategies are Protocol classes (structural subtyping, not inheritance)
    - Registration happens at module import time (strategies self-register)
    - Each strategy is stateless and instantiated on demand
    - Unknown package types have no strategy; get_installer() returns None
      and the caller skips the package

Example:
    Implementing a custom installer:
        ```python
        from installapplications.installers.base import register_installer
        from installapplications.manifest import PackageType

        class SilentExeInstaller:
            def install(self, local_path, package, *, runner, timeout, logger):
                result = runner.run([str(local_path), "/S"], timeout=timeout)
                return InstallResult(result.exit_code, result.ok)

        # Overrides the built-in EXE installer
        register_installer(PackageType.EXE, SilentExeInstaller)
        ```
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from installapplications.logging import Logger
from installapplications.manifest import Package, PackageType
from installapplications.results import InstallResult

if TYPE_CHECKING:
    from installapplications.installers.process import ProcessRunner

# -------------------------------
# Strategy Protocol
# -------------------------------


class InstallerStrategy(Protocol):
    """Protocol for package installers."""

    def install(
        self,
        local_path: Path,
        package: Package,
        *,
        runner: ProcessRunner,
        timeout: float | None,
        logger: Logger,
    ) -> InstallResult:
        """Install a downloaded package.

        Args:
            local_path: Downloaded package file.
            package: Package definition from the manifest.
            runner: Process runner used to start the installer.
            timeout: Seconds before the installer is killed.
            logger: Logger for command lines and captured output.

        Returns:
            InstallResult; a non-zero installer exit code is reported here,
            not raised.

        Raises:
            InstallError: If the installer cannot be started, times out, or a
                prerequisite (package manager bootstrap) fails.
        """
        ...


# -------------------------------
# Strategy Registry
# -------------------------------

_INSTALLER_REGISTRY: dict[PackageType, type[InstallerStrategy]] = {}


def register_installer(
    package_type: PackageType, installer_class: type[InstallerStrategy]
) -> None:
    """Register an installer class for a package type.

    Registering the same type twice overwrites the previous registration
    (allows monkey-patching for tests).
    """
    _INSTALLER_REGISTRY[package_type] = installer_class


def get_installer(package_type: PackageType) -> InstallerStrategy | None:
    """Return an installer instance for a package type, or None if unsupported."""
    installer_class = _INSTALLER_REGISTRY.get(package_type)
    if installer_class is None:
        return None
    return installer_class()


def registered_types() -> list[PackageType]:
    return sorted(_INSTALLER_REGISTRY, key=lambda t: t.value)
