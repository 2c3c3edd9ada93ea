"""Installer dispatch for InstallApplications.

This package maps each package type to an installer strategy and runs it:

Available Installers:
    msi : MsiInstaller
        ``msiexec.exe /i <path> /quiet /norestart <arguments>``
    exe : ExeInstaller
        ``<path> <arguments>``
    powershell : PowerShellInstaller
        ``powershell.exe -ExecutionPolicy Bypass -File <path> <arguments>``
    package-manager : ChocolateyInstaller
        Bootstraps Chocolatey if needed, then ``choco install|upgrade``.

Packages of an unknown type are not an error: install_package() logs a
warning and returns a skipped InstallResult.

Example:
    ```python
    from installapplications.installers import install_package

    result = install_package(local_path, package, timeout=3600)
    if not result.success:
        print(f"exit code {result.exit_code}")
    ```
"""

from __future__ import annotations

from pathlib import Path

from installapplications.logging import Logger, get_global_logger
from installapplications.manifest import Package
from installapplications.results import InstallResult

from . import (
    chocolatey,  # noqa: F401
    exe,  # noqa: F401
    msi,  # noqa: F401
    powershell,  # noqa: F401
)
from .base import InstallerStrategy, get_installer, register_installer
from .process import ProcessRunner


def install_package(
    local_path: Path,
    package: Package,
    *,
    runner: ProcessRunner | None = None,
    timeout: float | None = None,
    logger: Logger | None = None,
) -> InstallResult:
    """Install a downloaded package with the installer for its type.

    Args:
        local_path: Downloaded package file.
        package: Package definition.
        runner: Process runner; a ProcessRunner is created if omitted.
        timeout: Seconds before the installer process is killed.
        logger: Optional logger; defaults to the global logger.

    Returns:
        InstallResult. ``skipped`` is True for unknown package types.

    Raises:
        InstallError: If the installer cannot be started, times out, or a
            prerequisite fails.
    """
    logger = logger or get_global_logger()
    installer = get_installer(package.type)
    if installer is None:
        logger.warning(
            "INSTALL",
            f"Unknown package type '{package.raw_type}' for {package.name}; skipping",
        )
        return InstallResult(exit_code=0, success=False, skipped=True)

    return installer.install(
        local_path,
        package,
        runner=runner or ProcessRunner(),
        timeout=timeout,
        logger=logger,
    )


__all__ = [
    "InstallerStrategy",
    "ProcessRunner",
    "get_installer",
    "install_package",
    "register_installer",
]
