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

"""Chocolatey (.nupkg) packages.

Installing a package-manager package takes four steps:

1. Make sure Chocolatey is present. ``choco --version`` is probed first; if
   it cannot run, the official bootstrap script is executed through
   PowerShell and the process PATH is rebuilt from the machine and user
   environment keys so the new ``choco.exe`` is found.
2. Read the package id and version from the ``.nuspec`` inside the archive,
   falling back to the file name (``<id>-<version>.nupkg``).
3. Ask ``choco list <id>`` whether the package is already present and pick
   ``upgrade`` or ``install``.
4. Run ``choco <action> <id> --source=<cache dir> [--version=<v>] -y
   --ignore-checksums --acceptlicense --confirm --force <arguments>``.

Example:
    ```python
    from installapplications.installers.chocolatey import identity_from_filename

    identity_from_filename("googlechrome-120.0.1.nupkg")
    # ('googlechrome', '120.0.1')
    ```
"""

from __future__ import annotations

from collections.abc import MutableMapping
import os
from pathlib import Path
import zipfile
from xml.etree import ElementTree

from installapplications.exceptions import InstallError
from installapplications.installers.base import register_installer
from installapplications.installers.process import (
    ProcessRunner,
    combined_output,
    log_process_output,
)
from installapplications.logging import Logger
from installapplications.manifest import Package, PackageType
from installapplications.registry import (
    MACHINE_ENVIRONMENT_KEY,
    USER_ENVIRONMENT_KEY,
    RegistryBackend,
    default_registry,
)
from installapplications.results import InstallResult

BOOTSTRAP_URL = "https://community.chocolatey.org/install.ps1"
BOOTSTRAP_SCRIPT = (
    "Set-ExecutionPolicy Bypass -Scope Process -Force; "
    "[System.Net.ServicePointManager]::SecurityProtocol = "
    "[System.Net.ServicePointManager]::SecurityProtocol -bor 3072; "
    f"iex ((New-Object System.Net.WebClient).DownloadString('{BOOTSTRAP_URL}'))"
)
BOOTSTRAP_TIMEOUT = 1800
PROBE_TIMEOUT = 120


def identity_from_filename(filename: str) -> tuple[str, str | None]:
    """Derive (id, version) from a ``<id>-<version>.nupkg`` file name.

    The split happens at the last ``-``, and only if the suffix contains a
    ``.``; otherwise the whole stem is the id and there is no version.
    """
    stem = filename
    if stem.lower().endswith(".nupkg"):
        stem = stem[: -len(".nupkg")]
    index = stem.rfind("-")
    if index > 0 and "." in stem[index + 1 :]:
        return stem[:index], stem[index + 1 :]
    return stem, None


def _child_text(parent: ElementTree.Element, tag: str, ns: str) -> str:
    node = parent.find(f"{{{ns}}}{tag}" if ns else tag)
    return (node.text or "").strip() if node is not None else ""


def read_package_identity(
    nupkg_path: Path, logger: Logger | None = None
) -> tuple[str, str | None]:
    """Read the package id and version from the .nuspec inside a .nupkg.

    Falls back to identity_from_filename() when the archive or the nuspec
    cannot be read for any reason.
    """
    try:
        with zipfile.ZipFile(nupkg_path) as archive:
            nuspec = next(
                (n for n in archive.namelist() if n.lower().endswith(".nuspec")), None
            )
            if nuspec is not None:
                root = ElementTree.fromstring(archive.read(nuspec))
                ns = root.tag[1 : root.tag.index("}")] if root.tag.startswith("{") else ""
                metadata = root.find(f"{{{ns}}}metadata" if ns else "metadata")
                if metadata is not None:
                    package_id = _child_text(metadata, "id", ns)
                    version = _child_text(metadata, "version", ns)
                    if package_id:
                        return package_id, version or None
    except Exception as err:
        # Any unreadable archive (bad zip, corrupt deflate stream, bad XML)
        if logger is not None:
            logger.debug("CHOCO", f"Could not read nuspec from {nupkg_path.name}: {err}")

    return identity_from_filename(nupkg_path.name)


class ChocolateyInstaller:
    """Installer for Chocolatey packages from the local cache."""

    def __init__(
        self,
        registry: RegistryBackend | None = None,
        environ: MutableMapping[str, str] | None = None,
    ) -> None:
        self._registry = registry
        self._environ = environ if environ is not None else os.environ

    def choco_path(self) -> str:
        install_root = self._environ.get("ChocolateyInstall")
        if install_root:
            candidate = Path(install_root) / "bin" / "choco.exe"
            if candidate.exists():
                return str(candidate)
        return "choco.exe"

    def refresh_path(self, logger: Logger) -> None:
        """Rebuild the process PATH from the machine and user environment."""
        registry = self._registry or default_registry()
        try:
            machine = registry.read_value(MACHINE_ENVIRONMENT_KEY, "Path") or ""
            user = registry.read_value(USER_ENVIRONMENT_KEY, "Path") or ""
        except OSError as err:
            logger.warning("CHOCO", f"Could not refresh PATH: {err}")
            return
        combined = ";".join(p for p in (str(machine), str(user)) if p)
        if combined:
            self._environ["PATH"] = os.path.expandvars(combined)
            logger.debug("CHOCO", "Environment PATH refreshed")

    def ensure_installed(self, runner: ProcessRunner, logger: Logger) -> bool:
        """Bootstrap Chocolatey if it is not available.

        Returns:
            True if Chocolatey was installed by this call, False if it was
            already present.

        Raises:
            InstallError: If the bootstrap script exits non-zero.
        """
        try:
            probe = runner.run([self.choco_path(), "--version"], timeout=PROBE_TIMEOUT)
            if probe.ok:
                logger.verbose("CHOCO", f"Chocolatey {probe.stdout.strip()} is installed")
                return False
        except InstallError as err:
            logger.debug("CHOCO", f"choco.exe not available: {err}")

        logger.info("Installing Chocolatey package manager")
        result = runner.run(
            [
                "powershell.exe",
                "-NoProfile",
                "-ExecutionPolicy",
                "Bypass",
                "-Command",
                BOOTSTRAP_SCRIPT,
            ],
            timeout=BOOTSTRAP_TIMEOUT,
        )
        log_process_output(logger, "CHOCO", result)
        if not result.ok:
            raise InstallError(
                f"Chocolatey installation failed with exit code: {result.exit_code}"
            )
        logger.verbose("CHOCO", "Chocolatey installed successfully")
        self.refresh_path(logger)
        return True

    def is_installed(self, runner: ProcessRunner, package_id: str, logger: Logger) -> bool:
        """Return True if ``choco list`` reports the package.

        Any failure to answer counts as "not installed".
        """
        try:
            result = runner.run(
                [self.choco_path(), "list", package_id], timeout=PROBE_TIMEOUT
            )
        except InstallError as err:
            logger.warning("CHOCO", f"Could not check if '{package_id}' is installed: {err}")
            return False

        if not result.ok:
            logger.warning(
                "CHOCO", f"choco list failed with exit code {result.exit_code}"
            )
            log_process_output(logger, "CHOCO", result)
            return False

        for line in result.stdout.splitlines():
            text = line.strip()
            if (
                text.lower().startswith(package_id.lower())
                and "packages installed" not in text
                and "Chocolatey" not in text
            ):
                logger.debug("CHOCO", f"'{package_id}' is installed: {text}")
                return True
        return False

    def build_command(
        self,
        action: str,
        package_id: str,
        source_dir: Path,
        version: str | None,
        arguments: tuple[str, ...] = (),
    ) -> list[str]:
        cmd = [self.choco_path(), action, package_id, f"--source={source_dir}"]
        if version:
            cmd.append(f"--version={version}")
        cmd += [
            "-y",
            "--ignore-checksums",
            "--acceptlicense",
            "--confirm",
            "--force",
            *arguments,
        ]
        return cmd

    def install(
        self,
        local_path: Path,
        package: Package,
        *,
        runner: ProcessRunner,
        timeout: float | None,
        logger: Logger,
    ) -> InstallResult:
        self.ensure_installed(runner, logger)

        package_id, version = read_package_identity(local_path, logger)
        if not package_id:
            raise InstallError(f"Cannot determine package id for {local_path.name}")
        logger.verbose("CHOCO", f"Package id: {package_id}, version: {version or 'latest'}")

        action = "upgrade" if self.is_installed(runner, package_id, logger) else "install"
        cmd = self.build_command(
            action, package_id, local_path.parent, version, package.arguments
        )
        logger.verbose("CHOCO", f"Running: {' '.join(cmd)}")
        result = runner.run(cmd, timeout=timeout)
        log_process_output(logger, "CHOCO", result)

        return InstallResult(
            exit_code=result.exit_code,
            success=result.ok,
            output=combined_output(result),
        )


register_installer(PackageType.PACKAGE_MANAGER, ChocolateyInstaller)
