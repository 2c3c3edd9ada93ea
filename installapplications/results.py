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

"""Public API return types for InstallApplications.

This module defines dataclasses for return values from public API functions:
process execution, package installs, phase runs, and manifest validation.

All dataclasses are frozen (immutable) to prevent accidental mutation of
return values.

Example:
    Inspecting a run:
        ```python
        from installapplications.core import install_from_url

        result = install_from_url("https://example.com/manifest.json")
        for phase in result.phases:
            print(phase.phase.value, phase.stage.value, phase.failed_count)
        ```

Note:
    Domain types (Package, InstallationStatus) stay co-located with their
    related logic in manifest.py and status.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from installapplications.status import InstallationPhase, InstallationStage


@dataclass(frozen=True)
class ProcessResult:
    """Result from running an external process.

    Attributes:
        args: Command line that was executed.
        exit_code: Process exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    args: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class InstallResult:
    """Result from installing one package.

    Attributes:
        exit_code: Installer exit code (0 when skipped).
        success: True when the installer reported success.
        output: Combined captured output, for logging.
        skipped: True when no installer ran (unknown package type).
    """

    exit_code: int
    success: bool
    output: str = ""
    skipped: bool = False


@dataclass(frozen=True)
class PackageOutcome:
    """Outcome of one package within a phase.

    Attributes:
        name: Package name from the manifest.
        status: One of "installed", "downloaded", "failed", "skipped",
            "dry-run".
        message: Skip reason or failure description (empty on success).
    """

    name: str
    status: str
    message: str = ""


@dataclass(frozen=True)
class PhaseResult:
    """Result from running one installation phase.

    Attributes:
        phase: Phase that ran.
        stage: Final stage reached (Completed, Failed, or Skipped).
        outcomes: Per-package outcomes in processing order.
        error: Error message when the phase failed or was skipped by gating.
    """

    phase: InstallationPhase
    stage: InstallationStage
    outcomes: tuple[PackageOutcome, ...] = ()
    error: str = ""

    def _count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def installed_count(self) -> int:
        return self._count("installed")

    @property
    def downloaded_count(self) -> int:
        return self._count("downloaded")

    @property
    def failed_count(self) -> int:
        return self._count("failed")

    @property
    def skipped_count(self) -> int:
        return self._count("skipped")


@dataclass(frozen=True)
class RunResult:
    """Result from a complete install run.

    Attributes:
        exit_code: 0 on success, 1 when a phase failed or the manifest was
            unusable.
        phases: Results for each phase that was considered.
        error: Fatal error message (manifest acquisition), if any.
    """

    exit_code: int
    phases: tuple[PhaseResult, ...] = ()
    error: str = ""


@dataclass(frozen=True)
class ValidationResult:
    """Result from validating a manifest.

    Attributes:
        status: Validation status ("valid" or "invalid").
        errors: List of error messages (empty if valid).
        warnings: List of warning messages.
        package_count: Number of packages across both phases.
        source: URL or file path that was validated.
    """

    status: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    package_count: int = 0
    source: str = ""


@dataclass(frozen=True)
class BootstrapResult:
    """Result from bootstrapping a machine.

    Attributes:
        repository_url: Repository URL recorded in the registry.
        service_name: Name of the startup task.
        service_installed: True if the service was created by this call.
        service_started: True if the service was started by this call.
    """

    repository_url: str
    service_name: str
    service_installed: bool = False
    service_started: bool = False
