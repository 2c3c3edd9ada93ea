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

"""Durable per-phase installation status for InstallApplications.

Status for each phase is written to two places so that detection scripts
and management tools can read it without running this program:

Registry (both the 64-bit and the 32-bit view)
    ``HKLM\\SOFTWARE\\InstallApplications\\Status\\<Phase>`` with the values
    Stage, StartTime, CompletionTime, ExitCode (DWORD), Version, Phase,
    Architecture, BootstrapUrl, LastError, RunId.

JSON file
    ``{"SetupAssistant": {...}, "Userland": {...}}`` with the same field
    names, written atomically (temp file + rename).

Timestamps are local time formatted ``YYYY-MM-DD HH:MM:SS``.

Rules:
    - Every write stores the complete field set.
    - Within one run, stages only move forward
      (Starting -> Running -> Completed | Failed | Skipped).
    - The store never raises. Registry and file failures are logged as
      warnings; unreadable records read back as a default Starting status.
    - Cleanup only deletes terminal records whose completion time is older
      than the maximum age; Running records are never deleted.

Example:
    ```python
    from installapplications.status import (
        InstallationPhase, InstallationStage, RunContext, StatusStore,
    )

    store = StatusStore(registry, status_file, RunContext.create(url))
    store.set_phase_status(InstallationPhase.SETUP_ASSISTANT, InstallationStage.RUNNING)
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import json
import os
from pathlib import Path
import platform
import tempfile
from typing import Any
import uuid

from installapplications import __version__
from installapplications.exceptions import StatusStoreError
from installapplications.logging import Logger, get_global_logger
from installapplications.registry import RegistryBackend, RegistryView

STATUS_KEY = r"SOFTWARE\InstallApplications\Status"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
_VIEWS = (RegistryView.BIT64, RegistryView.BIT32)


class InstallationPhase(Enum):
    """Installation phases, in run order."""

    SETUP_ASSISTANT = "SetupAssistant"
    USERLAND = "Userland"

    @property
    def key(self) -> str:
        """Manifest key for the phase (lowercase)."""
        return self.value.lower()

    @classmethod
    def from_key(cls, key: str) -> InstallationPhase:
        for phase in cls:
            if phase.key == key.strip().lower():
                return phase
        raise ValueError(f"Unknown phase: {key}")


class InstallationStage(Enum):
    """Lifecycle stage of a phase."""

    STARTING = "Starting"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (
            InstallationStage.COMPLETED,
            InstallationStage.FAILED,
            InstallationStage.SKIPPED,
        )

    @property
    def rank(self) -> int:
        if self is InstallationStage.STARTING:
            return 0
        if self is InstallationStage.RUNNING:
            return 1
        return 2


@dataclass(frozen=True)
class RunContext:
    """Values shared by every status write in one invocation.

    Attributes:
        run_id: Unique identifier for this invocation.
        bootstrap_url: Manifest URL the run was started with.
        version: Program version.
        architecture: Process architecture, uppercase (e.g. "X64", "ARM64").
    """

    run_id: str
    bootstrap_url: str = ""
    version: str = __version__
    architecture: str = ""

    @classmethod
    def create(cls, bootstrap_url: str = "") -> RunContext:
        from installapplications.conditions import normalize_architecture

        return cls(
            run_id=str(uuid.uuid4()),
            bootstrap_url=bootstrap_url,
            architecture=normalize_architecture(platform.machine()).upper(),
        )


@dataclass(frozen=True)
class InstallationStatus:
    """Status record for one phase.

    Attributes:
        phase: Phase the record belongs to.
        stage: Current stage.
        start_time: When the phase started, if recorded.
        completion_time: When the phase reached a terminal stage.
        exit_code: 0 on success, non-zero on failure.
        last_error: Error message for failed or gated phases.
        run_id: Identifier of the run that wrote the record.
        architecture: Process architecture recorded by that run.
        bootstrap_url: Manifest URL recorded by that run.
        version: Program version that wrote the record.
    """

    phase: InstallationPhase
    stage: InstallationStage = InstallationStage.STARTING
    start_time: datetime | None = None
    completion_time: datetime | None = None
    exit_code: int = 0
    last_error: str = ""
    run_id: str = ""
    architecture: str = ""
    bootstrap_url: str = ""
    version: str = ""
    exists: bool = field(default=False, compare=False)

    def to_record(self) -> dict[str, str | int]:
        """Return the registry/JSON representation."""
        return {
            "Stage": self.stage.value,
            "StartTime": _format_time(self.start_time),
            "CompletionTime": _format_time(self.completion_time),
            "ExitCode": self.exit_code,
            "Version": self.version,
            "Phase": self.phase.key,
            "Architecture": self.architecture,
            "BootstrapUrl": self.bootstrap_url,
            "LastError": self.last_error,
            "RunId": self.run_id,
        }

    @classmethod
    def from_record(
        cls, phase: InstallationPhase, record: dict[str, Any]
    ) -> InstallationStatus:
        """Build a status from a stored record.

        Raises:
            StatusStoreError: If the record is not a valid status record.
        """
        try:
            stage = InstallationStage(str(record["Stage"]))
            exit_code = int(record.get("ExitCode") or 0)
        except (KeyError, ValueError, TypeError) as err:
            raise StatusStoreError(f"Invalid status record for {phase.value}: {err}") from err
        # REG_DWORD reads back unsigned
        if exit_code > 0x7FFFFFFF:
            exit_code -= 0x100000000
        return cls(
            phase=phase,
            stage=stage,
            start_time=_parse_time(record.get("StartTime")),
            completion_time=_parse_time(record.get("CompletionTime")),
            exit_code=exit_code,
            last_error=str(record.get("LastError") or ""),
            run_id=str(record.get("RunId") or ""),
            architecture=str(record.get("Architecture") or ""),
            bootstrap_url=str(record.get("BootstrapUrl") or ""),
            version=str(record.get("Version") or ""),
            exists=True,
        )


def _format_time(value: datetime | None) -> str:
    return value.strftime(TIMESTAMP_FORMAT) if value else ""


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(str(value), TIMESTAMP_FORMAT)
    except ValueError:
        return None


class StatusStore:
    """Reads and writes per-phase status.

    Args:
        registry: Registry backend.
        status_file: Path of the JSON status file.
        context: Run context stamped into every record.
        logger: Optional logger; defaults to the global logger.
        clock: Returns the current local time (injectable for tests).
    """

    def __init__(
        self,
        registry: RegistryBackend,
        status_file: Path,
        context: RunContext,
        logger: Logger | None = None,
        clock=datetime.now,
    ) -> None:
        self._registry = registry
        self._status_file = Path(status_file)
        self._context = context
        self._logger = logger or get_global_logger()
        self._clock = clock
        self._run_stages: dict[InstallationPhase, InstallationStage] = {}
        self._start_times: dict[InstallationPhase, datetime] = {}

    @property
    def context(self) -> RunContext:
        return self._context

    @property
    def status_file(self) -> Path:
        return self._status_file

    @staticmethod
    def key_path(phase: InstallationPhase) -> str:
        return f"{STATUS_KEY}\\{phase.value}"

    # -------------------------------
    # Writes
    # -------------------------------

    def set_phase_status(
        self,
        phase: InstallationPhase,
        stage: InstallationStage,
        error_message: str = "",
        exit_code: int = 0,
    ) -> bool:
        """Record a phase transition in the registry and the status file.

        Args:
            phase: Phase to update.
            stage: New stage.
            error_message: Stored as LastError.
            exit_code: Stored as ExitCode.

        Returns:
            True if the transition was accepted. Failures to persist are
            logged as warnings and do not change the return value.
        """
        current = self._run_stages.get(phase)
        if current is not None and (
            current.is_terminal or stage.rank < current.rank
        ):
            self._logger.warning(
                "STATUS",
                f"Ignoring {phase.value} transition {current.value} -> {stage.value}",
            )
            return False

        now = self._clock().replace(microsecond=0)
        if stage is InstallationStage.STARTING or phase not in self._start_times:
            self._start_times[phase] = now
        self._run_stages[phase] = stage

        status = InstallationStatus(
            phase=phase,
            stage=stage,
            start_time=self._start_times[phase],
            completion_time=now if stage.is_terminal else None,
            exit_code=exit_code,
            last_error=error_message,
            run_id=self._context.run_id,
            architecture=self._context.architecture,
            bootstrap_url=self._context.bootstrap_url,
            version=self._context.version,
        )
        record = status.to_record()

        for view in _VIEWS:
            try:
                self._registry.write_values(self.key_path(phase), record, view)
            except OSError as err:
                self._logger.warning(
                    "STATUS",
                    f"Could not write {phase.value} status to {view.value}-bit registry: {err}",
                )

        try:
            self._update_file(phase.value, record)
        except StatusStoreError as err:
            self._logger.warning("STATUS", str(err))

        self._logger.verbose("STATUS", f"{phase.value} -> {stage.value}")
        return True

    def delete_phase_status(self, phase: InstallationPhase) -> None:
        """Remove a phase's record from the registry and the status file."""
        for view in _VIEWS:
            try:
                self._registry.delete_key(self.key_path(phase), view)
            except OSError as err:
                self._logger.warning(
                    "STATUS", f"Could not delete {phase.value} registry status: {err}"
                )
        try:
            self._update_file(phase.value, None)
        except StatusStoreError as err:
            self._logger.warning("STATUS", str(err))

    def clear_all(self) -> None:
        """Remove every phase record and the status file."""
        for phase in InstallationPhase:
            self.delete_phase_status(phase)
        try:
            self._status_file.unlink(missing_ok=True)
        except OSError as err:
            self._logger.warning("STATUS", f"Could not delete {self._status_file}: {err}")

    def cleanup_old_statuses(self, max_age: timedelta) -> list[InstallationPhase]:
        """Delete terminal records completed longer ago than ``max_age``.

        Returns:
            Phases whose records were deleted.
        """
        now = self._clock()
        removed = []
        for phase in InstallationPhase:
            status = self.get_phase_status(phase)
            if not status.exists or status.stage is InstallationStage.RUNNING:
                continue
            if status.completion_time is None:
                continue
            if now - status.completion_time > max_age:
                self._logger.verbose(
                    "STATUS",
                    f"Removing {phase.value} status completed {status.completion_time}",
                )
                self.delete_phase_status(phase)
                removed.append(phase)
        return removed

    # -------------------------------
    # Reads
    # -------------------------------

    def get_phase_status(self, phase: InstallationPhase) -> InstallationStatus:
        """Read a phase status: 64-bit view, 32-bit view, then the file.

        Returns:
            The first readable record, or a default Starting status.
        """
        for view in _VIEWS:
            try:
                values = self._registry.read_values(self.key_path(phase), view)
                if values:
                    return InstallationStatus.from_record(phase, values)
            except (OSError, StatusStoreError) as err:
                self._logger.debug("STATUS", f"{view.value}-bit read failed: {err}")

        try:
            record = self._read_file().get(phase.value)
            if isinstance(record, dict):
                return InstallationStatus.from_record(phase, record)
        except StatusStoreError as err:
            self._logger.debug("STATUS", str(err))

        return InstallationStatus(phase=phase)

    def get_all(self) -> dict[InstallationPhase, InstallationStatus]:
        return {phase: self.get_phase_status(phase) for phase in InstallationPhase}

    # -------------------------------
    # Status file
    # -------------------------------

    def _read_file(self) -> dict[str, Any]:
        if not self._status_file.exists():
            return {}
        try:
            data = json.loads(self._status_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as err:
            raise StatusStoreError(f"Unreadable status file {self._status_file}: {err}") from err
        if not isinstance(data, dict):
            raise StatusStoreError(f"Status file {self._status_file} is not an object")
        return data

    def _update_file(self, phase_name: str, record: dict[str, Any] | None) -> None:
        try:
            data = self._read_file()
        except StatusStoreError as err:
            # Corrupt file is replaced by a fresh one
            self._logger.warning("STATUS", f"{err}; rewriting")
            data = {}

        if record is None:
            if phase_name not in data:
                return
            data.pop(phase_name)
        else:
            data[phase_name] = record

        try:
            self._status_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".status-", suffix=".tmp", dir=self._status_file.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                    f.write("\n")
                os.replace(tmp_name, self._status_file)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as err:
            raise StatusStoreError(
                f"Could not write status file {self._status_file}: {err}"
            ) from err
