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

"""Phase orchestration for InstallApplications.

The orchestrator walks the manifest one phase at a time and one package at a
time. Each phase moves through:

    NotStarted -> Starting -> Running -> Completed | Failed | Skipped

and every transition is written to the status store.

Per package, in order:

1. Dependency check: every named dependency must have installed
   successfully earlier in this run, otherwise the package is skipped.
2. Condition check: ``condition`` and ``conditions`` must apply to this
   machine, otherwise the package is skipped with the reason.
3. Type check: a type with no installer is skipped before anything is
   downloaded.
4. Fetch into the cache directory.
5. Install with the strategy for the package type.

A fetch or install failure is logged and recorded, and the loop goes on with
the next package. The phase still completes. A phase fails only when
something escapes the loop itself, or when a required package fails under
the ``abort-phase``/``abort-run`` failure policies.

When waiting for a user session is enabled, the userland phase starts only
once someone has logged on (see installapplications.session).

Example:
    ```python
    orchestrator = PhaseOrchestrator(
        manifest,
        cache_dir=settings.cache_dir,
        status_store=store,
        facts=detect_machine_facts(),
        options=RunOptions(),
    )
    result = orchestrator.run()
    sys.exit(result.exit_code)
    ```
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

import requests

from installapplications.conditions import MachineFacts, skip_reason
from installapplications.exceptions import InstallAppsError, PhaseAbortedError
from installapplications.fetcher import clear_cache, fetch_package
from installapplications.installers import ProcessRunner, get_installer, install_package
from installapplications.logging import Logger, get_global_logger
from installapplications.manifest import Manifest, Package
from installapplications.results import PackageOutcome, PhaseResult, RunResult
from installapplications.session import wait_for_user_session
from installapplications.status import (
    InstallationPhase,
    InstallationStage,
    StatusStore,
)

ALL_PHASES = (InstallationPhase.SETUP_ASSISTANT, InstallationPhase.USERLAND)


@dataclass(frozen=True)
class RunOptions:
    """Options for one orchestrated run.

    Attributes:
        force_refresh: Purge the cache once before any fetch and download
            every package again.
        dry_run: Evaluate applicability only; no downloads, installs, cache
            purge, or status writes.
        download_only: Fetch every applicable package but install nothing;
            no status writes.
        required_failure_policy: "continue", "abort-phase", or "abort-run".
        gate_userland_on_setup_failure: Skip userland when setupassistant
            failed.
        package_timeout: Install timeout when neither the package nor the
            manifest settings give one.
        http_timeout: Per-request HTTP timeout in seconds.
        file_release_delay: Seconds to wait after closing a download.
        wait_for_user_session: Hold the userland phase until a user has
            logged on.
        user_session_timeout: Seconds to wait for a user session; 0 waits
            without limit.
        user_session_poll_interval: Seconds between session checks.
    """

    force_refresh: bool = False
    dry_run: bool = False
    download_only: bool = False
    required_failure_policy: str = "continue"
    gate_userland_on_setup_failure: bool = False
    package_timeout: int = 3600
    http_timeout: int = 60
    file_release_delay: float = 0.1
    wait_for_user_session: bool = False
    user_session_timeout: float = 0
    user_session_poll_interval: float = 10


class PhaseOrchestrator:
    """Drives both installation phases for one manifest.

    Args:
        manifest: Parsed manifest.
        cache_dir: Directory for downloaded packages.
        status_store: Store that receives every phase transition.
        facts: Machine facts for condition checks.
        options: Run options.
        session: HTTP session for downloads (created per package if None).
        runner: Process runner for installers and session checks.
        logger: Optional logger; defaults to the global logger.
        fetch: Fetch function (fetch_package signature).
        install: Install function (install_package signature).
        session_wait: User session wait (wait_for_user_session signature).
    """

    def __init__(
        self,
        manifest: Manifest,
        *,
        cache_dir: Path,
        status_store: StatusStore,
        facts: MachineFacts,
        options: RunOptions | None = None,
        session: requests.Session | None = None,
        runner: ProcessRunner | None = None,
        logger: Logger | None = None,
        fetch: Callable[..., Path] = fetch_package,
        install: Callable[..., object] = install_package,
        session_wait: Callable[..., bool] = wait_for_user_session,
    ) -> None:
        self.manifest = manifest
        self.cache_dir = Path(cache_dir)
        self.status_store = status_store
        self.facts = facts
        self.options = options or RunOptions()
        self.session = session
        self.runner = runner or ProcessRunner()
        self.logger = logger or get_global_logger()
        self._fetch = fetch
        self._install = install
        self._session_wait = session_wait
        self._installed: set[str] = set()
        self._abort_reason: str | None = None

    # -------------------------------
    # Run
    # -------------------------------

    def run(self, phases: Iterable[InstallationPhase] = ALL_PHASES) -> RunResult:
        """Run the given phases in order.

        Returns:
            RunResult with exit code 1 if any phase failed, else 0.
        """
        if self.options.force_refresh and not self.options.dry_run:
            self.logger.verbose("FETCH", "Force refresh: clearing package cache")
            clear_cache(self.cache_dir, logger=self.logger)

        results: list[PhaseResult] = []
        setup_failed = False
        for phase in phases:
            if self._abort_reason is not None:
                results.append(self._skip_phase(phase, self._abort_reason))
                continue
            if (
                phase is InstallationPhase.USERLAND
                and setup_failed
                and self.options.gate_userland_on_setup_failure
            ):
                results.append(
                    self._skip_phase(phase, "SetupAssistant phase failed")
                )
                continue
            if phase is InstallationPhase.USERLAND and not self._user_session_ready():
                results.append(
                    self._skip_phase(
                        phase,
                        "No user session within "
                        f"{self.options.user_session_timeout:g}s",
                    )
                )
                continue

            result = self.run_phase(phase)
            results.append(result)
            if (
                phase is InstallationPhase.SETUP_ASSISTANT
                and result.stage is InstallationStage.FAILED
            ):
                setup_failed = True

        failed = any(r.stage is InstallationStage.FAILED for r in results)
        return RunResult(exit_code=1 if failed else 0, phases=tuple(results))

    def run_phase(self, phase: InstallationPhase) -> PhaseResult:
        """Run one phase and record its transitions.

        Raises:
            Exception: Unexpected errors are recorded as a Failed phase and
                re-raised.
        """
        packages = self.manifest.packages_for(phase.key)
        self.logger.section(f"{phase.value} phase")

        if not packages:
            self.logger.skipped(f"{phase.value}: no packages")
            self._set_status(phase, InstallationStage.SKIPPED)
            return PhaseResult(phase=phase, stage=InstallationStage.SKIPPED)

        self._set_status(phase, InstallationStage.STARTING)
        self._set_status(phase, InstallationStage.RUNNING)

        outcomes: list[PackageOutcome] = []
        try:
            for index, package in enumerate(packages, start=1):
                outcome = self._process_package(package, index, len(packages))
                outcomes.append(outcome)
                self._apply_failure_policy(package, outcome)
        except InstallAppsError as err:
            message = str(err)
            self.logger.failure(f"{phase.value} phase failed: {message}")
            self._set_status(phase, InstallationStage.FAILED, message, 1)
            if isinstance(err, PhaseAbortedError) and err.abort_run:
                self._abort_reason = f"Run aborted: {message}"
            return PhaseResult(
                phase=phase,
                stage=InstallationStage.FAILED,
                outcomes=tuple(outcomes),
                error=message,
            )
        except Exception as err:
            self._set_status(phase, InstallationStage.FAILED, str(err), 1)
            raise

        result = PhaseResult(
            phase=phase, stage=InstallationStage.COMPLETED, outcomes=tuple(outcomes)
        )
        self._set_status(phase, InstallationStage.COMPLETED)
        if self.options.download_only:
            self.logger.info(
                f"{phase.value} complete: {result.downloaded_count} downloaded, "
                f"{result.failed_count} failed, {result.skipped_count} skipped"
            )
        else:
            self.logger.info(
                f"{phase.value} complete: {result.installed_count} installed, "
                f"{result.failed_count} failed, {result.skipped_count} skipped"
            )
        return result

    def _user_session_ready(self) -> bool:
        """Wait for a logged-on user when userland needs one.

        Returns:
            False only when waiting was required and timed out.
        """
        if (
            not self.options.wait_for_user_session
            or self.options.dry_run
            or self.options.download_only
            or not self.manifest.packages_for(InstallationPhase.USERLAND.key)
        ):
            return True
        return self._session_wait(
            self.runner,
            timeout=self.options.user_session_timeout,
            poll_interval=self.options.user_session_poll_interval,
            logger=self.logger,
        )

    # -------------------------------
    # Packages
    # -------------------------------

    def _process_package(self, package: Package, index: int, total: int) -> PackageOutcome:
        self.logger.step(index, total, f"{package.name} ({package.raw_type})")

        missing = [d for d in package.dependencies if d not in self._installed]
        if missing:
            reason = f"missing dependencies: {', '.join(missing)}"
            self.logger.skipped(f"{package.name}: {reason}")
            return PackageOutcome(package.name, "skipped", reason)

        reason = skip_reason(package, self.facts)
        if reason is not None:
            self.logger.skipped(f"{package.name}: {reason}")
            return PackageOutcome(package.name, "skipped", reason)

        if get_installer(package.type) is None:
            reason = f"unsupported package type '{package.raw_type}'"
            self.logger.skipped(f"{package.name}: {reason}")
            return PackageOutcome(package.name, "skipped", reason)

        if self.options.dry_run:
            self.logger.info(f"Would install {package.name} from {package.url}")
            # Dependents of a would-be install are evaluated as satisfied
            self._installed.add(package.name)
            return PackageOutcome(package.name, "dry-run")

        try:
            local_path = self._fetch(
                package,
                self.cache_dir,
                force_refresh=self.options.force_refresh,
                session=self.session,
                timeout=self.options.http_timeout,
                release_delay=self.options.file_release_delay,
                retries=self._retries_for(package),
                logger=self.logger,
            )
            if self.options.download_only:
                self.logger.success(f"{package.name} downloaded to {local_path}")
                self._installed.add(package.name)
                return PackageOutcome(package.name, "downloaded")
            result = self._install(
                local_path,
                package,
                runner=self.runner,
                timeout=self._timeout_for(package),
                logger=self.logger,
            )
        except (InstallAppsError, OSError) as err:
            self.logger.failure(f"{package.name}: {err}")
            return PackageOutcome(package.name, "failed", str(err))

        if result.skipped:
            reason = f"unsupported package type '{package.raw_type}'"
            self.logger.skipped(f"{package.name}: {reason}")
            return PackageOutcome(package.name, "skipped", reason)

        if not result.success:
            message = f"installer exited with code {result.exit_code}"
            self.logger.failure(f"{package.name}: {message}")
            if result.output:
                self.logger.verbose("INSTALL", result.output)
            return PackageOutcome(package.name, "failed", message)

        self.logger.success(f"{package.name} installed")
        self._installed.add(package.name)
        return PackageOutcome(package.name, "installed")

    def _timeout_for(self, package: Package) -> int:
        if package.timeout is not None:
            return package.timeout
        if self.manifest.settings is not None:
            return self.manifest.settings.timeout
        return self.options.package_timeout

    def _retries_for(self, package: Package) -> int | None:
        if package.retries is not None:
            return package.retries
        if self.manifest.settings is not None:
            return self.manifest.settings.retries
        return None

    def _apply_failure_policy(self, package: Package, outcome: PackageOutcome) -> None:
        policy = self.options.required_failure_policy
        if outcome.status != "failed" or not package.required or policy == "continue":
            return
        raise PhaseAbortedError(
            f"required package '{package.name}' failed: {outcome.message}",
            package_name=package.name,
            abort_run=policy == "abort-run",
        )

    # -------------------------------
    # Status
    # -------------------------------

    def _skip_phase(self, phase: InstallationPhase, reason: str) -> PhaseResult:
        self.logger.section(f"{phase.value} phase")
        self.logger.skipped(f"{phase.value}: {reason}")
        self._set_status(phase, InstallationStage.SKIPPED, reason)
        return PhaseResult(phase=phase, stage=InstallationStage.SKIPPED, error=reason)

    def _set_status(
        self,
        phase: InstallationPhase,
        stage: InstallationStage,
        error_message: str = "",
        exit_code: int = 0,
    ) -> None:
        if self.options.dry_run or self.options.download_only:
            return
        self.status_store.set_phase_status(phase, stage, error_message, exit_code)
