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

"""Core orchestration for InstallApplications.

This module provides the high-level entry points the CLI and the service
call. install_from_url() ties the pieces together:

1. Build the run context (fresh run id) and the status store
2. Remove status records older than the configured age
3. Fetch and parse the manifest (failure ends the run with exit code 1)
4. Detect machine facts
5. Run the requested phases through the PhaseOrchestrator
   (installing, or only downloading with download_only)

Example:
    ```python
    from installapplications.core import install_from_url

    result = install_from_url("https://example.com/bootstrap/manifest.json")
    print(result.exit_code)
    ```
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta
import os
from pathlib import Path

import requests

from installapplications.conditions import MachineFacts, detect_machine_facts
from installapplications.config import Settings, load_settings
from installapplications.exceptions import ConfigError, ManifestError
from installapplications.fetcher import clear_cache
from installapplications.installers import ProcessRunner
from installapplications.logging import Logger, get_global_logger
from installapplications.manifest import fetch_manifest
from installapplications.orchestrator import ALL_PHASES, PhaseOrchestrator, RunOptions
from installapplications.registry import (
    RegistryBackend,
    default_registry,
    read_repository_url,
)
from installapplications.results import RunResult
from installapplications.status import (
    InstallationPhase,
    InstallationStatus,
    RunContext,
    StatusStore,
)

REPO_URL_ENV = "INSTALLAPPS_REPO_URL"


def resolve_repository(
    repo: str | None,
    registry: RegistryBackend,
    environ: dict[str, str] | None = None,
) -> str:
    """Pick the repository URL: argument, then registry, then environment.

    Raises:
        ConfigError: If no repository URL is configured anywhere.
    """
    if repo:
        return repo
    from_registry = read_repository_url(registry)
    if from_registry:
        return from_registry
    environ = environ if environ is not None else dict(os.environ)
    if environ.get(REPO_URL_ENV):
        return environ[REPO_URL_ENV]
    raise ConfigError(
        "No repository URL given. Pass --repo, run 'bootstrap', or set "
        f"{REPO_URL_ENV}."
    )


def install_from_url(
    manifest_url: str,
    *,
    phases: Iterable[InstallationPhase] = ALL_PHASES,
    settings: Settings | None = None,
    force_refresh: bool = False,
    dry_run: bool = False,
    download_only: bool = False,
    continue_on_error: bool = False,
    wait_for_session: bool = False,
    registry: RegistryBackend | None = None,
    facts: MachineFacts | None = None,
    session: requests.Session | None = None,
    runner: ProcessRunner | None = None,
    logger: Logger | None = None,
) -> RunResult:
    """Fetch a manifest and run the requested installation phases.

    Args:
        manifest_url: Manifest URL.
        phases: Phases to run, in order.
        settings: Effective settings; loaded with load_settings() if None.
        force_refresh: Clear the cache before fetching and re-download.
        dry_run: Evaluate conditions only; nothing is downloaded, installed
            or written to the status store.
        download_only: Download every applicable package but install
            nothing; the status store is not written.
        continue_on_error: Treat required-package failures like any other
            package failure, whatever the configured policy.
        wait_for_session: Hold the userland phase until a user has logged
            on (also enabled by the wait_for_user_session setting).
        registry: Registry backend; default_registry() if None.
        facts: Machine facts; detected if None.
        session: HTTP session for the manifest and packages.
        runner: Process runner for installers.
        logger: Optional logger; defaults to the global logger.

    Returns:
        RunResult. exit_code is 1 if the manifest could not be used or a
        phase failed, else 0. A dry run exits 0 once the manifest was
        retrieved.
    """
    logger = logger or get_global_logger()
    settings = settings or load_settings(logger=logger)
    registry = registry or default_registry()
    runner = runner or ProcessRunner()

    context = RunContext.create(manifest_url)
    store = StatusStore(registry, settings.status_file, context, logger)
    logger.verbose("RUN", f"Run id: {context.run_id}")

    if not (dry_run or download_only):
        store.cleanup_old_statuses(timedelta(hours=settings.status_max_age_hours))

    logger.info(f"Manifest: {manifest_url}")
    try:
        manifest = fetch_manifest(
            manifest_url, session=session, timeout=settings.http_timeout, logger=logger
        )
    except ManifestError as err:
        logger.failure(str(err))
        return RunResult(exit_code=1, error=str(err))

    cache_dir = settings.cache_dir
    if manifest.settings is not None and manifest.settings.download_path:
        cache_dir = Path(os.path.expandvars(manifest.settings.download_path))
    logger.verbose("FETCH", f"Cache directory: {cache_dir}")

    policy = "continue" if continue_on_error else settings.required_failure_policy
    options = RunOptions(
        force_refresh=force_refresh,
        dry_run=dry_run,
        download_only=download_only,
        required_failure_policy=policy,
        gate_userland_on_setup_failure=settings.gate_userland_on_setup_failure,
        package_timeout=settings.package_timeout,
        http_timeout=settings.http_timeout,
        file_release_delay=settings.file_release_delay,
        wait_for_user_session=wait_for_session or settings.wait_for_user_session,
        user_session_timeout=settings.user_session_timeout,
        user_session_poll_interval=settings.user_session_poll_interval,
    )
    orchestrator = PhaseOrchestrator(
        manifest,
        cache_dir=cache_dir,
        status_store=store,
        facts=facts or detect_machine_facts(registry, runner),
        options=options,
        session=session,
        runner=runner,
        logger=logger,
    )
    result = orchestrator.run(phases)

    if dry_run:
        return RunResult(exit_code=0, phases=result.phases)
    if download_only:
        return result

    if manifest.settings is not None:
        if manifest.settings.reboot_required:
            logger.warning("RUN", "Manifest indicates a restart is required")
        no_failures = all(p.failed_count == 0 for p in result.phases)
        if manifest.settings.cleanup and result.exit_code == 0 and no_failures:
            clear_cache(cache_dir, logger=logger)
    return result


def _store(
    settings: Settings | None,
    registry: RegistryBackend | None,
    logger: Logger | None,
) -> StatusStore:
    logger = logger or get_global_logger()
    settings = settings or load_settings(logger=logger)
    return StatusStore(
        registry or default_registry(), settings.status_file, RunContext.create(), logger
    )


def get_status(
    *,
    settings: Settings | None = None,
    registry: RegistryBackend | None = None,
    logger: Logger | None = None,
) -> dict[InstallationPhase, InstallationStatus]:
    """Return the recorded status of every phase."""
    return _store(settings, registry, logger).get_all()


def clear_status(
    *,
    settings: Settings | None = None,
    registry: RegistryBackend | None = None,
    logger: Logger | None = None,
) -> None:
    """Delete every phase status record and the status file."""
    _store(settings, registry, logger).clear_all()


def clear_package_cache(
    *, settings: Settings | None = None, logger: Logger | None = None
) -> bool:
    """Delete the package cache directory.

    Returns:
        True if the cache is now empty.
    """
    logger = logger or get_global_logger()
    settings = settings or load_settings(logger=logger)
    return clear_cache(settings.cache_dir, logger=logger)
