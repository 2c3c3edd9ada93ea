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

"""Command-line interface for InstallApplications.

This module provides the main CLI entry point, offering commands for
installing packages from a manifest, bootstrapping a machine, validating
manifests, and managing the boot-time service (a startup task).

Commands:

    install: Install one or both phases from a repository
    bootstrap: Record the repository, register and start the startup task
    validate: Validate a manifest (no installs)
    service: Install, remove, start, stop, or query the startup task

Global options (no command):

    --url URL: Run both phases from a manifest URL
    --status: Show recorded phase status
    --clear-status: Delete all phase status records
    --clear-cache: Delete the package cache

Example:
    Run both phases from a manifest URL:
        ```bash
        $ installapplications --url https://example.com/bootstrap/manifest.json
        ```

    Run the userland phase from the bootstrapped repository:
        ```bash
        $ installapplications install --phase userland
        ```

    Preview what would be installed:
        ```bash
        $ installapplications install --repo https://example.com/bootstrap --dry-run
        ```

    Download every package without installing:
        ```bash
        $ installapplications install --repo https://example.com/bootstrap --download-only
        ```

    Validate a local manifest and check every package URL:
        ```bash
        $ installapplications validate --file manifest.json --check-urls
        ```

Exit Codes:

- 0: Success
- 1: Error (configuration, manifest, or phase failure)

Note:
    Each command has its own handler function (cmd_<command>).
    Install runs write a per-run log file to the configured log directory.
    Verbose mode shows full tracebacks on errors for debugging.
    Debug mode implies verbose mode.
"""

from __future__ import annotations

import argparse
import getpass
from importlib.metadata import version
import os
from pathlib import Path
import platform
import sys

from installapplications import __version__
from installapplications.config import Settings, load_settings
from installapplications.core import (
    clear_package_cache,
    clear_status,
    get_status,
    install_from_url,
    resolve_repository,
)
from installapplications.exceptions import InstallAppsError
from installapplications.logging import Logger, get_logger, log_file_name, set_global_logger
from installapplications.manifest import resolve_manifest_url
from installapplications.orchestrator import ALL_PHASES
from installapplications.registry import default_registry
from installapplications.results import RunResult
from installapplications.service import (
    ServiceManager,
    bootstrap,
    default_service_command,
)
from installapplications.status import STATUS_KEY, InstallationPhase
from installapplications.validation import validate_manifest

PHASE_CHOICES = {
    "setupassistant": (InstallationPhase.SETUP_ASSISTANT,),
    "userland": (InstallationPhase.USERLAND,),
    "all": ALL_PHASES,
}


# -------------------------------
# Helpers
# -------------------------------


def _configure(
    args: argparse.Namespace, log_to_file: bool = False
) -> tuple[Settings, Logger, Path | None]:
    """Load settings and install the global logger for a command."""
    console = get_logger(verbose=args.verbose, debug=args.debug)
    set_global_logger(console)
    config_path = Path(args.config) if args.config else None
    settings = load_settings(config_path, logger=console)

    if not log_to_file:
        return settings, console, None

    log_file = settings.log_dir / log_file_name()
    logger = get_logger(verbose=args.verbose, debug=args.debug, log_file=log_file)
    set_global_logger(logger)
    _write_session_header(logger)
    return settings, logger, getattr(logger, "log_file", None)


def _write_session_header(logger: Logger) -> None:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = os.environ.get("USERNAME", "unknown")
    logger.verbose("SESSION", f"InstallApplications {__version__}")
    logger.verbose("SESSION", f"PID: {os.getpid()}")
    logger.verbose("SESSION", f"User: {user}")
    logger.verbose("SESSION", f"Machine: {platform.node()}")
    logger.verbose("SESSION", f"OS: {platform.platform()}")
    logger.verbose("SESSION", f"Architecture: {platform.machine()}")
    logger.verbose("SESSION", f"Command line: {' '.join(sys.argv)}")


def _report_error(err: Exception, args: argparse.Namespace) -> int:
    print(f"Error: {err}")
    if args.verbose or args.debug:
        import traceback

        traceback.print_exc()
    return 1


def _print_run_result(
    result: RunResult,
    dry_run: bool,
    log_file: Path | None,
    download_only: bool = False,
) -> None:
    if dry_run:
        title = "DRY RUN RESULTS"
    elif download_only:
        title = "DOWNLOAD RESULTS"
    else:
        title = "INSTALLATION RESULTS"
    print()
    print("=" * 70)
    print(title)
    print("=" * 70)
    for phase in result.phases:
        if download_only:
            done = f"{phase.downloaded_count} downloaded"
        else:
            done = f"{phase.installed_count} installed"
        counts = f"{done}, {phase.failed_count} failed, {phase.skipped_count} skipped"
        print(f"{phase.phase.value + ':':<17}{phase.stage.value} ({counts})")
        if phase.error:
            print(f"{'':<17}{phase.error}")
    if result.error:
        print(f"{'Error:':<17}{result.error}")
    if log_file is not None:
        print(f"{'Log File:':<17}{log_file}")
    print(f"{'Exit Code:':<17}{result.exit_code}")
    print("=" * 70)
    print()
    if result.exit_code == 0:
        print("[SUCCESS] Installation run completed.")
    else:
        print("[FAILED] Installation run failed.")


def _run(
    args: argparse.Namespace,
    manifest_url: str | None,
    phases: tuple[InstallationPhase, ...],
    dry_run: bool = False,
    continue_on_error: bool = False,
    download_only: bool = False,
    wait_for_session: bool = False,
) -> int:
    try:
        settings, logger, log_file = _configure(args, log_to_file=not dry_run)
        registry = default_registry()
        if manifest_url is None:
            repo = resolve_repository(args.repo, registry)
            manifest_url = resolve_manifest_url(repo)
        logger.section(f"InstallApplications {__version__}")
        result = install_from_url(
            manifest_url,
            phases=phases,
            settings=settings,
            force_refresh=args.force,
            dry_run=dry_run,
            download_only=download_only,
            continue_on_error=continue_on_error,
            wait_for_session=wait_for_session,
            registry=registry,
            logger=logger,
        )
    except InstallAppsError as err:
        return _report_error(err, args)

    _print_run_result(result, dry_run, log_file, download_only=download_only)
    return result.exit_code


# -------------------------------
# Command handlers
# -------------------------------


def cmd_install(args: argparse.Namespace) -> int:
    """Handler for 'installapplications install' command.

    Resolves the repository (--repo, then the bootstrapped registry value,
    then INSTALLAPPS_REPO_URL), fetches ``<repo>/manifest.json``, and runs
    the selected phase(s).

    Args:
        args: Parsed command-line arguments.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    return _run(
        args,
        None,
        PHASE_CHOICES[args.phase],
        dry_run=args.dry_run,
        continue_on_error=args.continue_on_error,
        download_only=args.download_only,
        wait_for_session=args.wait_for_session,
    )


def cmd_run_url(args: argparse.Namespace) -> int:
    """Handler for 'installapplications --url URL'.

    Runs both phases from the given manifest URL.
    """
    return _run(args, args.url, ALL_PHASES)


def cmd_bootstrap(args: argparse.Namespace) -> int:
    """Handler for 'installapplications bootstrap' command.

    Args:
        args: Parsed command-line arguments containing the repository URL
            and the auto-start flag.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    try:
        settings, logger, _log_file = _configure(args, log_to_file=True)
        logger.section(f"Bootstrapping from {args.repo}")
        result = bootstrap(
            args.repo,
            settings,
            auto_start=args.auto_start,
            registry=default_registry(),
            logger=logger,
        )
    except InstallAppsError as err:
        return _report_error(err, args)

    print()
    print("=" * 70)
    print("BOOTSTRAP RESULTS")
    print("=" * 70)
    print(f"Repository:      {result.repository_url}")
    print(f"Service:         {result.service_name}")
    print(f"Installed:       {'yes' if result.service_installed else 'already present'}")
    print(f"Started:         {'yes' if result.service_started else 'no'}")
    print("=" * 70)
    print()
    print("[SUCCESS] Bootstrap completed.")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Handler for 'installapplications validate' command.

    Validates manifest shape without installing anything. With
    --check-urls every package URL is also requested; with --check-hashes
    every package that declares a hash is downloaded and verified.

    Args:
        args: Parsed command-line arguments.

    Returns:
        Exit code (0 for valid manifest, 1 for invalid).

    Note:
        Prints validation results, errors, and warnings to stdout.
    """
    try:
        settings, logger, _log_file = _configure(args)
    except InstallAppsError as err:
        return _report_error(err, args)

    if args.repo:
        url, file = resolve_manifest_url(args.repo), None
    else:
        url, file = None, Path(args.file).resolve()

    print(f"Validating manifest: {url or file}")
    print()

    result = validate_manifest(
        url=url,
        file=file,
        check_urls=args.check_urls,
        check_hashes=args.check_hashes,
        timeout=settings.http_timeout,
        logger=logger,
    )

    print("=" * 70)
    print("VALIDATION RESULTS")
    print("=" * 70)
    print(f"Manifest:    {result.source}")
    print(f"Status:      {result.status.upper()}")
    print(f"Packages:    {result.package_count}")
    print()

    if result.warnings:
        print(f"Warnings ({len(result.warnings)}):")
        for warning in result.warnings:
            print(f"  [WARNING] {warning}")
        print()

    if result.errors:
        print(f"Errors ({len(result.errors)}):")
        for error in result.errors:
            print(f"  [X] {error}")
        print()

    print("=" * 70)

    if result.status == "valid":
        print()
        print("[SUCCESS] Manifest is valid!")
        return 0
    print()
    print(f"[FAILED] Manifest validation failed with {len(result.errors)} error(s).")
    return 1


def cmd_service(args: argparse.Namespace) -> int:
    """Handler for 'installapplications service' command."""
    try:
        settings, logger, _log_file = _configure(args)
        manager = ServiceManager(settings.service_name, logger=logger)
        if args.install:
            manager.install(settings.service_command or default_service_command())
        elif args.uninstall:
            manager.uninstall()
        elif args.start:
            manager.start()
        elif args.stop:
            manager.stop()
        else:
            print(f"Service '{settings.service_name}': {manager.status()}")
    except InstallAppsError as err:
        return _report_error(err, args)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Handler for 'installapplications --status'."""
    try:
        settings, logger, _log_file = _configure(args)
        statuses = get_status(
            settings=settings, registry=default_registry(), logger=logger
        )
    except InstallAppsError as err:
        return _report_error(err, args)

    print("=" * 70)
    print("INSTALLATION STATUS")
    print("=" * 70)
    for phase, status in statuses.items():
        print(f"Phase: {phase.value}")
        if not status.exists:
            print("  Stage:           (no record)")
            print()
            continue
        print(f"  Stage:           {status.stage.value}")
        print(f"  Architecture:    {status.architecture}")
        if status.start_time:
            print(f"  Start Time:      {status.start_time}")
        if status.completion_time:
            print(f"  Completion Time: {status.completion_time}")
        if status.exit_code != 0:
            print(f"  Exit Code:       {status.exit_code}")
        if status.last_error:
            print(f"  Last Error:      {status.last_error}")
        if status.run_id:
            print(f"  Run ID:          {status.run_id}")
        if status.bootstrap_url:
            print(f"  Bootstrap URL:   {status.bootstrap_url}")
        print()
    print(f"Registry Key:  HKLM\\{STATUS_KEY}")
    print(f"Status File:   {settings.status_file}")
    print("=" * 70)
    return 0


def cmd_clear_status(args: argparse.Namespace) -> int:
    """Handler for 'installapplications --clear-status'."""
    try:
        settings, logger, _log_file = _configure(args)
        clear_status(settings=settings, registry=default_registry(), logger=logger)
    except InstallAppsError as err:
        return _report_error(err, args)
    print("[SUCCESS] Installation status cleared.")
    return 0


def cmd_clear_cache(args: argparse.Namespace) -> int:
    """Handler for 'installapplications --clear-cache'."""
    try:
        settings, logger, _log_file = _configure(args)
        cleared = clear_package_cache(settings=settings, logger=logger)
    except InstallAppsError as err:
        return _report_error(err, args)
    if not cleared:
        print(f"[FAILED] Could not clear package cache: {settings.cache_dir}")
        return 1
    print(f"[SUCCESS] Package cache cleared: {settings.cache_dir}")
    return 0


# -------------------------------
# Parser
# -------------------------------


def _add_common_options(
    parser: argparse.ArgumentParser, subcommand: bool = False
) -> None:
    # Subcommands use SUPPRESS so options given before the command survive
    flag_default = argparse.SUPPRESS if subcommand else False
    value_default = argparse.SUPPRESS if subcommand else None
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=flag_default,
        help="Show progress and high-level status updates",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        default=flag_default,
        help="Show detailed debugging output (implies --verbose)",
    )
    parser.add_argument(
        "--config",
        default=value_default,
        help="Settings file (YAML) layered over the machine settings",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the installapplications CLI."""
    parser = argparse.ArgumentParser(
        prog="installapplications",
        description="InstallApplications - manifest-driven package installation for Windows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"installapplications {version('installapplications')}",
    )
    parser.add_argument("--url", help="Manifest URL; runs both phases")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Clear the package cache and download every package again",
    )
    parser.add_argument(
        "--status", action="store_true", help="Show current installation status"
    )
    parser.add_argument(
        "--clear-status",
        action="store_true",
        help="Clear all installation status data",
    )
    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Clear downloaded package cache",
    )
    _add_common_options(parser)

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'install' command
    parser_install = subparsers.add_parser(
        "install",
        help="Install packages from a repository",
        description="Fetch <repo>/manifest.json and run the selected phase(s).",
    )
    parser_install.add_argument(
        "-r",
        "--repo",
        default=None,
        help="Package repository URL (default: bootstrapped repository)",
    )
    parser_install.add_argument(
        "-p",
        "--phase",
        choices=sorted(PHASE_CHOICES),
        default="setupassistant",
        help="Installation phase (default: setupassistant)",
    )
    parser_install.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be installed without downloading or installing",
    )
    parser_install.add_argument(
        "--download-only",
        action="store_true",
        help="Download every applicable package without installing",
    )
    parser_install.add_argument(
        "--wait-for-session",
        action="store_true",
        help="Wait for a user to log on before the userland phase",
    )
    parser_install.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Keep going when a required package fails",
    )
    parser_install.add_argument(
        "--force",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Clear the package cache and download every package again",
    )
    _add_common_options(parser_install, subcommand=True)
    parser_install.set_defaults(func=cmd_install)

    # 'bootstrap' command
    parser_bootstrap = subparsers.add_parser(
        "bootstrap",
        help="Record the repository and install the service",
        description="Record the repository URL, register the startup task and run it.",
    )
    parser_bootstrap.add_argument(
        "-r", "--repo", required=True, help="Package repository URL"
    )
    parser_bootstrap.add_argument(
        "--auto-start",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Start the service after installing it (default: on)",
    )
    _add_common_options(parser_bootstrap, subcommand=True)
    parser_bootstrap.set_defaults(func=cmd_bootstrap)

    # 'validate' command
    parser_validate = subparsers.add_parser(
        "validate",
        help="Validate a manifest (no installs)",
        description="Check a manifest for shape errors and likely mistakes.",
    )
    source = parser_validate.add_mutually_exclusive_group(required=True)
    source.add_argument("-r", "--repo", help="Package repository URL")
    source.add_argument("-f", "--file", help="Local manifest file")
    parser_validate.add_argument(
        "--check-urls",
        action="store_true",
        help="Verify that every package URL is reachable",
    )
    parser_validate.add_argument(
        "--check-hashes",
        action="store_true",
        help="Download packages that declare a hash and verify it",
    )
    _add_common_options(parser_validate, subcommand=True)
    parser_validate.set_defaults(func=cmd_validate)

    # 'service' command
    parser_service = subparsers.add_parser(
        "service",
        help="Manage the startup task",
        description="Install, remove, start, stop, or query the startup task.",
    )
    action = parser_service.add_mutually_exclusive_group(required=True)
    action.add_argument("--install", action="store_true", help="Install the service")
    action.add_argument("--uninstall", action="store_true", help="Remove the service")
    action.add_argument("--start", action="store_true", help="Start the service")
    action.add_argument("--stop", action="store_true", help="Stop the service")
    action.add_argument("--status", action="store_true", help="Show service state")
    _add_common_options(parser_service, subcommand=True)
    parser_service.set_defaults(func=cmd_service)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the installapplications CLI.

    This function is registered as the 'installapplications' console script
    in pyproject.toml.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    func = getattr(args, "func", None)
    if func is None:
        if args.status:
            func = cmd_status
        elif args.clear_status:
            func = cmd_clear_status
        elif args.clear_cache:
            func = cmd_clear_cache
        elif args.url:
            func = cmd_run_url
        else:
            parser.print_help()
            sys.exit(0)

    exit_code = func(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
