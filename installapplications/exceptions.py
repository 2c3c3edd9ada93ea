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

"""Exception hierarchy for InstallApplications.

This module defines a custom exception hierarchy that separates fatal run
errors from per-package errors the orchestrator recovers from:

- ConfigError: Settings file or command-line configuration problems
- ManifestError: Manifest unreachable or malformed (fatal for the run)
- FetchError: A single package could not be downloaded or verified
- InstallError: A single package installer could not run or timed out
- StatusStoreError: Registry or status file failure (never escapes the store)
- PhaseAbortedError: A required package failed under an abort policy

All exceptions inherit from InstallAppsError, allowing callers to catch all
InstallApplications errors with a single except clause if needed.

Example:
    Catching a fatal manifest error:
        ```python
        from installapplications.exceptions import ManifestError
        from installapplications.manifest import fetch_manifest

        try:
            manifest = fetch_manifest("https://example.com/manifest.json")
        except ManifestError as e:
            print(f"Manifest error: {e}")
        ```
"""

from __future__ import annotations

__all__ = [
    "InstallAppsError",
    "ConfigError",
    "ManifestError",
    "FetchError",
    "InstallError",
    "StatusStoreError",
    "PhaseAbortedError",
]


class InstallAppsError(Exception):
    """Base exception for all InstallApplications errors."""

    pass


class ConfigError(InstallAppsError):
    """Raised for configuration-related errors.

    This exception is raised when there are problems with:

    - YAML parsing (syntax errors, non-mapping documents)
    - Invalid setting values (unknown failure policy, bad numbers)
    - Missing repository URL for an install run
    """

    pass


class ManifestError(InstallAppsError):
    """Raised when the manifest cannot be retrieved or parsed.

    Covers HTTP failures, invalid JSON, and entries that are missing required
    fields or carry the wrong types. The message names the offending entry.
    A ManifestError ends the run with exit code 1.
    """

    pass


class FetchError(InstallAppsError):
    """Raised when a package download fails.

    This exception is raised when there are problems with:

    - Unsuccessful HTTP responses or connection failures
    - Writing the downloaded file into the cache directory
    - SHA-256 mismatch against the hash declared in the manifest

    Note:
        The orchestrator records a FetchError as a package failure and moves
        on to the next package.
    """

    pass


class InstallError(InstallAppsError):
    """Raised when a package installer cannot be run.

    This exception is raised when there are problems with:

    - Launching the installer process (missing executable, access denied)
    - Installer processes exceeding the package timeout
    - Package manager bootstrap returning a non-zero exit code
    - Package manager commands that report failure

    Note:
        A non-zero installer exit code is reported through InstallResult,
        not raised.
    """

    pass


class StatusStoreError(InstallAppsError):
    """Raised internally by the status store for registry or file failures.

    The store catches this error itself and logs a warning; it is never
    propagated to the orchestrator.
    """

    pass


class PhaseAbortedError(InstallAppsError):
    """Raised when a required package fails under an abort policy.

    Attributes:
        package_name: Name of the required package that failed.
        abort_run: True when later phases must not run either.
    """

    def __init__(self, message: str, package_name: str, abort_run: bool = False):
        super().__init__(message)
        self.package_name = package_name
        self.abort_run = abort_run
