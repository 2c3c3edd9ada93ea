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

"""Manifest validation for InstallApplications.

This module checks a manifest without installing anything. It reports
errors (the manifest would be rejected at run time) separately from
warnings (the manifest runs, but probably not the way its author meant).

Validation Checks:

- Document shape and field types (same parser as the install run)
- Unknown package types (skipped at run time)
- Unknown condition tokens (always treated as applicable)
- Dependencies that name no earlier package in the same run
- Duplicate package names
- Duplicate destination files within a phase
- Hashes that are not 64 hex characters
- Optionally, that every package URL answers (HEAD, falling back to GET)
- Optionally, that every package with a ``hash`` downloads and matches it

Example:
    ```python
    from pathlib import Path
    from installapplications.validation import validate_manifest

    result = validate_manifest(file=Path("manifest.json"))
    if result.status == "valid":
        print(f"{result.package_count} package(s)")
    ```

Note:
    URL and hash checks are off by default so validation stays offline.
"""

from __future__ import annotations

from pathlib import Path
import re
import tempfile

import requests

from installapplications.exceptions import FetchError, ManifestError
from installapplications.fetcher import fetch_package, make_session, normalize_sha256
from installapplications.logging import Logger, get_global_logger
from installapplications.manifest import (
    PHASE_KEYS,
    Manifest,
    PackageType,
    fetch_manifest,
    load_manifest_file,
)
from installapplications.results import ValidationResult

KNOWN_CONDITION_TOKENS = ("architecture_x64", "architecture_arm64")
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


def _check_manifest(manifest: Manifest) -> tuple[list[str], list[str]]:
    errors: list[str] = []
    warnings: list[str] = []
    seen_names: set[str] = set()

    if manifest.package_count == 0:
        warnings.append("Manifest contains no packages")

    for phase_key in PHASE_KEYS:
        files: set[str] = set()
        for package in manifest.packages_for(phase_key):
            label = f"{phase_key}: {package.name}"

            if package.name in seen_names:
                warnings.append(f"{label}: duplicate package name")

            if package.type is PackageType.UNKNOWN:
                warnings.append(
                    f"{label}: unknown type '{package.raw_type}' will be skipped"
                )

            if package.condition and not any(
                token in package.condition.lower() for token in KNOWN_CONDITION_TOKENS
            ):
                warnings.append(
                    f"{label}: condition '{package.condition}' is not recognized "
                    "and always applies"
                )

            for dependency in package.dependencies:
                if dependency not in seen_names:
                    errors.append(
                        f"{label}: dependency '{dependency}' does not name an "
                        "earlier package"
                    )

            if package.file.lower() in files:
                warnings.append(f"{label}: file '{package.file}' is used twice")
            files.add(package.file.lower())

            if package.hash and not _SHA256_RE.match(normalize_sha256(package.hash)):
                errors.append(f"{label}: hash is not a SHA-256 hex digest")

            seen_names.add(package.name)

    return errors, warnings


def _check_urls(
    manifest: Manifest, session: requests.Session, timeout: int, logger: Logger
) -> list[str]:
    errors = []
    for phase_key in PHASE_KEYS:
        for package in manifest.packages_for(phase_key):
            logger.verbose("VALIDATION", f"Checking {package.url}")
            try:
                resp = session.head(package.url, allow_redirects=True, timeout=timeout)
                if resp.status_code in (405, 501):
                    resp = session.get(
                        package.url, stream=True, allow_redirects=True, timeout=timeout
                    )
                    resp.close()
            except requests.RequestException as err:
                errors.append(f"{phase_key}: {package.name}: URL unreachable: {err}")
                continue
            if resp.status_code >= 400:
                errors.append(
                    f"{phase_key}: {package.name}: URL returned HTTP {resp.status_code}"
                )
    return errors


def _check_hashes(
    manifest: Manifest, session: requests.Session, timeout: int, logger: Logger
) -> tuple[list[str], list[str]]:
    errors: list[str] = []
    warnings: list[str] = []
    with tempfile.TemporaryDirectory(prefix="installapps-validate-") as tmp:
        for phase_key in PHASE_KEYS:
            for package in manifest.packages_for(phase_key):
                label = f"{phase_key}: {package.name}"
                if not package.hash:
                    warnings.append(f"{label}: no hash provided, skipping verification")
                    continue
                if not _SHA256_RE.match(normalize_sha256(package.hash)):
                    continue
                logger.verbose("VALIDATION", f"Verifying hash for {package.name}")
                try:
                    fetch_package(
                        package,
                        Path(tmp) / phase_key,
                        force_refresh=True,
                        session=session,
                        timeout=timeout,
                        release_delay=0,
                        logger=logger,
                    )
                except FetchError as err:
                    errors.append(f"{label}: {err}")
    return errors, warnings


def validate_manifest(
    url: str | None = None,
    file: Path | None = None,
    *,
    check_urls: bool = False,
    check_hashes: bool = False,
    session: requests.Session | None = None,
    timeout: int = 30,
    logger: Logger | None = None,
) -> ValidationResult:
    """Validate a manifest from a URL or a local file.

    Args:
        url: Manifest URL. Exactly one of url and file is required.
        file: Local manifest file.
        check_urls: Also check that every package URL answers.
        check_hashes: Also download every package that declares a hash
            and verify it.
        session: Optional HTTP session.
        timeout: Per-request timeout in seconds.
        logger: Optional logger; defaults to the global logger.

    Returns:
        ValidationResult with status "valid" or "invalid". Problems are
        reported in the result, never raised.

    Raises:
        ValueError: If neither or both of url and file are given.
    """
    if (url is None) == (file is None):
        raise ValueError("Exactly one of url or file must be given")

    logger = logger or get_global_logger()
    source = url if url is not None else str(file)

    owns_session = session is None and (url is not None or check_urls or check_hashes)
    if owns_session:
        session = make_session()
    try:
        try:
            if url is not None:
                manifest = fetch_manifest(url, session=session, timeout=timeout, logger=logger)
            else:
                manifest = load_manifest_file(Path(file))
        except ManifestError as err:
            return ValidationResult(status="invalid", errors=[str(err)], source=source)

        errors, warnings = _check_manifest(manifest)
        if check_urls and session is not None:
            errors += _check_urls(manifest, session, timeout, logger)
        if check_hashes and session is not None:
            hash_errors, hash_warnings = _check_hashes(manifest, session, timeout, logger)
            errors += hash_errors
            warnings += hash_warnings
    finally:
        if owns_session and session is not None:
            session.close()

    return ValidationResult(
        status="invalid" if errors else "valid",
        errors=errors,
        warnings=warnings,
        package_count=manifest.package_count,
        source=source,
    )
