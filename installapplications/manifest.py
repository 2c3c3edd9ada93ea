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

"""Manifest acquisition and parsing for InstallApplications.

This module downloads the JSON manifest that describes what to install,
validates its shape, and turns each entry into an immutable Package.

Two document shapes are accepted:

1. Phase keyed (the bootstrap format):

    ```json
    {
      "setupassistant": [
        {"name": "Agent", "type": "msi", "url": "https://.../agent.msi",
         "file": "agent.msi", "arguments": ["/l*v", "agent.log"],
         "condition": "architecture_x64"}
      ],
      "userland": []
    }
    ```

2. Package list with a phase per entry (the service format):

    ```json
    {
      "version": "1.0",
      "packages": [
        {"name": "Agent", "type": "msi", "url": "https://.../agent.msi",
         "phase": "setupassistant", "order": 1, "required": true,
         "hash": "ab12...", "dependencies": [],
         "conditions": {"architecture": "x64"}}
      ],
      "settings": {"timeout": 1800}
    }
    ```

Within a phase, packages run in ascending ``order``; packages with equal
order keep their manifest order.

Example:
    Fetch and walk a manifest:
        ```python
        from installapplications.manifest import fetch_manifest

        manifest = fetch_manifest("https://example.com/bootstrap/manifest.json")
        for package in manifest.setupassistant:
            print(package.name, package.type.value)
        ```

Note:
    An unrecognized package ``type`` is not a parse error; it parses to
    PackageType.UNKNOWN and is skipped at install time.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from pathlib import Path, PurePosixPath
import shlex
from typing import Any
from urllib.parse import unquote, urlparse

import requests

from installapplications.exceptions import ManifestError
from installapplications.logging import Logger, get_global_logger

__all__ = [
    "PHASE_KEYS",
    "PackageType",
    "PackageConditions",
    "ManifestSettings",
    "Package",
    "Manifest",
    "parse_manifest",
    "fetch_manifest",
    "load_manifest_file",
    "resolve_manifest_url",
]

PHASE_KEYS = ("setupassistant", "userland")
DEFAULT_PHASE = "setupassistant"
MANIFEST_FILENAME = "manifest.json"


class PackageType(str, Enum):
    """Installer kinds understood by the installer dispatch."""

    MSI = "msi"
    EXE = "exe"
    POWERSHELL = "powershell"
    PACKAGE_MANAGER = "package-manager"
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, value: str) -> PackageType:
        """Map a manifest type string (case-insensitive, with aliases)."""
        return _TYPE_ALIASES.get(value.strip().lower(), cls.UNKNOWN)


_TYPE_ALIASES = {
    "msi": PackageType.MSI,
    "exe": PackageType.EXE,
    "powershell": PackageType.POWERSHELL,
    "ps1": PackageType.POWERSHELL,
    "package-manager": PackageType.PACKAGE_MANAGER,
    "nupkg": PackageType.PACKAGE_MANAGER,
    "chocolatey": PackageType.PACKAGE_MANAGER,
}


@dataclass(frozen=True)
class PackageConditions:
    """Structured applicability checks from the package-list format.

    Attributes:
        os_version: Minimum OS version (dotted, e.g. "10.0.19041").
        architecture: Required architecture ("x64" or "arm64").
        domain_joined: Required domain-join state.
        registry_key: HKLM key path that must exist.
        registry_value: Value under registry_key that must exist, or
            "Name=Data" to also match its data.
        file_exists: Path that must exist.
        service_exists: Windows service name that must be registered.
    """

    os_version: str | None = None
    architecture: str | None = None
    domain_joined: bool | None = None
    registry_key: str | None = None
    registry_value: str | None = None
    file_exists: str | None = None
    service_exists: str | None = None


@dataclass(frozen=True)
class ManifestSettings:
    """Manifest-wide settings (package-list format only).

    Attributes:
        timeout: Default per-package install timeout in seconds.
        retries: Default HTTP retry count for package downloads.
        cleanup: Clear the package cache after a run with no failures.
        reboot_required: Manifest author signals a reboot is expected.
        log_level: Requested console verbosity ("info", "verbose", "debug").
        download_path: Overrides the configured cache directory.
        progress_ui: Accepted for compatibility; no UI is shown.
    """

    timeout: int = 3600
    retries: int = 3
    cleanup: bool = False
    reboot_required: bool = False
    log_level: str = "info"
    download_path: str | None = None
    progress_ui: bool = False


@dataclass(frozen=True)
class Package:
    """One installable package from the manifest.

    Attributes:
        name: Display name, also used for dependency references.
        type: Normalized installer type.
        raw_type: Type string as written in the manifest.
        url: Download URL.
        file: Destination file name in the cache directory.
        arguments: Extra installer arguments.
        condition: Condition expression (phase-keyed format).
        conditions: Structured conditions (package-list format).
        required: Whether the package is required (see failure policy).
        order: Sort key within the phase.
        dependencies: Names of packages that must install first.
        hash: Expected SHA-256 of the download (hex).
        timeout: Install timeout in seconds, overriding settings.
        retries: HTTP retry count for this download.
        phase: Phase key the package belongs to.
    """

    name: str
    type: PackageType
    url: str
    file: str
    raw_type: str = ""
    arguments: tuple[str, ...] = ()
    condition: str | None = None
    conditions: PackageConditions | None = None
    required: bool = True
    order: int = 0
    dependencies: tuple[str, ...] = ()
    hash: str | None = None
    timeout: int | None = None
    retries: int | None = None
    phase: str = DEFAULT_PHASE


@dataclass(frozen=True)
class Manifest:
    """Parsed manifest: ordered packages for each phase.

    Attributes:
        setupassistant: Packages for the pre-login phase, in run order.
        userland: Packages for the post-login phase, in run order.
        version: Manifest version string, if declared.
        settings: Manifest-wide settings, or None when the document has none.
    """

    setupassistant: tuple[Package, ...] = ()
    userland: tuple[Package, ...] = ()
    version: str | None = None
    settings: ManifestSettings | None = None

    def packages_for(self, phase_key: str) -> tuple[Package, ...]:
        if phase_key not in PHASE_KEYS:
            raise KeyError(phase_key)
        return getattr(self, phase_key)

    @property
    def package_count(self) -> int:
        return len(self.setupassistant) + len(self.userland)


# -------------------------------
# Field helpers
# -------------------------------


def _where(phase: str, index: int, name: str | None = None) -> str:
    label = f"Package {phase}[{index}]"
    return f"{label} ({name!r})" if name else label


def _require_str(entry: dict[str, Any], key: str, where: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ManifestError(f"{where}: '{key}' must be a non-empty string")
    return value.strip()


def _optional_str(entry: dict[str, Any], key: str, where: str) -> str | None:
    value = entry.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ManifestError(f"{where}: '{key}' must be a string")
    return value.strip() or None


def _optional_bool(
    entry: dict[str, Any], key: str, where: str, default: bool | None
) -> bool | None:
    value = entry.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ManifestError(f"{where}: '{key}' must be true or false")
    return value


def _optional_int(
    entry: dict[str, Any], key: str, where: str, default: int | None, minimum: int
) -> int | None:
    value = entry.get(key)
    if value is None:
        return default
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ManifestError(f"{where}: '{key}' must be an integer")
    if value < minimum:
        raise ManifestError(f"{where}: '{key}' must be >= {minimum}")
    return value


def _parse_arguments(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            return tuple(shlex.split(value))
        except ValueError as err:
            raise ManifestError(f"{where}: invalid 'arguments': {err}") from err
    if isinstance(value, list):
        args = []
        for item in value:
            if isinstance(item, bool) or not isinstance(item, (str, int, float)):
                raise ManifestError(
                    f"{where}: 'arguments' entries must be strings"
                )
            args.append(str(item))
        return tuple(args)
    raise ManifestError(f"{where}: 'arguments' must be a list or string")


def _parse_name_list(value: Any, key: str, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ManifestError(f"{where}: '{key}' must be a list of strings")
    return tuple(v.strip() for v in value if v.strip())


def _parse_conditions(value: Any, where: str) -> PackageConditions | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ManifestError(f"{where}: 'conditions' must be an object")
    return PackageConditions(
        os_version=_optional_str(value, "os_version", where),
        architecture=_optional_str(value, "architecture", where),
        domain_joined=_optional_bool(value, "domain_joined", where, None),
        registry_key=_optional_str(value, "registry_key", where),
        registry_value=_optional_str(value, "registry_value", where),
        file_exists=_optional_str(value, "file_exists", where),
        service_exists=_optional_str(value, "service_exists", where),
    )


def _file_from_url(url: str) -> str:
    return PurePosixPath(unquote(urlparse(url).path)).name


# -------------------------------
# Parsing
# -------------------------------


def _parse_package(entry: Any, phase: str, index: int) -> Package:
    if not isinstance(entry, dict):
        raise ManifestError(f"{_where(phase, index)} must be an object")

    name = _require_str(entry, "name", _where(phase, index))
    where = _where(phase, index, name)
    raw_type = _require_str(entry, "type", where)
    url = _require_str(entry, "url", where)

    file = _optional_str(entry, "file", where) or _file_from_url(url)
    if not file:
        raise ManifestError(
            f"{where}: 'file' is missing and cannot be derived from the URL"
        )
    # Destination must stay inside the cache directory
    if "/" in file or "\\" in file or ":" in file or file in (".", ".."):
        raise ManifestError(f"{where}: 'file' must be a plain file name")

    return Package(
        name=name,
        type=PackageType.from_string(raw_type),
        raw_type=raw_type,
        url=url,
        file=file,
        arguments=_parse_arguments(entry.get("arguments"), where),
        condition=_optional_str(entry, "condition", where),
        conditions=_parse_conditions(entry.get("conditions"), where),
        required=bool(_optional_bool(entry, "required", where, True)),
        order=int(_optional_int(entry, "order", where, 0, minimum=-(2**31)) or 0),
        dependencies=_parse_name_list(entry.get("dependencies"), "dependencies", where),
        hash=_optional_str(entry, "hash", where),
        timeout=_optional_int(entry, "timeout", where, None, minimum=1),
        retries=_optional_int(entry, "retries", where, None, minimum=0),
        phase=phase,
    )


def _parse_settings(value: Any) -> ManifestSettings | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ManifestError("'settings' must be an object")
    defaults = ManifestSettings()
    where = "Settings"
    return ManifestSettings(
        timeout=_optional_int(value, "timeout", where, defaults.timeout, 1),
        retries=_optional_int(value, "retries", where, defaults.retries, 0),
        cleanup=_optional_bool(value, "cleanup", where, defaults.cleanup),
        reboot_required=_optional_bool(
            value, "reboot_required", where, defaults.reboot_required
        ),
        log_level=_optional_str(value, "log_level", where) or defaults.log_level,
        download_path=_optional_str(value, "download_path", where),
        progress_ui=_optional_bool(value, "progress_ui", where, defaults.progress_ui),
    )


def _ordered(packages: list[Package]) -> tuple[Package, ...]:
    # sorted() is stable, so equal orders keep manifest order
    return tuple(sorted(packages, key=lambda p: p.order))


def parse_manifest(data: Any) -> Manifest:
    """Validate a decoded manifest document and build a Manifest.

    Args:
        data: Decoded JSON document.

    Returns:
        Manifest with each phase's packages in run order.

    Raises:
        ManifestError: If the document or any entry has the wrong shape.
            The message names the offending entry.

    Example:
        ```python
        manifest = parse_manifest({"setupassistant": [], "userland": []})
        assert manifest.package_count == 0
        ```
    """
    if not isinstance(data, dict):
        raise ManifestError("Manifest must be a JSON object")

    phases: dict[str, list[Package]] = {key: [] for key in PHASE_KEYS}

    if "packages" in data:
        entries = data["packages"]
        if not isinstance(entries, list):
            raise ManifestError("'packages' must be a list")
        for index, entry in enumerate(entries):
            phase = DEFAULT_PHASE
            if isinstance(entry, dict) and entry.get("phase") is not None:
                phase_value = entry["phase"]
                if not isinstance(phase_value, str):
                    raise ManifestError(
                        f"Package packages[{index}]: 'phase' must be a string"
                    )
                phase = phase_value.strip().lower()
                if phase not in PHASE_KEYS:
                    raise ManifestError(
                        f"Package packages[{index}]: unknown phase {phase_value!r} "
                        f"(expected one of: {', '.join(PHASE_KEYS)})"
                    )
            phases[phase].append(_parse_package(entry, phase, len(phases[phase])))
    else:
        for key in PHASE_KEYS:
            entries = data.get(key)
            if entries is None:
                continue
            if not isinstance(entries, list):
                raise ManifestError(f"'{key}' must be a list of packages")
            for index, entry in enumerate(entries):
                phases[key].append(_parse_package(entry, key, index))

    version = data.get("version")
    if version is not None and not isinstance(version, (str, int, float)):
        raise ManifestError("'version' must be a string")

    return Manifest(
        setupassistant=_ordered(phases["setupassistant"]),
        userland=_ordered(phases["userland"]),
        version=str(version) if version is not None else None,
        settings=_parse_settings(data.get("settings")),
    )


# -------------------------------
# Retrieval
# -------------------------------


def resolve_manifest_url(repo: str) -> str:
    """Turn a repository URL into the manifest URL.

    A URL whose path already ends in ``.json`` is returned unchanged;
    otherwise ``/manifest.json`` is appended.

    Example:
        ```python
        resolve_manifest_url("https://example.com/bootstrap/")
        # 'https://example.com/bootstrap/manifest.json'
        ```
    """
    repo = repo.strip()
    if urlparse(repo).path.lower().endswith(".json"):
        return repo
    return repo.rstrip("/") + "/" + MANIFEST_FILENAME


def fetch_manifest(
    url: str,
    *,
    session: requests.Session | None = None,
    timeout: int = 60,
    logger: Logger | None = None,
) -> Manifest:
    """Download and parse the manifest.

    Args:
        url: Manifest URL.
        session: Optional session; one is created with make_session() if
            omitted.
        timeout: Per-request timeout in seconds.
        logger: Optional logger; defaults to the global logger.

    Returns:
        Parsed Manifest.

    Raises:
        ManifestError: On network failure, non-success HTTP status, invalid
            JSON, or an invalid document.
    """
    from installapplications.fetcher import make_session

    logger = logger or get_global_logger()
    owns_session = session is None
    session = session or make_session()

    logger.verbose("MANIFEST", f"GET {url}")
    try:
        resp = session.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as err:
        raise ManifestError(f"Failed to download manifest from {url}: {err}") from err
    finally:
        if owns_session:
            session.close()

    try:
        data = json.loads(resp.content.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise ManifestError(f"Manifest at {url} is not valid JSON: {err}") from err

    manifest = parse_manifest(data)
    logger.verbose(
        "MANIFEST",
        f"Loaded {len(manifest.setupassistant)} setupassistant and "
        f"{len(manifest.userland)} userland package(s)",
    )
    return manifest


def load_manifest_file(path: Path) -> Manifest:
    """Load and parse a manifest from a local JSON file.

    Raises:
        ManifestError: If the file is missing, unreadable, or invalid.
    """
    try:
        text = Path(path).read_text(encoding="utf-8-sig")
    except OSError as err:
        raise ManifestError(f"Cannot read manifest file {path}: {err}") from err
    try:
        data = json.loads(text)
    except json.JSONDecodeError as err:
        raise ManifestError(f"Manifest file {path} is not valid JSON: {err}") from err
    return parse_manifest(data)
