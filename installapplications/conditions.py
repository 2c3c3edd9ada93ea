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

"""Package applicability conditions for InstallApplications.

Two condition forms are evaluated against the facts of the current machine:

- ``condition`` strings (phase-keyed manifests), matched by substring:
    - ``architecture_x64``: package applies only on x64
    - ``architecture_arm64``: package applies only on arm64
    - anything else, or no condition: package applies
- ``conditions`` objects (package-list manifests): architecture, minimum
  OS version, domain membership, file, registry and service presence

Both forms fail open. Unknown tokens, facts that cannot be determined, and
probes that raise all count as "applies". Evaluation never raises.

Example:
    ```python
    from installapplications.conditions import MachineFacts, evaluate_condition

    facts = MachineFacts(architecture="arm64")
    evaluate_condition("architecture_x64", facts)   # False
    evaluate_condition("ring_insiders", facts)      # True (unknown token)
    ```
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import os
import platform
import sys
from typing import TYPE_CHECKING

from installapplications.registry import RegistryView

if TYPE_CHECKING:
    from installapplications.installers.process import ProcessRunner
    from installapplications.manifest import Package, PackageConditions
    from installapplications.registry import RegistryBackend

_ARCH_ALIASES = {
    "x64": "x64",
    "amd64": "x64",
    "x86_64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "arm64e": "arm64",
}


def normalize_architecture(machine: str) -> str:
    """Normalize a machine string to "x64", "arm64", or its lowercase form."""
    value = machine.strip().lower()
    return _ARCH_ALIASES.get(value, value)


@dataclass(frozen=True)
class MachineFacts:
    """Facts about the current machine used for condition checks.

    Attributes:
        architecture: Normalized architecture ("x64", "arm64", or other).
        os_version: Dotted OS version, if known.
        domain_joined: Domain-join state; None when unknown.
        registry: Registry backend for registry conditions.
        path_exists: Probe for file_exists conditions.
        service_exists: Probe for service_exists conditions.
        domain_probe: Lazy probe used when domain_joined is None.
    """

    architecture: str
    os_version: str | None = None
    domain_joined: bool | None = None
    registry: RegistryBackend | None = None
    path_exists: Callable[[str], bool] | None = None
    service_exists: Callable[[str], bool] | None = None
    domain_probe: Callable[[], bool | None] | None = None


def detect_machine_facts(
    registry: RegistryBackend | None = None,
    runner: ProcessRunner | None = None,
) -> MachineFacts:
    """Collect facts for the machine this process runs on.

    Args:
        registry: Registry backend for registry conditions.
        runner: Process runner for service and domain probes (Windows only).

    Returns:
        MachineFacts for the current host.
    """
    os_version = platform.version() if sys.platform == "win32" else platform.release()

    service_probe = None
    domain_probe = None
    if sys.platform == "win32" and runner is not None:

        def service_probe(name: str) -> bool:
            return runner.run(["sc.exe", "query", name], timeout=30).exit_code == 0

        def domain_probe() -> bool | None:
            result = runner.run(
                [
                    "powershell.exe",
                    "-NoProfile",
                    "-Command",
                    "(Get-CimInstance Win32_ComputerSystem).PartOfDomain",
                ],
                timeout=60,
            )
            answer = result.stdout.strip().lower()
            if answer in ("true", "false"):
                return answer == "true"
            return None

    return MachineFacts(
        architecture=normalize_architecture(platform.machine()),
        os_version=os_version or None,
        registry=registry,
        path_exists=lambda p: os.path.exists(os.path.expandvars(p)),
        service_exists=service_probe,
        domain_probe=domain_probe,
    )


# -------------------------------
# Condition strings
# -------------------------------


def evaluate_condition(condition: str | None, facts: MachineFacts) -> bool:
    """Evaluate a condition string against machine facts.

    Args:
        condition: Condition text from the manifest, or None.
        facts: Facts about the current machine.

    Returns:
        False only when a recognized architecture token does not match the
        machine; True otherwise (including for unrecognized tokens).
    """
    if not condition or not condition.strip():
        return True
    text = condition.lower()
    if "architecture_x64" in text and facts.architecture != "x64":
        return False
    if "architecture_arm64" in text and facts.architecture != "arm64":
        return False
    return True


# -------------------------------
# Structured conditions
# -------------------------------


def _parse_version(value: str) -> tuple[int, ...] | None:
    parts = value.strip().split(".")
    try:
        return tuple(int(p) for p in parts)
    except ValueError:
        return None


def _probe(check: Callable[[], bool | None]) -> bool | None:
    # Probes talk to the OS; any failure means "unknown"
    try:
        return check()
    except Exception:
        return None


def _registry_check(
    registry: RegistryBackend, key: str, value_spec: str | None
) -> bool | None:
    views = (RegistryView.BIT64, RegistryView.BIT32)
    if value_spec is None:
        return any(registry.key_exists(key, view) for view in views)

    name, sep, expected = value_spec.partition("=")
    for view in views:
        data = registry.read_value(key, name.strip(), view)
        if data is None:
            continue
        if not sep:
            return True
        return str(data).strip().lower() == expected.strip().lower()
    return False


def unmet_condition(
    conditions: PackageConditions | None, facts: MachineFacts
) -> str | None:
    """Return a description of the first unmet structured condition.

    Args:
        conditions: Structured conditions, or None.
        facts: Facts about the current machine.

    Returns:
        A human-readable reason, or None when the package applies.
    """
    if conditions is None:
        return None

    if conditions.architecture:
        wanted = normalize_architecture(conditions.architecture)
        if wanted != facts.architecture:
            return f"requires {wanted} architecture (machine is {facts.architecture})"

    if conditions.os_version and facts.os_version:
        minimum = _parse_version(conditions.os_version)
        current = _parse_version(facts.os_version)
        if minimum is not None and current is not None and current < minimum:
            return (
                f"requires OS version {conditions.os_version} or later "
                f"(machine is {facts.os_version})"
            )

    if conditions.domain_joined is not None:
        joined = facts.domain_joined
        if joined is None and facts.domain_probe is not None:
            joined = _probe(facts.domain_probe)
        if joined is not None and joined != conditions.domain_joined:
            state = "domain-joined" if conditions.domain_joined else "non-domain"
            return f"requires a {state} machine"

    if conditions.file_exists and facts.path_exists is not None:
        path = conditions.file_exists
        if _probe(lambda: facts.path_exists(path)) is False:
            return f"file not found: {path}"

    if conditions.registry_key and facts.registry is not None:
        key, value = conditions.registry_key, conditions.registry_value
        if _probe(lambda: _registry_check(facts.registry, key, value)) is False:
            target = f"{key}\\{value}" if value else key
            return f"registry condition not met: {target}"

    if conditions.service_exists and facts.service_exists is not None:
        service = conditions.service_exists
        if _probe(lambda: facts.service_exists(service)) is False:
            return f"service not installed: {service}"

    return None


def evaluate_conditions(
    conditions: PackageConditions | None, facts: MachineFacts
) -> bool:
    """Return True when all structured conditions are met (fail-open)."""
    return unmet_condition(conditions, facts) is None


def skip_reason(package: Package, facts: MachineFacts) -> str | None:
    """Return why a package does not apply to this machine, or None.

    Both the ``condition`` string and the ``conditions`` object are checked.
    """
    if not evaluate_condition(package.condition, facts):
        return f"condition '{package.condition}' not met on {facts.architecture}"
    return unmet_condition(package.conditions, facts)
