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

"""Windows registry access for InstallApplications.

Registry access goes through the RegistryBackend protocol so the status
store, condition evaluator, and PATH refresh can run (and be tested) on any
platform:

- WinRegistry: real registry via the stdlib ``winreg`` module (Windows only)
- MemoryRegistry: in-process dictionary, used off Windows and in tests

Paths may start with a hive prefix (``HKLM\\`` or ``HKCU\\``); without one,
HKEY_LOCAL_MACHINE is assumed. Every call takes a RegistryView so 64-bit and
32-bit views can be addressed explicitly.

Backend selection follows sys.platform:

- win32 -> WinRegistry
- anything else -> MemoryRegistry (nothing is persisted)

Example:
    ```python
    from installapplications.registry import RegistryView, default_registry

    reg = default_registry()
    reg.write_values(r"SOFTWARE\\InstallApplications", {"RepositoryUrl": url})
    print(reg.read_value(r"SOFTWARE\\InstallApplications", "RepositoryUrl"))
    ```
"""

from __future__ import annotations

from enum import Enum
import sys
from typing import Any, Protocol

SOFTWARE_KEY = r"SOFTWARE\InstallApplications"
REPOSITORY_URL_VALUE = "RepositoryUrl"
MACHINE_ENVIRONMENT_KEY = (
    r"HKLM\SYSTEM\CurrentControlSet\Control\Session Manager\Environment"
)
USER_ENVIRONMENT_KEY = r"HKCU\Environment"

_HIVE_PREFIXES = {
    "HKLM": "HKEY_LOCAL_MACHINE",
    "HKEY_LOCAL_MACHINE": "HKEY_LOCAL_MACHINE",
    "HKCU": "HKEY_CURRENT_USER",
    "HKEY_CURRENT_USER": "HKEY_CURRENT_USER",
}


class RegistryView(Enum):
    """Registry view to address (WOW64 redirection)."""

    DEFAULT = "default"
    BIT64 = "64"
    BIT32 = "32"


def split_hive(path: str) -> tuple[str, str]:
    """Split ``HKLM\\SOFTWARE\\X`` into ("HKEY_LOCAL_MACHINE", "SOFTWARE\\X").

    Paths without a recognized hive prefix are HKEY_LOCAL_MACHINE paths.
    """
    normalized = path.replace("/", "\\").strip("\\")
    head, sep, rest = normalized.partition("\\")
    hive = _HIVE_PREFIXES.get(head.upper())
    if hive is None:
        return "HKEY_LOCAL_MACHINE", normalized
    return hive, rest if sep else ""


class RegistryBackend(Protocol):
    """Protocol for registry implementations.

    Methods raise OSError (including FileNotFoundError and PermissionError)
    on failure; callers decide whether that is fatal.
    """

    def key_exists(self, path: str, view: RegistryView = RegistryView.DEFAULT) -> bool:
        ...

    def read_values(
        self, path: str, view: RegistryView = RegistryView.DEFAULT
    ) -> dict[str, Any] | None:
        """Return all values of a key, or None if the key does not exist."""
        ...

    def read_value(
        self, path: str, name: str, view: RegistryView = RegistryView.DEFAULT
    ) -> Any | None:
        """Return one value, or None if the key or value does not exist."""
        ...

    def write_values(
        self,
        path: str,
        values: dict[str, str | int],
        view: RegistryView = RegistryView.DEFAULT,
    ) -> None:
        """Create the key if needed and write values.

        ``int`` values are written as REG_DWORD, everything else as REG_SZ.
        """
        ...

    def delete_key(self, path: str, view: RegistryView = RegistryView.DEFAULT) -> bool:
        """Delete a key without subkeys. Returns False if it did not exist."""
        ...


# -------------------------------
# Windows backend
# -------------------------------


class WinRegistry:
    """Registry backend using the stdlib ``winreg`` module."""

    def __init__(self) -> None:
        import winreg

        self._winreg = winreg

    def _hive_and_flags(self, path: str, view: RegistryView) -> tuple[Any, str, int]:
        winreg = self._winreg
        hive_name, subkey = split_hive(path)
        hive = getattr(winreg, hive_name)
        flags = 0
        if view is RegistryView.BIT64:
            flags = winreg.KEY_WOW64_64KEY
        elif view is RegistryView.BIT32:
            flags = winreg.KEY_WOW64_32KEY
        return hive, subkey, flags

    def key_exists(self, path: str, view: RegistryView = RegistryView.DEFAULT) -> bool:
        hive, subkey, flags = self._hive_and_flags(path, view)
        try:
            with self._winreg.OpenKey(hive, subkey, 0, self._winreg.KEY_READ | flags):
                return True
        except FileNotFoundError:
            return False

    def read_values(
        self, path: str, view: RegistryView = RegistryView.DEFAULT
    ) -> dict[str, Any] | None:
        winreg = self._winreg
        hive, subkey, flags = self._hive_and_flags(path, view)
        try:
            key = winreg.OpenKey(hive, subkey, 0, winreg.KEY_READ | flags)
        except FileNotFoundError:
            return None
        values: dict[str, Any] = {}
        with key:
            index = 0
            while True:
                try:
                    name, data, _kind = winreg.EnumValue(key, index)
                except OSError:
                    # ERROR_NO_MORE_ITEMS
                    break
                values[name] = data
                index += 1
        return values

    def read_value(
        self, path: str, name: str, view: RegistryView = RegistryView.DEFAULT
    ) -> Any | None:
        winreg = self._winreg
        hive, subkey, flags = self._hive_and_flags(path, view)
        try:
            with winreg.OpenKey(hive, subkey, 0, winreg.KEY_READ | flags) as key:
                data, _kind = winreg.QueryValueEx(key, name)
        except FileNotFoundError:
            return None
        return data

    def write_values(
        self,
        path: str,
        values: dict[str, str | int],
        view: RegistryView = RegistryView.DEFAULT,
    ) -> None:
        winreg = self._winreg
        hive, subkey, flags = self._hive_and_flags(path, view)
        with winreg.CreateKeyEx(hive, subkey, 0, winreg.KEY_WRITE | flags) as key:
            for name, value in values.items():
                if isinstance(value, int) and not isinstance(value, bool):
                    # REG_DWORD is unsigned 32-bit
                    winreg.SetValueEx(key, name, 0, winreg.REG_DWORD, value & 0xFFFFFFFF)
                else:
                    winreg.SetValueEx(key, name, 0, winreg.REG_SZ, str(value))

    def delete_key(self, path: str, view: RegistryView = RegistryView.DEFAULT) -> bool:
        hive, subkey, flags = self._hive_and_flags(path, view)
        try:
            self._winreg.DeleteKeyEx(hive, subkey, flags, 0)
        except FileNotFoundError:
            return False
        return True


# -------------------------------
# In-memory backend
# -------------------------------


class MemoryRegistry:
    """Dictionary-backed registry for non-Windows hosts and tests.

    The 64-bit and 32-bit views are stored separately; DEFAULT is the
    64-bit view.
    """

    def __init__(self) -> None:
        self._keys: dict[tuple[str, str, str], dict[str, Any]] = {}

    @staticmethod
    def _key(path: str, view: RegistryView) -> tuple[str, str, str]:
        hive, subkey = split_hive(path)
        view_name = RegistryView.BIT64.value if view is RegistryView.DEFAULT else view.value
        return view_name, hive, subkey.lower()

    def key_exists(self, path: str, view: RegistryView = RegistryView.DEFAULT) -> bool:
        return self._key(path, view) in self._keys

    def read_values(
        self, path: str, view: RegistryView = RegistryView.DEFAULT
    ) -> dict[str, Any] | None:
        values = self._keys.get(self._key(path, view))
        return dict(values) if values is not None else None

    def read_value(
        self, path: str, name: str, view: RegistryView = RegistryView.DEFAULT
    ) -> Any | None:
        values = self._keys.get(self._key(path, view))
        if values is None:
            return None
        return values.get(name)

    def write_values(
        self,
        path: str,
        values: dict[str, str | int],
        view: RegistryView = RegistryView.DEFAULT,
    ) -> None:
        self._keys.setdefault(self._key(path, view), {}).update(values)

    def delete_key(self, path: str, view: RegistryView = RegistryView.DEFAULT) -> bool:
        return self._keys.pop(self._key(path, view), None) is not None


def default_registry() -> RegistryBackend:
    """Return the registry backend for the current platform."""
    if sys.platform == "win32":
        return WinRegistry()
    return MemoryRegistry()


def read_repository_url(registry: RegistryBackend) -> str | None:
    """Read the repository URL recorded by ``bootstrap``, if any."""
    for view in (RegistryView.BIT64, RegistryView.BIT32):
        try:
            value = registry.read_value(SOFTWARE_KEY, REPOSITORY_URL_VALUE, view)
        except OSError:
            continue
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def write_repository_url(registry: RegistryBackend, url: str) -> None:
    """Record the repository URL in both registry views.

    Raises:
        OSError: If the registry cannot be written.
    """
    for view in (RegistryView.BIT64, RegistryView.BIT32):
        registry.write_values(SOFTWARE_KEY, {REPOSITORY_URL_VALUE: url}, view)
