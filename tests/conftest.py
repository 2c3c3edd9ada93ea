"""
Pytest configuration and shared fixtures for InstallApplications tests.

This module provides reusable fixtures and test doubles used across
the test suite:

- RecordingLogger: Logger that keeps every message for assertions
- FakeRunner: ProcessRunner stand-in that records command lines
- MemoryRegistry: In-process registry backend
- Settings and manifest data factories
- Corrupt .nupkg archives
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
import json
from pathlib import Path
from typing import Any
import zipfile

import pytest
import yaml

from installapplications.config import Settings
from installapplications.registry import MemoryRegistry
from installapplications.results import ProcessResult


class RecordingLogger:
    """Logger that records (level, message) pairs instead of printing."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str]] = []

    def _add(self, level: str, message: str) -> None:
        self.records.append((level, message))

    def section(self, title: str) -> None:
        self._add("section", title)

    def step(self, step: int, total: int, message: str) -> None:
        self._add("step", f"[{step}/{total}] {message}")

    def info(self, message: str) -> None:
        self._add("info", message)

    def success(self, message: str) -> None:
        self._add("success", message)

    def skipped(self, message: str) -> None:
        self._add("skipped", message)

    def failure(self, message: str) -> None:
        self._add("failure", message)

    def warning(self, prefix: str, message: str) -> None:
        self._add("warning", f"[{prefix}] {message}")

    def verbose(self, prefix: str, message: str) -> None:
        self._add("verbose", f"[{prefix}] {message}")

    def debug(self, prefix: str, message: str) -> None:
        self._add("debug", f"[{prefix}] {message}")

    def messages(self, level: str) -> list[str]:
        return [m for lvl, m in self.records if lvl == level]


class FakeRunner:
    """ProcessRunner stand-in.

    The handler receives the argv list and returns an exit code, an
    (exit_code, stdout) tuple, or raises (e.g. InstallError).
    """

    def __init__(self, handler: Callable[[list[str]], Any] | None = None) -> None:
        self.calls: list[list[str]] = []
        self.timeouts: list[float | None] = []
        self._handler = handler or (lambda argv: 0)

    def run(self, args, *, timeout=None, env=None) -> ProcessResult:
        argv = [str(a) for a in args]
        self.calls.append(argv)
        self.timeouts.append(timeout)
        outcome = self._handler(argv)
        if isinstance(outcome, tuple):
            code, stdout = outcome
        else:
            code, stdout = outcome, ""
        return ProcessResult(args=tuple(argv), exit_code=code, stdout=stdout)


@pytest.fixture
def tmp_test_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary directory for test artifacts.

    Automatically cleaned up after test completion.
    """
    return tmp_path


@pytest.fixture
def logger() -> RecordingLogger:
    """Provide a logger that records messages."""
    return RecordingLogger()


@pytest.fixture
def registry() -> MemoryRegistry:
    """Provide an empty in-memory registry."""
    return MemoryRegistry()


@pytest.fixture
def fake_runner():
    """
    Factory fixture for FakeRunner instances.

    Usage:
        runner = fake_runner(lambda argv: 0)
    """

    def _create(handler: Callable[[list[str]], Any] | None = None) -> FakeRunner:
        return FakeRunner(handler)

    return _create


@pytest.fixture
def settings(tmp_test_dir: Path) -> Settings:
    """Provide settings rooted in the temporary directory (no release delay)."""
    return Settings(
        cache_dir=tmp_test_dir / "cache",
        status_file=tmp_test_dir / "status" / "status.json",
        log_dir=tmp_test_dir / "logs",
        file_release_delay=0,
    )


@pytest.fixture
def fixed_clock():
    """
    Factory fixture for a settable clock.

    Usage:
        clock = fixed_clock(datetime(2025, 1, 1, 12, 0, 0))
        clock.now = datetime(2025, 1, 2)
    """

    class _Clock:
        def __init__(self, now: datetime) -> None:
            self.now = now

        def __call__(self) -> datetime:
            return self.now

    return _Clock


@pytest.fixture
def sample_manifest_data() -> dict[str, Any]:
    """
    Provide a phase-keyed manifest document.

    One MSI for x64 only and one PowerShell script in setupassistant; one
    EXE in userland.
    """
    return {
        "setupassistant": [
            {
                "name": "Agent",
                "type": "msi",
                "url": "https://example.com/packages/agent.msi",
                "file": "agent.msi",
                "arguments": ["/l*v", "C:\\Windows\\Temp\\agent.log"],
                "condition": "architecture_x64",
            },
            {
                "name": "Configure",
                "type": "powershell",
                "url": "https://example.com/packages/configure.ps1",
                "file": "configure.ps1",
            },
        ],
        "userland": [
            {
                "name": "Tool",
                "type": "exe",
                "url": "https://example.com/packages/tool.exe",
                "file": "tool.exe",
                "arguments": ["/S"],
            }
        ],
    }


@pytest.fixture
def create_yaml_file(tmp_test_dir: Path):
    """
    Factory fixture for creating temporary YAML files.

    Usage:
        yaml_path = create_yaml_file("config.yaml", {"key": "value"})
    """

    def _create(filename: str, data: dict[str, Any]) -> Path:
        path = tmp_test_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            yaml.dump(data, f)
        return path

    return _create


@pytest.fixture
def create_json_file(tmp_test_dir: Path):
    """
    Factory fixture for creating temporary JSON files.

    Usage:
        manifest_path = create_json_file("manifest.json", {"userland": []})
    """

    def _create(filename: str, data: Any) -> Path:
        path = tmp_test_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _create


@pytest.fixture
def create_corrupt_nupkg(tmp_test_dir: Path):
    """
    Factory fixture for .nupkg archives whose .nuspec cannot be inflated.

    The first byte of the deflated .nuspec is replaced with 0x07, which
    selects the reserved deflate block type, so reading the member raises
    zlib.error rather than a zipfile error.

    Usage:
        path = create_corrupt_nupkg("vlc-3.0.20.nupkg")
    """

    def _create(filename: str, directory: Path | None = None) -> Path:
        path = (directory or tmp_test_dir) / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr("package.nuspec", "<package><metadata/></package>" * 20)
        with zipfile.ZipFile(path) as archive:
            offset = archive.getinfo("package.nuspec").header_offset
        data = bytearray(path.read_bytes())
        name_len = int.from_bytes(data[offset + 26 : offset + 28], "little")
        extra_len = int.from_bytes(data[offset + 28 : offset + 30], "little")
        data[offset + 30 + name_len + extra_len] = 0x07
        path.write_bytes(bytes(data))
        return path

    return _create
