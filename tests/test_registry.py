"""
Tests for installapplications.registry module.

Tests registry access including:
- Hive prefix parsing
- Separate 64-bit and 32-bit views in the in-memory backend
- Repository URL persistence for bootstrap
- Backend selection by platform
"""

from __future__ import annotations

import pytest

from installapplications.registry import (
    REPOSITORY_URL_VALUE,
    SOFTWARE_KEY,
    MemoryRegistry,
    RegistryView,
    default_registry,
    read_repository_url,
    split_hive,
    write_repository_url,
)

pytestmark = pytest.mark.unit


class TestSplitHive:
    """Tests for hive prefix parsing."""

    @pytest.mark.parametrize(
        "path, expected",
        [
            (r"HKLM\SOFTWARE\X", ("HKEY_LOCAL_MACHINE", r"SOFTWARE\X")),
            (r"hkcu\Environment", ("HKEY_CURRENT_USER", "Environment")),
            (r"HKEY_LOCAL_MACHINE\SOFTWARE", ("HKEY_LOCAL_MACHINE", "SOFTWARE")),
            (r"SOFTWARE\X", ("HKEY_LOCAL_MACHINE", r"SOFTWARE\X")),
            ("HKLM/SOFTWARE/X", ("HKEY_LOCAL_MACHINE", r"SOFTWARE\X")),
        ],
    )
    def test_split(self, path, expected):
        """Test prefixes, missing prefixes, and forward slashes."""
        assert split_hive(path) == expected


class TestMemoryRegistry:
    """Tests for the in-memory backend."""

    def test_views_are_separate(self):
        """Test that 64-bit and 32-bit writes do not see each other."""
        reg = MemoryRegistry()
        reg.write_values(r"SOFTWARE\X", {"A": "1"}, RegistryView.BIT32)

        assert reg.read_values(r"SOFTWARE\X", RegistryView.BIT32) == {"A": "1"}
        assert reg.read_values(r"SOFTWARE\X", RegistryView.BIT64) is None

    def test_default_is_64_bit(self):
        """Test that the default view is the 64-bit view."""
        reg = MemoryRegistry()
        reg.write_values(r"SOFTWARE\X", {"A": 1})

        assert reg.read_value(r"SOFTWARE\X", "A", RegistryView.BIT64) == 1

    def test_case_insensitive_keys(self):
        """Test that key paths compare case-insensitively."""
        reg = MemoryRegistry()
        reg.write_values(r"HKLM\Software\Vendor", {"A": "x"})

        assert reg.key_exists(r"SOFTWARE\VENDOR")

    def test_write_merges_values(self):
        """Test that writes update existing values instead of replacing the key."""
        reg = MemoryRegistry()
        reg.write_values(r"SOFTWARE\X", {"A": "1"})
        reg.write_values(r"SOFTWARE\X", {"B": "2"})

        assert reg.read_values(r"SOFTWARE\X") == {"A": "1", "B": "2"}

    def test_delete(self):
        """Test deleting present and missing keys."""
        reg = MemoryRegistry()
        reg.write_values(r"SOFTWARE\X", {"A": "1"})

        assert reg.delete_key(r"SOFTWARE\X") is True
        assert reg.delete_key(r"SOFTWARE\X") is False
        assert reg.read_value(r"SOFTWARE\X", "A") is None


class TestRepositoryUrl:
    """Tests for repository URL persistence."""

    def test_round_trip_both_views(self):
        """Test that the URL is written to both views and read back."""
        reg = MemoryRegistry()
        write_repository_url(reg, "https://example.com/repo")

        for view in (RegistryView.BIT64, RegistryView.BIT32):
            assert (
                reg.read_value(SOFTWARE_KEY, REPOSITORY_URL_VALUE, view)
                == "https://example.com/repo"
            )
        assert read_repository_url(reg) == "https://example.com/repo"

    def test_reads_32_bit_view(self):
        """Test that a URL only in the 32-bit view is found."""
        reg = MemoryRegistry()
        reg.write_values(
            SOFTWARE_KEY, {REPOSITORY_URL_VALUE: " https://x/ "}, RegistryView.BIT32
        )
        assert read_repository_url(reg) == "https://x/"

    def test_missing(self):
        """Test that a missing or blank URL reads as None."""
        reg = MemoryRegistry()
        assert read_repository_url(reg) is None
        reg.write_values(SOFTWARE_KEY, {REPOSITORY_URL_VALUE: "  "})
        assert read_repository_url(reg) is None


def test_default_registry_off_windows(monkeypatch):
    """Test that non-Windows platforms get the in-memory backend."""
    monkeypatch.setattr("installapplications.registry.sys.platform", "linux")
    assert isinstance(default_registry(), MemoryRegistry)
