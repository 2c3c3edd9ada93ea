"""
Tests for installapplications.manifest module.

Tests manifest handling including:
- Phase-keyed and package-list document shapes
- Field validation and error messages naming the entry
- Ordering, type aliases, settings
- Download (requests_mock) and local file loading
- Repository URL resolution
"""

from __future__ import annotations

import json

import pytest
import requests
import requests_mock

from installapplications.exceptions import ManifestError
from installapplications.manifest import (
    PackageType,
    fetch_manifest,
    load_manifest_file,
    parse_manifest,
    resolve_manifest_url,
)

pytestmark = pytest.mark.unit

MANIFEST_URL = "https://example.com/bootstrap/manifest.json"


class TestParsePhaseKeyed:
    """Tests for the phase-keyed document shape."""

    def test_parses_both_phases(self, sample_manifest_data):
        """Test that packages land in their phases with all fields."""
        manifest = parse_manifest(sample_manifest_data)

        assert [p.name for p in manifest.setupassistant] == ["Agent", "Configure"]
        assert [p.name for p in manifest.userland] == ["Tool"]
        assert manifest.package_count == 3
        assert manifest.settings is None

        agent = manifest.setupassistant[0]
        assert agent.type is PackageType.MSI
        assert agent.file == "agent.msi"
        assert agent.arguments == ("/l*v", "C:\\Windows\\Temp\\agent.log")
        assert agent.condition == "architecture_x64"
        assert agent.required is True
        assert agent.phase == "setupassistant"

    def test_missing_phase_is_empty(self):
        """Test that an absent phase key yields an empty phase."""
        manifest = parse_manifest({"setupassistant": []})
        assert manifest.userland == ()
        assert manifest.package_count == 0

    def test_unknown_type_is_not_an_error(self):
        """Test that unrecognized types parse to UNKNOWN and keep the raw string."""
        manifest = parse_manifest(
            {
                "userland": [
                    {
                        "name": "Profile",
                        "type": "mobileconfig",
                        "url": "https://example.com/p.mobileconfig",
                        "file": "p.mobileconfig",
                    }
                ]
            }
        )
        package = manifest.userland[0]
        assert package.type is PackageType.UNKNOWN
        assert package.raw_type == "mobileconfig"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("MSI", PackageType.MSI),
            ("ps1", PackageType.POWERSHELL),
            ("PowerShell", PackageType.POWERSHELL),
            ("nupkg", PackageType.PACKAGE_MANAGER),
            ("chocolatey", PackageType.PACKAGE_MANAGER),
            ("package-manager", PackageType.PACKAGE_MANAGER),
        ],
    )
    def test_type_aliases(self, raw, expected):
        """Test type strings are case-insensitive and accept aliases."""
        assert PackageType.from_string(raw) is expected

    def test_string_arguments_are_split(self):
        """Test that an arguments string is split shell-style."""
        manifest = parse_manifest(
            {
                "setupassistant": [
                    {
                        "name": "Tool",
                        "type": "exe",
                        "url": "https://example.com/tool.exe",
                        "file": "tool.exe",
                        "arguments": '/S /D="C:\\Program Files\\Tool"',
                    }
                ]
            }
        )
        assert manifest.setupassistant[0].arguments == (
            "/S",
            "/D=C:\\Program Files\\Tool",
        )


class TestParseValidation:
    """Tests for shape errors."""

    def test_document_must_be_object(self):
        """Test that a non-object document is rejected."""
        with pytest.raises(ManifestError, match="JSON object"):
            parse_manifest([])

    def test_phase_must_be_list(self):
        """Test that a phase value must be a list."""
        with pytest.raises(ManifestError, match="'userland' must be a list"):
            parse_manifest({"userland": {"name": "x"}})

    @pytest.mark.parametrize("missing", ["name", "type", "url"])
    def test_required_fields(self, sample_manifest_data, missing):
        """Test that missing required fields name the field and the entry."""
        del sample_manifest_data["setupassistant"][1][missing]

        with pytest.raises(ManifestError) as exc_info:
            parse_manifest(sample_manifest_data)

        message = str(exc_info.value)
        assert "setupassistant[1]" in message
        assert f"'{missing}'" in message

    def test_wrong_type_names_entry(self, sample_manifest_data):
        """Test that a wrong field type names the package."""
        sample_manifest_data["userland"][0]["arguments"] = {"a": 1}

        with pytest.raises(ManifestError, match=r"userland\[0\] \('Tool'\)"):
            parse_manifest(sample_manifest_data)

    def test_entry_must_be_object(self):
        """Test that non-object entries are rejected."""
        with pytest.raises(ManifestError, match=r"setupassistant\[0\]"):
            parse_manifest({"setupassistant": ["agent.msi"]})

    def test_file_must_be_plain_name(self, sample_manifest_data):
        """Test that file cannot escape the cache directory."""
        sample_manifest_data["userland"][0]["file"] = "..\\..\\evil.exe"

        with pytest.raises(ManifestError, match="plain file name"):
            parse_manifest(sample_manifest_data)

    def test_bool_is_not_an_integer(self):
        """Test that booleans are rejected for integer fields."""
        with pytest.raises(ManifestError, match="'order' must be an integer"):
            parse_manifest(
                {
                    "packages": [
                        {
                            "name": "A",
                            "type": "exe",
                            "url": "https://example.com/a.exe",
                            "order": True,
                        }
                    ]
                }
            )


class TestParsePackageList:
    """Tests for the package-list document shape."""

    def test_phases_order_and_defaults(self):
        """Test phase assignment, stable ordering and derived file names."""
        manifest = parse_manifest(
            {
                "version": "2.1",
                "packages": [
                    {"name": "C", "type": "exe", "url": "https://e.com/c.exe", "order": 2},
                    {"name": "A", "type": "msi", "url": "https://e.com/a.msi", "order": 1},
                    {"name": "B", "type": "exe", "url": "https://e.com/b.exe", "order": 1},
                    {
                        "name": "U",
                        "type": "ps1",
                        "url": "https://e.com/scripts/u%20v2.ps1",
                        "phase": "Userland",
                    },
                ],
            }
        )

        assert manifest.version == "2.1"
        assert [p.name for p in manifest.setupassistant] == ["A", "B", "C"]
        assert [p.name for p in manifest.userland] == ["U"]
        assert manifest.userland[0].file == "u v2.ps1"
        assert manifest.userland[0].phase == "userland"

    def test_unknown_phase(self):
        """Test that an unknown phase is rejected."""
        with pytest.raises(ManifestError, match="unknown phase"):
            parse_manifest(
                {
                    "packages": [
                        {
                            "name": "A",
                            "type": "exe",
                            "url": "https://e.com/a.exe",
                            "phase": "postinstall",
                        }
                    ]
                }
            )

    def test_rich_fields(self):
        """Test dependencies, conditions, hash, timeout and retries."""
        manifest = parse_manifest(
            {
                "packages": [
                    {
                        "name": "Runtime",
                        "type": "msi",
                        "url": "https://e.com/runtime.msi",
                        "required": False,
                        "dependencies": ["Base"],
                        "hash": "AB" * 32,
                        "timeout": 600,
                        "retries": 5,
                        "conditions": {
                            "architecture": "x64",
                            "os_version": "10.0.19041",
                            "domain_joined": False,
                        },
                    }
                ]
            }
        )
        package = manifest.setupassistant[0]
        assert package.required is False
        assert package.dependencies == ("Base",)
        assert package.hash == "AB" * 32
        assert package.timeout == 600
        assert package.retries == 5
        assert package.conditions.architecture == "x64"
        assert package.conditions.domain_joined is False

    def test_settings(self):
        """Test manifest settings and their defaults."""
        manifest = parse_manifest(
            {
                "packages": [],
                "settings": {"timeout": 900, "cleanup": True, "download_path": "D:\\cache"},
            }
        )
        assert manifest.settings.timeout == 900
        assert manifest.settings.retries == 3
        assert manifest.settings.cleanup is True
        assert manifest.settings.reboot_required is False
        assert manifest.settings.download_path == "D:\\cache"

    def test_invalid_settings(self):
        """Test that settings values are type checked."""
        with pytest.raises(ManifestError, match="Settings: 'timeout'"):
            parse_manifest({"packages": [], "settings": {"timeout": "soon"}})


class TestFetchManifest:
    """Tests for manifest download."""

    def test_fetch_success(self, sample_manifest_data):
        """Test that a manifest is downloaded and parsed."""
        with requests_mock.Mocker() as m:
            m.get(MANIFEST_URL, json=sample_manifest_data)
            manifest = fetch_manifest(MANIFEST_URL)

        assert manifest.package_count == 3

    def test_fetch_accepts_bom(self, sample_manifest_data):
        """Test that a UTF-8 byte order mark is tolerated."""
        body = b"\xef\xbb\xbf" + json.dumps(sample_manifest_data).encode("utf-8")
        with requests_mock.Mocker() as m:
            m.get(MANIFEST_URL, content=body)
            manifest = fetch_manifest(MANIFEST_URL)

        assert manifest.package_count == 3

    def test_http_error(self):
        """Test that an HTTP error status raises ManifestError."""
        with requests_mock.Mocker() as m:
            m.get(MANIFEST_URL, status_code=404)
            with pytest.raises(ManifestError, match="Failed to download manifest"):
                fetch_manifest(MANIFEST_URL)

    def test_network_error(self):
        """Test that connection failures raise ManifestError."""
        with requests_mock.Mocker() as m:
            m.get(MANIFEST_URL, exc=requests.exceptions.ConnectionError("refused"))
            with pytest.raises(ManifestError):
                fetch_manifest(MANIFEST_URL)

    def test_invalid_json(self):
        """Test that a body that is not JSON raises ManifestError."""
        with requests_mock.Mocker() as m:
            m.get(MANIFEST_URL, text="<html>maintenance</html>")
            with pytest.raises(ManifestError, match="not valid JSON"):
                fetch_manifest(MANIFEST_URL)


class TestLoadManifestFile:
    """Tests for local manifest files."""

    def test_load(self, create_json_file, sample_manifest_data):
        """Test loading a manifest from disk."""
        path = create_json_file("manifest.json", sample_manifest_data)
        assert load_manifest_file(path).package_count == 3

    def test_missing_file(self, tmp_path):
        """Test that a missing file raises ManifestError."""
        with pytest.raises(ManifestError, match="Cannot read manifest file"):
            load_manifest_file(tmp_path / "missing.json")


class TestResolveManifestUrl:
    """Tests for repository URL resolution."""

    @pytest.mark.parametrize(
        "repo, expected",
        [
            ("https://example.com/bootstrap", "https://example.com/bootstrap/manifest.json"),
            ("https://example.com/bootstrap/", "https://example.com/bootstrap/manifest.json"),
            ("https://example.com/custom.json", "https://example.com/custom.json"),
            (
                "https://example.com/custom.JSON?sig=abc",
                "https://example.com/custom.JSON?sig=abc",
            ),
        ],
    )
    def test_resolve(self, repo, expected):
        """Test that /manifest.json is appended unless the URL names a .json file."""
        assert resolve_manifest_url(repo) == expected
