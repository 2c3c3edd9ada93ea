"""
Tests for installapplications.validation module.

Tests manifest validation including:
- Valid manifests from files and URLs
- Shape errors reported as an invalid result (never raised)
- Warnings for unknown types, conditions, duplicates, and empty manifests
- Dependency and hash errors
- Optional package URL checks
- Optional package hash checks
"""

from __future__ import annotations

import hashlib

import pytest
import requests
import requests_mock

from installapplications.validation import validate_manifest

pytestmark = pytest.mark.unit

MANIFEST_URL = "https://example.com/bootstrap/manifest.json"


def _entry(name: str, **kwargs):
    entry = {
        "name": name,
        "type": "exe",
        "url": f"https://example.com/{name.lower()}.exe",
        "file": f"{name.lower()}.exe",
    }
    entry.update(kwargs)
    return entry


class TestValidateFile:
    """Tests for local manifest files."""

    def test_valid(self, create_json_file, sample_manifest_data):
        """Test that a well-formed manifest is valid with no warnings."""
        path = create_json_file("manifest.json", sample_manifest_data)

        result = validate_manifest(file=path)

        assert result.status == "valid"
        assert result.errors == []
        assert result.warnings == []
        assert result.package_count == 3
        assert result.source == str(path)

    def test_shape_error(self, create_json_file):
        """Test that a missing required field makes the result invalid."""
        path = create_json_file(
            "manifest.json", {"userland": [{"name": "Tool", "type": "exe"}]}
        )

        result = validate_manifest(file=path)

        assert result.status == "invalid"
        assert len(result.errors) == 1
        assert "'url'" in result.errors[0]

    def test_missing_file(self, tmp_test_dir):
        """Test that a missing file is an invalid result."""
        result = validate_manifest(file=tmp_test_dir / "missing.json")

        assert result.status == "invalid"
        assert "Cannot read manifest file" in result.errors[0]

    def test_warnings(self, create_json_file):
        """Test warnings that do not make the manifest invalid."""
        data = {
            "setupassistant": [
                _entry("Store", type="appx"),
                _entry("Agent", condition="domain_joined"),
                _entry("Tool"),
                _entry("Tool", file="tool.exe"),
            ]
        }
        path = create_json_file("manifest.json", data)

        result = validate_manifest(file=path)

        assert result.status == "valid"
        text = "\n".join(result.warnings)
        assert "unknown type 'appx' will be skipped" in text
        assert "condition 'domain_joined' is not recognized" in text
        assert "duplicate package name" in text
        assert "file 'tool.exe' is used twice" in text

    def test_empty_manifest_warns(self, create_json_file):
        """Test that an empty manifest is valid with a warning."""
        path = create_json_file("manifest.json", {"setupassistant": [], "userland": []})

        result = validate_manifest(file=path)

        assert result.status == "valid"
        assert result.warnings == ["Manifest contains no packages"]

    def test_dependency_errors(self, create_json_file):
        """Test that dependencies must name an earlier package."""
        data = {
            "setupassistant": [_entry("App", dependencies=["Runtime"]), _entry("Runtime")],
            "userland": [_entry("Addon", dependencies=["Runtime"])],
        }
        path = create_json_file("manifest.json", data)

        result = validate_manifest(file=path)

        assert result.status == "invalid"
        assert result.errors == [
            "setupassistant: App: dependency 'Runtime' does not name an earlier package"
        ]

    def test_hash_error(self, create_json_file):
        """Test that a malformed hash is an error and a prefixed one is not."""
        data = {
            "userland": [
                _entry("A", hash="abc123"),
                _entry("B", hash="sha256:" + "AB" * 32),
            ]
        }
        path = create_json_file("manifest.json", data)

        result = validate_manifest(file=path)

        assert result.errors == ["userland: A: hash is not a SHA-256 hex digest"]


class TestValidateUrl:
    """Tests for manifests fetched over HTTP."""

    def test_valid_url(self, sample_manifest_data):
        """Test validating a manifest URL."""
        with requests_mock.Mocker() as m:
            m.get(MANIFEST_URL, json=sample_manifest_data)
            result = validate_manifest(url=MANIFEST_URL)

        assert result.status == "valid"
        assert result.source == MANIFEST_URL

    def test_http_error(self):
        """Test that an unreachable manifest is an invalid result."""
        with requests_mock.Mocker() as m:
            m.get(MANIFEST_URL, status_code=404)
            result = validate_manifest(url=MANIFEST_URL)

        assert result.status == "invalid"
        assert "Failed to download manifest" in result.errors[0]

    def test_check_urls(self, create_json_file, logger):
        """Test package URL checks with HEAD and the GET fallback."""
        data = {"userland": [_entry("A"), _entry("B"), _entry("C"), _entry("D")]}
        path = create_json_file("manifest.json", data)

        with requests_mock.Mocker() as m:
            m.head("https://example.com/a.exe", status_code=200)
            m.head("https://example.com/b.exe", status_code=404)
            m.head("https://example.com/c.exe", status_code=405)
            m.get("https://example.com/c.exe", status_code=200)
            m.head(
                "https://example.com/d.exe",
                exc=requests.exceptions.ConnectionError("refused"),
            )
            result = validate_manifest(file=path, check_urls=True, logger=logger)

        assert result.status == "invalid"
        assert result.errors[0] == "userland: B: URL returned HTTP 404"
        assert result.errors[1].startswith("userland: D: URL unreachable")
        assert len(result.errors) == 2

    def test_check_hashes(self, create_json_file, logger):
        """Test that declared hashes are verified against the downloaded bytes."""
        good = hashlib.sha256(b"good payload").hexdigest()
        data = {
            "setupassistant": [
                _entry("A", hash=good),
                _entry("B", hash=good),
                _entry("C"),
            ]
        }
        path = create_json_file("manifest.json", data)

        with requests_mock.Mocker() as m:
            m.get("https://example.com/a.exe", content=b"good payload")
            m.get("https://example.com/b.exe", content=b"tampered payload")
            result = validate_manifest(file=path, check_hashes=True, logger=logger)

            assert [r.url for r in m.request_history] == [
                "https://example.com/a.exe",
                "https://example.com/b.exe",
            ]

        assert result.status == "invalid"
        assert len(result.errors) == 1
        assert result.errors[0].startswith("setupassistant: B: SHA-256 mismatch")
        assert result.warnings == [
            "setupassistant: C: no hash provided, skipping verification"
        ]


@pytest.mark.parametrize("kwargs", [{}, {"url": MANIFEST_URL, "file": "m.json"}])
def test_requires_exactly_one_source(kwargs):
    """Test that neither or both sources raise ValueError."""
    with pytest.raises(ValueError):
        validate_manifest(**kwargs)
