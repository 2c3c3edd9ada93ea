"""
InstallApplications for Windows.

Bootstraps software installation on Windows machines during OOBE and in
later user sessions, driven by a remotely hosted JSON manifest.

Features
--------
  - Two installation phases: setupassistant (pre-login) and userland
  - MSI, EXE, PowerShell and Chocolatey (.nupkg) packages
  - Architecture and machine conditions with fail-open semantics
  - Local download cache with SHA-256 verification
  - Durable per-phase status in the registry and a JSON status file
  - Startup task bootstrap for unattended runs

Quick Start
-----------
Run both phases from a manifest URL:

    $ installapplications --url https://example.com/bootstrap/manifest.json

Run one phase from a repository:

    $ installapplications install --repo https://example.com/bootstrap --phase userland

Show recorded status:

    $ installapplications --status

Package Structure
-----------------
cli : module
    Command-line interface with argparse.
core : module
    High-level entry points (install, status, cache).
orchestrator : module
    Phase state machine.
manifest : module
    Manifest download and parsing.
conditions : module
    Package applicability checks.
fetcher : module
    Package download and cache.
installers : package
    Installer strategies (msi, exe, powershell, chocolatey).
status : module
    Per-phase status in the registry and status file.
service : module
    Startup task registration and bootstrap.
session : module
    Waiting for a logged-on user before userland.
config : package
    YAML settings loading and merging.

Public API
----------
    from installapplications.core import install_from_url
    from installapplications.manifest import fetch_manifest, parse_manifest
    from installapplications.validation import validate_manifest

Project Information
-------------------
Author: Roger Cibrian
License: Apache-2.0
"""

__version__ = "2025.08.30.1300"
__author__ = "Roger Cibrian"
__license__ = "Apache-2.0"
__description__ = "Manifest-driven package installation for Windows"

__all__ = [
    "__version__",
    "__author__",
    "__license__",
    "__description__",
]
