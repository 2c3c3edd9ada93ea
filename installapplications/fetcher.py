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

"""Package download and cache for InstallApplications.

This module resolves a package URL to a local file in the cache directory.

Key Features:

- **Cache hits** - An existing ``<cache_dir>/<file>`` is reused without any
  network call unless a force refresh was requested.
- **Retry Logic with Exponential Backoff** - Transient failures (429, 500,
  502, 503, 504) are retried through urllib3.util.Retry.
- **Atomic Writes** - Downloads go to ``<file>.part``; the file is flushed,
  synced and closed before the rename, so the final name only ever refers
  to a complete file.
- **Integrity Verification** - SHA-256 is computed while streaming and
  checked against the manifest ``hash`` when one is given.
- **Handle release delay** - A short pause after the file is closed, before
  the installer is started. Some installers fail to open files that were
  closed only moments earlier.

Constants:

- DEFAULT_CHUNK (int): Stream chunk size (1 MiB).
- DEFAULT_RETRIES (int): HTTP retry total when the package sets none.

Example:
    ```python
    from pathlib import Path
    from installapplications.fetcher import fetch_package

    local = fetch_package(package, Path(r"C:\\Windows\\Temp\\InstallApplications"))
    print(local)
    ```
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
import shutil
import time
from typing import TYPE_CHECKING

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from installapplications import __version__
from installapplications.exceptions import FetchError
from installapplications.logging import Logger, get_global_logger

if TYPE_CHECKING:
    from installapplications.manifest import Package

# Stream size per chunk (1 MiB).
DEFAULT_CHUNK = 1024 * 1024
DEFAULT_RETRIES = 3
USER_AGENT = f"InstallApplications/{__version__}"


def make_session(retries: int = DEFAULT_RETRIES) -> requests.Session:
    """Create a requests.Session with retry/backoff defaults.

    Args:
        retries: Total retry count for transient failures.

    Returns:
        Session identifying itself as ``InstallApplications/<version>``.
    """
    s = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET", "HEAD"),
        raise_on_status=False,
    )
    s.headers.update({"User-Agent": USER_AGENT})
    s.mount("http://", HTTPAdapter(max_retries=retry))
    s.mount("https://", HTTPAdapter(max_retries=retry))
    return s


def normalize_sha256(value: str) -> str:
    """Normalize a hash string: lowercase, no ``sha256:`` prefix or dashes."""
    value = value.strip().lower()
    if value.startswith("sha256:"):
        value = value[len("sha256:") :]
    return value.replace("-", "").replace(" ", "")


def file_sha256(path: Path) -> str:
    """Compute the SHA-256 of a file on disk."""
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(DEFAULT_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def fetch_package(
    package: Package,
    cache_dir: Path,
    *,
    force_refresh: bool = False,
    session: requests.Session | None = None,
    timeout: int = 60,
    release_delay: float = 0.1,
    retries: int | None = None,
    logger: Logger | None = None,
) -> Path:
    """Make a package available as a local file in the cache directory.

    Args:
        package: Package to fetch.
        cache_dir: Cache directory (created if missing).
        force_refresh: Download even if the file is already cached.
        session: Optional session; one is created from the package's
            ``retries`` if omitted.
        timeout: Per-request timeout in seconds.
        release_delay: Seconds to wait after closing a new download.
        retries: Retry total when the package sets none.
        logger: Optional logger; defaults to the global logger.

    Returns:
        Path to ``<cache_dir>/<package.file>``.

    Raises:
        FetchError: On unsuccessful HTTP response, network failure, local
            write failure, or SHA-256 mismatch.

    Note:
        A missing ``hash`` is not an error. A cached file that does not
        match a declared hash is discarded and downloaded again.
    """
    logger = logger or get_global_logger()
    target = Path(cache_dir) / package.file
    expected = normalize_sha256(package.hash) if package.hash else None

    if target.exists() and not force_refresh:
        if expected is None:
            logger.verbose("FETCH", f"Using cached file: {target}")
            return target
        try:
            cached_digest = file_sha256(target)
        except OSError as err:
            raise FetchError(f"Cannot read cached file {target}: {err}") from err
        if cached_digest == expected:
            logger.verbose("FETCH", f"Using cached file (hash verified): {target}")
            return target
        logger.warning("FETCH", f"Cached {target.name} does not match hash; refetching")

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise FetchError(f"Cannot create cache directory {target.parent}: {err}") from err

    owns_session = session is None
    if session is None:
        if package.retries is not None:
            retries = package.retries
        session = make_session(retries if retries is not None else DEFAULT_RETRIES)

    tmp = target.with_name(target.name + ".part")
    sha = hashlib.sha256()
    started_at = time.time()
    logger.verbose("HTTP", f"GET {package.url}")

    try:
        try:
            resp = session.get(
                package.url, stream=True, allow_redirects=True, timeout=timeout
            )
            resp.raise_for_status()
        except requests.RequestException as err:
            raise FetchError(f"Download failed for {package.name}: {err}") from err

        try:
            with tmp.open("wb") as f:
                for chunk in resp.iter_content(chunk_size=DEFAULT_CHUNK):
                    if not chunk:
                        continue
                    f.write(chunk)
                    sha.update(chunk)
                f.flush()
                os.fsync(f.fileno())
            tmp.replace(target)
        except (OSError, requests.RequestException) as err:
            tmp.unlink(missing_ok=True)
            raise FetchError(f"Failed to save {package.file}: {err}") from err
        finally:
            resp.close()
    finally:
        if owns_session:
            session.close()

    digest = sha.hexdigest()
    logger.debug("FETCH", f"SHA-256: {digest}")

    if expected is not None and digest != expected:
        target.unlink(missing_ok=True)
        raise FetchError(
            f"SHA-256 mismatch for {package.file}: got {digest}, expected {expected}"
        )

    elapsed = time.time() - started_at
    logger.verbose("FETCH", f"Downloaded {target} in {elapsed:.1f}s")

    if release_delay > 0:
        time.sleep(release_delay)
    return target


def clear_cache(cache_dir: Path, logger: Logger | None = None) -> bool:
    """Delete the cache directory and everything in it.

    Args:
        cache_dir: Cache directory to purge.
        logger: Optional logger; defaults to the global logger.

    Returns:
        True if the cache is now empty, False if removal failed.
    """
    logger = logger or get_global_logger()
    cache_dir = Path(cache_dir)
    if not cache_dir.exists():
        logger.verbose("FETCH", f"Cache directory does not exist: {cache_dir}")
        return True
    try:
        shutil.rmtree(cache_dir)
    except OSError as err:
        logger.warning("FETCH", f"Could not clear cache {cache_dir}: {err}")
        return False
    logger.verbose("FETCH", f"Cleared cache: {cache_dir}")
    return True
