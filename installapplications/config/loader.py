"""
Settings loading and merging for InstallApplications.

This module builds the effective runtime settings from up to four layers,
later layers overriding earlier ones:

Configuration Layers
--------------------
1. **Built-in defaults** (platform dependent paths, see DEFAULTS)
2. **Machine settings** (``%ProgramData%\\InstallApplications\\config.yaml``)
   - Optional; only read on Windows when present
3. **Explicit settings file** (``--config PATH`` or ``INSTALLAPPS_CONFIG``)
   - Optional; must exist when given
4. **Environment** (``INSTALLAPPS_CACHE_DIR``, ``INSTALLAPPS_STATUS_FILE``,
   ``INSTALLAPPS_LOG_DIR``, ``INSTALLAPPS_FAILURE_POLICY``)
   - A ``.env`` file in the working directory is loaded first

Merge Behavior
--------------
  - **Dicts**: Recursively merged (keys from overlay override base)
  - **Lists**: Completely replaced (NOT appended/extended)
  - **Scalars**: Overwritten (strings, numbers, booleans)

Path Resolution
---------------
Relative ``cache_dir``, ``status_file`` and ``log_dir`` values in a settings
file are resolved against that file's directory.

Error Handling
--------------
- ConfigError: missing explicit file, YAML parse errors, non-mapping
  documents, invalid values
- All errors are chained with "from err" for better debugging

Examples
--------
    >>> from pathlib import Path
    >>> from installapplications.config import load_settings
    >>> settings = load_settings(Path("site.yaml"))
    >>> settings.required_failure_policy
    'continue'
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import sys
import tempfile
from typing import Any

from dotenv import load_dotenv
import yaml

from installapplications.exceptions import ConfigError
from installapplications.logging import Logger, get_global_logger

FAILURE_POLICIES = ("continue", "abort-phase", "abort-run")
PATH_KEYS = ("cache_dir", "status_file", "log_dir")
ENV_OVERRIDES = {
    "INSTALLAPPS_CACHE_DIR": "cache_dir",
    "INSTALLAPPS_STATUS_FILE": "status_file",
    "INSTALLAPPS_LOG_DIR": "log_dir",
    "INSTALLAPPS_FAILURE_POLICY": "required_failure_policy",
}


@dataclass(frozen=True)
class Settings:
    """Effective runtime settings.

    Attributes:
        cache_dir: Directory for downloaded packages.
        status_file: JSON status file path.
        log_dir: Directory for per-run log files.
        status_max_age_hours: Terminal status records older than this are
            removed at startup.
        required_failure_policy: What a failed required package does:
            "continue", "abort-phase", or "abort-run".
        gate_userland_on_setup_failure: Skip userland when setupassistant
            failed.
        package_timeout: Default install timeout in seconds.
        file_release_delay: Seconds to wait after closing a download.
        http_timeout: Per-request HTTP timeout in seconds.
        service_name: Startup task name used by ``service``/``bootstrap``.
        wait_for_user_session: Hold the userland phase until a user has
            logged on (the startup task passes --wait-for-session).
        user_session_timeout: Seconds to wait for a user session; 0 waits
            without limit.
        user_session_poll_interval: Seconds between session checks.
        service_command: Command line the service runs; defaults to this
            program's ``install`` command.
        sources: Settings files that contributed, in merge order.
    """

    cache_dir: Path
    status_file: Path
    log_dir: Path
    status_max_age_hours: float = 24.0
    required_failure_policy: str = "continue"
    gate_userland_on_setup_failure: bool = False
    package_timeout: int = 3600
    file_release_delay: float = 0.1
    http_timeout: int = 60
    wait_for_user_session: bool = False
    user_session_timeout: float = 0.0
    user_session_poll_interval: float = 10.0
    service_name: str = "InstallApplicationsService"
    service_command: tuple[str, ...] | None = None
    sources: tuple[Path, ...] = ()


# -------------------------------
# Defaults
# -------------------------------


def _program_data() -> Path:
    return Path(os.environ.get("ProgramData") or r"C:\ProgramData") / "InstallApplications"


def default_values() -> dict[str, Any]:
    """Return the built-in defaults for the current platform."""
    if sys.platform == "win32":
        program_files = Path(os.environ.get("ProgramFiles") or r"C:\Program Files")
        return {
            "cache_dir": str(Path(tempfile.gettempdir()) / "InstallApplications"),
            "status_file": str(_program_data() / "status.json"),
            "log_dir": str(program_files / "InstallApplications" / "logs"),
        }
    base = Path(tempfile.gettempdir()) / "InstallApplications"
    return {
        "cache_dir": str(base / "cache"),
        "status_file": str(base / "status.json"),
        "log_dir": str(base / "logs"),
    }


def machine_settings_path() -> Path | None:
    """Return the machine-wide settings file path (Windows only)."""
    if sys.platform != "win32":
        return None
    return _program_data() / "config.yaml"


# -------------------------------
# YAML helpers
# -------------------------------


def _load_yaml_file(p: Path) -> dict[str, Any]:
    """
    Load a YAML settings file and return its mapping.

    An empty file is an empty mapping.

    Raises:
      ConfigError - missing file, invalid YAML, or non-mapping document
    """
    if not p.exists():
        raise ConfigError(f"Settings file not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as err:
        raise ConfigError(f"Error parsing YAML: {p}: {err}") from err
    except OSError as err:
        raise ConfigError(f"Cannot read settings file {p}: {err}") from err
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping (dict): {p}")
    return data


def _deep_merge_dicts(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """
    Deep-merge two dicts with "overlay wins".

    Rules:
      - dict + dict -> deep merge
      - list + list -> overlay REPLACES base (not concatenated)
      - everything else -> overlay overwrites base

    This function does not mutate inputs; returns a new dict.
    """
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def _resolve_paths(layer: dict[str, Any], base_dir: Path) -> dict[str, Any]:
    resolved = dict(layer)
    for key in PATH_KEYS:
        value = resolved.get(key)
        if isinstance(value, str) and value:
            path = Path(os.path.expandvars(value))
            if not path.is_absolute():
                path = base_dir / path
            resolved[key] = str(path)
    return resolved


# -------------------------------
# Coercion
# -------------------------------


def _number(cfg: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = cfg.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"Setting '{key}' must be a number")
    try:
        number = kind(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"Setting '{key}' must be a number, got {value!r}") from err
    if number < 0:
        raise ConfigError(f"Setting '{key}' must not be negative")
    return number


def _flag(cfg: dict[str, Any], key: str, default: bool) -> bool:
    value = cfg.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Setting '{key}' must be true or false, got {value!r}")


def _build_settings(cfg: dict[str, Any], sources: list[Path]) -> Settings:
    policy = str(cfg.get("required_failure_policy", "continue")).strip().lower()
    if policy not in FAILURE_POLICIES:
        raise ConfigError(
            f"Invalid required_failure_policy {policy!r} "
            f"(expected one of: {', '.join(FAILURE_POLICIES)})"
        )

    command = cfg.get("service_command")
    if command is not None:
        if isinstance(command, str):
            command = [command]
        if not isinstance(command, list) or not all(isinstance(c, str) for c in command):
            raise ConfigError("Setting 'service_command' must be a string or list of strings")
        command = tuple(command)

    defaults = Settings(cache_dir=Path(), status_file=Path(), log_dir=Path())
    return Settings(
        cache_dir=Path(cfg["cache_dir"]),
        status_file=Path(cfg["status_file"]),
        log_dir=Path(cfg["log_dir"]),
        status_max_age_hours=_number(
            cfg, "status_max_age_hours", float, defaults.status_max_age_hours
        ),
        required_failure_policy=policy,
        gate_userland_on_setup_failure=_flag(
            cfg, "gate_userland_on_setup_failure", defaults.gate_userland_on_setup_failure
        ),
        package_timeout=_number(cfg, "package_timeout", int, defaults.package_timeout),
        file_release_delay=_number(
            cfg, "file_release_delay", float, defaults.file_release_delay
        ),
        http_timeout=_number(cfg, "http_timeout", int, defaults.http_timeout),
        wait_for_user_session=_flag(
            cfg, "wait_for_user_session", defaults.wait_for_user_session
        ),
        user_session_timeout=_number(
            cfg, "user_session_timeout", float, defaults.user_session_timeout
        ),
        user_session_poll_interval=_number(
            cfg,
            "user_session_poll_interval",
            float,
            defaults.user_session_poll_interval,
        ),
        service_name=str(cfg.get("service_name") or defaults.service_name),
        service_command=command,
        sources=tuple(sources),
    )


# -------------------------------
# Public API
# -------------------------------


def load_settings(
    config_path: Path | None = None,
    *,
    machine_path: Path | None = None,
    environ: dict[str, str] | None = None,
    logger: Logger | None = None,
) -> Settings:
    """
    Load and merge the effective settings.

    Steps
      1) Start from built-in defaults.
      2) Merge the machine settings file if present.
      3) Merge the explicit settings file (``config_path`` or
         ``INSTALLAPPS_CONFIG``), which must exist.
      4) Apply ``INSTALLAPPS_*`` environment overrides (``.env`` loaded).

    Args:
        config_path: Explicit settings file.
        machine_path: Overrides machine_settings_path() (tests).
        environ: Environment mapping; defaults to os.environ after
            load_dotenv().
        logger: Optional logger; defaults to the global logger.

    Returns:
        Settings.

    Raises:
        ConfigError: On a missing explicit file, invalid YAML, or invalid
            values.
    """
    logger = logger or get_global_logger()
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    merged = default_values()
    sources: list[Path] = []

    machine = machine_path if machine_path is not None else machine_settings_path()
    if machine is not None and machine.exists():
        logger.verbose("CONFIG", f"Loading: {machine}")
        layer = _load_yaml_file(machine)
        merged = _deep_merge_dicts(merged, _resolve_paths(layer, machine.parent))
        sources.append(machine)

    if config_path is None and environ.get("INSTALLAPPS_CONFIG"):
        config_path = Path(environ["INSTALLAPPS_CONFIG"])
    if config_path is not None:
        config_path = Path(config_path).resolve()
        logger.verbose("CONFIG", f"Loading: {config_path}")
        layer = _load_yaml_file(config_path)
        merged = _deep_merge_dicts(merged, _resolve_paths(layer, config_path.parent))
        sources.append(config_path)

    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            logger.debug("CONFIG", f"{key} overridden by {env_name}")
            merged[key] = value

    settings = _build_settings(merged, sources)
    logger.debug("CONFIG", f"Cache directory: {settings.cache_dir}")
    logger.debug("CONFIG", f"Status file: {settings.status_file}")
    logger.debug("CONFIG", f"Failure policy: {settings.required_failure_policy}")
    return settings
