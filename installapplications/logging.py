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

"""Logging interface for InstallApplications.

This module provides a configurable logging interface that library modules
can use for output without depending on the CLI. The logger can be configured
globally or passed as a parameter for better isolation.

Console output levels:
- Section/Step/Info: Always printed (progress indicators)
- Success/Skipped/Failure/Warning: Always printed (per-package outcomes)
- Verbose: Only printed when verbose mode is enabled
- Debug: Only printed when debug mode is enabled (implies verbose)

When a log file is configured, every message is also appended to it with a
millisecond timestamp, whatever the console verbosity.

Example:
    Configure global logger:
        ```python
        from installapplications.logging import get_logger, set_global_logger

        logger = get_logger(verbose=True, log_file=Path("logs/run.log"))
        set_global_logger(logger)
        ```

    Use with dependency injection:

        def my_function(logger=None):
            if logger is None:
                logger = get_global_logger()
            logger.verbose("MODULE", "Processing...")

Note:
    The default global logger is silent, so library functions won't print
    anything unless explicitly configured. The CLI configures the global
    logger when commands are executed.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Protocol


class Logger(Protocol):
    """Protocol for logger implementations."""

    def section(self, title: str) -> None:
        """Print a section header (e.g., the start of a phase).

        Args:
            title: Section title.
        """
        ...

    def step(self, step: int, total: int, message: str) -> None:
        """Print a step indicator.

        Args:
            step: Current step number (1-based).
            total: Total number of steps.
            message: Step description.
        """
        ...

    def info(self, message: str) -> None:
        """Print an informational message."""
        ...

    def success(self, message: str) -> None:
        """Print a success outcome line."""
        ...

    def skipped(self, message: str) -> None:
        """Print a skipped outcome line (message includes the reason)."""
        ...

    def failure(self, message: str) -> None:
        """Print a failure outcome line."""
        ...

    def warning(self, prefix: str, message: str) -> None:
        """Print a warning.

        Args:
            prefix: Message prefix (e.g., "STATUS", "FETCH").
            message: Warning message.
        """
        ...

    def verbose(self, prefix: str, message: str) -> None:
        """Print a verbose log message.

        Args:
            prefix: Message prefix (e.g., "STATUS", "INSTALL").
            message: Log message.
        """
        ...

    def debug(self, prefix: str, message: str) -> None:
        """Print a debug log message.

        Args:
            prefix: Message prefix (e.g., "HTTP", "PROCESS").
            message: Log message.
        """
        ...


class DefaultLogger:
    """Default logger implementation that prints to stdout.

    This logger respects verbose and debug flags for console output and
    mirrors every message into an optional log file.
    """

    def __init__(
        self,
        verbose: bool = False,
        debug: bool = False,
        log_file: Path | None = None,
    ) -> None:
        """Initialize logger with verbosity settings.

        Args:
            verbose: If True, print verbose messages.
            debug: If True, print debug messages (implies verbose).
            log_file: Optional file that receives every message.
        """
        self._verbose = verbose or debug
        self._debug = debug
        self._log_file = log_file
        if log_file is not None:
            try:
                log_file.parent.mkdir(parents=True, exist_ok=True)
            except OSError as err:
                print(f"[!] Could not create log directory {log_file.parent}: {err}")
                self._log_file = None

    @property
    def log_file(self) -> Path | None:
        return self._log_file

    def _write(self, level: str, message: str) -> None:
        if self._log_file is None:
            return
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        try:
            with self._log_file.open("a", encoding="utf-8") as f:
                f.write(f"[{stamp}] {level:<7} {message}\n")
        except OSError as err:
            # Stop writing to a broken log file; the run goes on.
            print(f"[!] Log file write failed ({err}); file logging disabled")
            self._log_file = None

    def section(self, title: str) -> None:
        print()
        print(f"[>] {title}")
        self._write("SECTION", title)

    def step(self, step: int, total: int, message: str) -> None:
        print(f"[{step}/{total}] {message}")
        self._write("STEP", f"[{step}/{total}] {message}")

    def info(self, message: str) -> None:
        print(f"[i] {message}")
        self._write("INFO", message)

    def success(self, message: str) -> None:
        print(f"[+] {message}")
        self._write("SUCCESS", message)

    def skipped(self, message: str) -> None:
        print(f"[-] {message}")
        self._write("SKIPPED", message)

    def failure(self, message: str) -> None:
        print(f"[X] {message}")
        self._write("ERROR", message)

    def warning(self, prefix: str, message: str) -> None:
        print(f"[!] [{prefix}] {message}")
        self._write("WARNING", f"[{prefix}] {message}")

    def verbose(self, prefix: str, message: str) -> None:
        """Print a verbose log message (only when verbose mode is active)."""
        if self._verbose:
            print(f"[{prefix}] {message}")
        self._write("VERBOSE", f"[{prefix}] {message}")

    def debug(self, prefix: str, message: str) -> None:
        """Print a debug log message (only when debug mode is active)."""
        if self._debug:
            print(f"[DBG] [{prefix}] {message}")
        self._write("DEBUG", f"[{prefix}] {message}")


class SilentLogger:
    """Logger that suppresses all output.

    Useful for programmatic usage when output is not desired.
    """

    def section(self, title: str) -> None:
        pass

    def step(self, step: int, total: int, message: str) -> None:
        pass

    def info(self, message: str) -> None:
        pass

    def success(self, message: str) -> None:
        pass

    def skipped(self, message: str) -> None:
        pass

    def failure(self, message: str) -> None:
        pass

    def warning(self, prefix: str, message: str) -> None:
        pass

    def verbose(self, prefix: str, message: str) -> None:
        pass

    def debug(self, prefix: str, message: str) -> None:
        pass


# Global logger instance (defaults to silent)
_global_logger: Logger = SilentLogger()


def get_logger(
    verbose: bool = False, debug: bool = False, log_file: Path | None = None
) -> Logger:
    """Get a logger instance with specified verbosity.

    Args:
        verbose: If True, logger will print verbose messages.
        debug: If True, logger will print debug messages (implies verbose).
        log_file: Optional path that receives every message with a timestamp.

    Returns:
        A logger instance configured with the specified verbosity.
    """
    return DefaultLogger(verbose=verbose, debug=debug, log_file=log_file)


def get_global_logger() -> Logger:
    """Get the global logger instance.

    Returns:
        The current global logger instance.

    Note:
        The default global logger is silent. Use set_global_logger() to
        configure it, or pass a logger instance directly to functions.
    """
    return _global_logger


def set_global_logger(logger: Logger) -> None:
    """Set the global logger instance.

    Args:
        logger: Logger instance to use as the global logger.
    """
    global _global_logger
    _global_logger = logger


def log_file_name(now: datetime | None = None) -> str:
    """Return the per-run log file name, e.g. ``2025-08-30-130501.log``."""
    now = now or datetime.now()
    return now.strftime("%Y-%m-%d-%H%M%S") + ".log"
