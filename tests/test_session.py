"""
Tests for installapplications.session module.

Tests user session detection including:
- explorer.exe detection from tasklist.exe CSV output
- Polling until a user logs on
- Timeouts and failed checks
"""

from __future__ import annotations

import pytest

from installapplications.exceptions import InstallError
from installapplications.session import user_session_active, wait_for_user_session

pytestmark = pytest.mark.unit

EXPLORER = '"explorer.exe","4312","Console","1","98,120 K"'
NO_TASKS = "INFO: No tasks are running which match the specified criteria."


class FakeClock:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _sequence(*outcomes):
    """Handler returning one outcome per call, repeating the last."""
    remaining = list(outcomes)

    def handler(argv):
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return handler


class TestUserSessionActive:
    """Tests for user_session_active."""

    def test_explorer_running(self, fake_runner):
        """Test that a listed explorer.exe means a user session."""
        runner = fake_runner(lambda argv: (0, EXPLORER))

        assert user_session_active(runner) is True
        assert runner.calls == [
            [
                "tasklist.exe",
                "/FI",
                "IMAGENAME eq explorer.exe",
                "/NH",
                "/FO",
                "CSV",
            ]
        ]

    def test_no_explorer(self, fake_runner):
        """Test that the no-match message means no session."""
        assert user_session_active(fake_runner(lambda argv: (0, NO_TASKS))) is False

    def test_failure_raises(self, fake_runner):
        """Test that a tasklist.exe failure raises InstallError."""
        with pytest.raises(InstallError, match="exit code 1"):
            user_session_active(fake_runner(lambda argv: 1))


class TestWaitForUserSession:
    """Tests for wait_for_user_session."""

    def test_session_already_present(self, fake_runner, logger):
        """Test that an existing session returns without sleeping."""
        clock = FakeClock()

        found = wait_for_user_session(
            fake_runner(lambda argv: (0, EXPLORER)),
            logger=logger,
            sleep=clock.sleep,
            clock=clock,
        )

        assert found is True
        assert clock.sleeps == []
        assert logger.messages("info") == ["User session detected"]

    def test_polls_until_logon(self, fake_runner, logger):
        """Test that checks repeat at the poll interval until explorer starts."""
        clock = FakeClock()
        runner = fake_runner(_sequence((0, NO_TASKS), (0, NO_TASKS), (0, EXPLORER)))

        found = wait_for_user_session(
            runner, poll_interval=5, logger=logger, sleep=clock.sleep, clock=clock
        )

        assert found is True
        assert clock.sleeps == [5, 5]
        assert len(runner.calls) == 3
        assert logger.messages("info") == [
            "Waiting for a user to log on",
            "User session detected",
        ]

    def test_timeout(self, fake_runner, logger):
        """Test that the wait gives up at the deadline."""
        clock = FakeClock()

        found = wait_for_user_session(
            fake_runner(lambda argv: (0, NO_TASKS)),
            timeout=25,
            poll_interval=10,
            logger=logger,
            sleep=clock.sleep,
            clock=clock,
        )

        assert found is False
        assert clock.sleeps == [10, 10, 5]
        assert "[SESSION] No user session after 25s" in logger.messages("warning")

    def test_failed_check_retries_later(self, fake_runner, logger):
        """Test that a failed check is logged and retried after a longer delay."""
        clock = FakeClock()
        runner = fake_runner(
            _sequence(InstallError("Failed to start tasklist.exe"), (0, EXPLORER))
        )

        found = wait_for_user_session(
            runner, poll_interval=10, logger=logger, sleep=clock.sleep, clock=clock
        )

        assert found is True
        assert clock.sleeps == [30.0]
        assert logger.messages("warning") == [
            "[SESSION] Error checking for user session: Failed to start tasklist.exe"
        ]
