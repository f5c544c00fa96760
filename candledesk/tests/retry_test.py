"""Tests for RetryExecutor and RetryConfig."""

import asyncio
import logging

import pytest

from candledesk.core.errors import ApiError, ErrorType, NetworkError, ParseError, ValidationError
from candledesk.sync.retry import RetryConfig, RetryExecutor, RetryFailed, RetrySuccess


class Flaky:
    """Raises the queued errors in order, then returns *value*."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def run(executor, operation, config):
    return asyncio.run(executor.execute(operation, config, context="test op"))


class TestRetryExecutor:
    """Test attempt counting and retry decisions."""

    def test_success_first_try(self):
        op = Flaky([])
        outcome = run(RetryExecutor(sleep=RecordingSleep()), op, RetryConfig())

        assert isinstance(outcome, RetrySuccess)
        assert outcome.ok
        assert outcome.value == "ok"
        assert outcome.attempts == 1

    def test_two_failures_then_success(self):
        """Transient errors are retried until the operation succeeds."""
        op = Flaky([NetworkError("reset"), NetworkError("reset")], value=42)
        config = RetryConfig(max_attempts=3, initial_delay=0)

        outcome = run(RetryExecutor(sleep=RecordingSleep()), op, config)

        assert outcome.ok
        assert outcome.value == 42
        assert outcome.attempts == 3
        assert op.calls == 3

    def test_gives_up_after_max_attempts(self):
        op = Flaky([NetworkError("down")] * 5)
        config = RetryConfig(max_attempts=3, initial_delay=0)

        outcome = run(RetryExecutor(sleep=RecordingSleep()), op, config)

        assert isinstance(outcome, RetryFailed)
        assert not outcome.ok
        assert outcome.attempts == 3
        assert outcome.error.error_type is ErrorType.NETWORK
        assert op.calls == 3

    def test_validation_error_is_not_retried(self):
        op = Flaky([ValidationError("bad symbol")] * 5)

        outcome = run(RetryExecutor(sleep=RecordingSleep()), op, RetryConfig(max_attempts=5))

        assert not outcome.ok
        assert outcome.attempts == 1
        assert op.calls == 1

    def test_auth_failure_is_not_retried(self):
        op = Flaky([ApiError("unauthorized", status=401)] * 5)

        outcome = run(RetryExecutor(sleep=RecordingSleep()), op, RetryConfig(max_attempts=5))

        assert not outcome.ok
        assert outcome.attempts == 1
        assert outcome.error.auth_failure

    def test_server_error_is_retried(self):
        op = Flaky([ApiError("busy", status=503)])

        outcome = run(RetryExecutor(sleep=RecordingSleep()), op, RetryConfig(max_attempts=2, initial_delay=0))

        assert outcome.ok
        assert outcome.attempts == 2

    def test_backoff_is_exponential_and_capped(self):
        sleep = RecordingSleep()
        op = Flaky([NetworkError("x")] * 4)
        config = RetryConfig(max_attempts=5, initial_delay=1.0, backoff_multiplier=2.0, max_delay=3.0)

        run(RetryExecutor(sleep=sleep), op, config)

        assert sleep.delays == [1.0, 2.0, 3.0, 3.0]

    def test_each_failed_attempt_logs_at_error_class_level(self, caplog):
        op = Flaky([NetworkError("reset"), ParseError("truncated body")])
        executor = RetryExecutor(sleep=RecordingSleep(), logger=logging.getLogger("candledesk.test.retry"))

        with caplog.at_level(logging.DEBUG, logger="candledesk.test.retry"):
            outcome = run(executor, op, RetryConfig(max_attempts=3, initial_delay=0))

        assert outcome.ok
        attempt_levels = [r.levelno for r in caplog.records if "failed" in r.getMessage()]
        assert attempt_levels == [logging.ERROR, logging.WARNING]

    def test_zero_max_attempts_still_runs_once(self):
        op = Flaky([])
        outcome = run(RetryExecutor(sleep=RecordingSleep()), op, RetryConfig(max_attempts=0))
        assert outcome.ok
        assert op.calls == 1


class TestRetryConfig:
    """Test the preset profiles and config overrides."""

    def test_presets(self):
        assert RetryConfig() == RetryConfig(3, 1.0, 2.0, 10.0)
        assert RetryConfig.for_api_calls() == RetryConfig(5, 0.5, 2.0, 5.0)
        assert RetryConfig.for_non_critical() == RetryConfig(2, 1.0, 1.5, 3.0)

    def test_from_config_applies_overrides(self):
        config = {"retry": {"api": {"max_attempts": 7, "unknown_key": 1}}}

        result = RetryConfig.from_config(config, "api")

        assert result.max_attempts == 7
        assert result.initial_delay == pytest.approx(0.5)

    def test_from_config_without_section(self):
        assert RetryConfig.from_config({}, "non_critical") == RetryConfig.for_non_critical()
        assert RetryConfig.from_config({}, "default") == RetryConfig()
