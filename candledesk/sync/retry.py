"""
Retry with exponential backoff for provider calls.

Blocking provider calls run in a worker thread and are awaited; backoff
sleeps are ``asyncio.sleep`` so the event loop keeps serving other series.

Usage::

    executor = RetryExecutor(logger=logger)
    outcome = await executor.execute(
        lambda: provider.fetch_latest_candle(series_id),
        RetryConfig.for_api_calls(),
        context=f"latest candle {series_id}",
    )
    if outcome.ok:
        candle = outcome.value
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Union

from candledesk.core.errors import AppError


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0      # seconds
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0         # seconds

    @classmethod
    def for_api_calls(cls) -> "RetryConfig":
        """Interactive calls: more attempts, shorter waits."""
        return cls(max_attempts=5, initial_delay=0.5, backoff_multiplier=2.0, max_delay=5.0)

    @classmethod
    def for_non_critical(cls) -> "RetryConfig":
        """Best-effort background calls: give up quickly."""
        return cls(max_attempts=2, initial_delay=1.0, backoff_multiplier=1.5, max_delay=3.0)

    @classmethod
    def from_config(cls, config: dict, profile: str) -> "RetryConfig":
        """
        Build the named profile (``"default"``, ``"api"``, ``"non_critical"``)
        with overrides from ``config["retry"][profile]``.
        """
        base = {
            "api": cls.for_api_calls,
            "non_critical": cls.for_non_critical,
        }.get(profile, cls)()
        overrides = config.get("retry", {}).get(profile, {})
        fields = {k: v for k, v in overrides.items() if k in cls.__dataclass_fields__}
        return replace(base, **fields) if fields else base


@dataclass
class RetrySuccess:
    value: Any
    attempts: int
    ok: bool = True


@dataclass
class RetryFailed:
    error: AppError
    attempts: int
    ok: bool = False


RetryOutcome = Union[RetrySuccess, RetryFailed]


class RetryExecutor:
    """
    Runs an operation until it succeeds, fails with a non-retryable error,
    or runs out of attempts.

    Parameters
    ----------
    sleep : callable, optional
        Awaitable sleep, ``asyncio.sleep`` by default.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._sleep = sleep or asyncio.sleep
        self.logger = logger or logging.getLogger(__name__)

    async def execute(
        self,
        operation: Callable[[], Any],
        config: Optional[RetryConfig] = None,
        context: str = "operation",
    ) -> RetryOutcome:
        config = config or RetryConfig()
        max_attempts = max(1, config.max_attempts)
        delay = config.initial_delay
        attempts = 0

        while True:
            attempts += 1
            try:
                value = await asyncio.to_thread(operation)
            except Exception as exc:
                error = AppError.from_exception(exc, context)
                if not error.is_retryable:
                    self.logger.debug(
                        f"{context}: attempt {attempts} failed with non-retryable "
                        f"{error.error_type.value} error."
                    )
                    error.log(self.logger)
                    return RetryFailed(error=error, attempts=attempts)
                if attempts >= max_attempts:
                    self.logger.debug(f"{context}: giving up after {attempts} attempt(s).")
                    error.log(self.logger)
                    return RetryFailed(error=error, attempts=attempts)

                wait = min(delay, config.max_delay)
                self.logger.log(
                    error.log_level,
                    f"{context}: attempt {attempts}/{max_attempts} failed "
                    f"({error.technical_message}). Retrying in {wait:.2f}s."
                )
                await self._sleep(wait)
                delay *= config.backoff_multiplier
                continue

            if attempts > 1:
                self.logger.info(f"{context}: succeeded after {attempts} attempts.")
            return RetrySuccess(value=value, attempts=attempts)
