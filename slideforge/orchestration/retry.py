from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import ExecutionSettings
from .errors import BackendError

T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int
    base_backoff_seconds: float
    backoff_multiplier: float
    max_backoff_seconds: float
    fallback_attempts: int = 1

    @classmethod
    def from_settings(cls, settings: ExecutionSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_backoff_seconds=settings.base_backoff_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_backoff_seconds=settings.max_backoff_seconds,
            fallback_attempts=settings.fallback_attempts,
        )

    def _wait(self):
        return wait_exponential(
            multiplier=self.base_backoff_seconds,
            exp_base=self.backoff_multiplier,
            max=self.max_backoff_seconds,
        )

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        *,
        attempts: int | None = None,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or the attempt budget is spent.

        Only ``BackendError`` is retried; the last error is re-raised unchanged.
        ``operation`` receives the 1-based attempt number.
        """
        budget = self.max_attempts if attempts is None else attempts

        def _before_sleep(state: RetryCallState) -> None:
            if on_retry is not None and state.outcome is not None:
                on_retry(state.attempt_number, state.outcome.exception())

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, budget)),
            wait=self._wait(),
            retry=retry_if_exception_type(BackendError),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                return await operation(attempt.retry_state.attempt_number)
        raise AssertionError("unreachable: tenacity exhausted without raising")  # pragma: no cover
