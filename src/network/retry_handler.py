"""
LOT 3: Network - Retry Handler

Retries des appels aux collaborateurs (destruction d'environnement,
restauration du routage).

Invariants:
    Backoff exponentiel borné par max_delay.
    Chaque nouvelle tentative est notifiée (hook on_retry), jamais silencieuse.
    Une tentative plus longue que attempt_timeout est abandonnée puis retentée.
"""

import asyncio
import inspect
from typing import Any, Callable, Optional, TypeVar

from .interfaces import IRetryHandler, RetryConfig, RetryHook, RetryResult

T = TypeVar("T")


class MaxRetriesExceededError(Exception):
    """Nombre max de tentatives atteint."""

    def __init__(self, attempts: int, last_error: Optional[Exception]) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


class AttemptTimeoutError(TimeoutError):
    """Une tentative a dépassé attempt_timeout."""

    def __init__(self, attempt: int, timeout: float) -> None:
        self.attempt = attempt
        self.timeout = timeout
        super().__init__(f"Attempt {attempt} timed out after {timeout}s")


class RetryHandler(IRetryHandler):
    """
    Exécute un appel avec retries et backoff exponentiel.

    Example:
        outcome = await RetryHandler().execute_with_retry(
            provisioner.teardown_environment,
            "env-blue",
            config=RetryConfig(retryable_exceptions=(TeardownError,)),
        )
        if not outcome.success:
            raise MaxRetriesExceededError(outcome.attempts, outcome.last_error)
    """

    def __init__(self, default_config: Optional[RetryConfig] = None) -> None:
        self._default_config = default_config or RetryConfig()

    async def execute_with_retry(
        self,
        func: Callable[..., T],
        *args: Any,
        config: Optional[RetryConfig] = None,
        on_retry: Optional[RetryHook] = None,
        **kwargs: Any,
    ) -> RetryResult:
        """
        Exécute func jusqu'à max_attempts fois.

        Args:
            func: Fonction à exécuter (sync ou async)
            *args: Arguments positionnels
            config: Configuration retry optionnelle
            on_retry: Hook (attempt, error, delay) appelé avant chaque attente
            **kwargs: Arguments nommés

        Returns:
            RetryResult, jamais d'exception pour une erreur de func
        """
        retry_config = config or self._default_config
        last_error: Optional[Exception] = None
        total_delay = 0.0
        attempt = 0

        while attempt < retry_config.max_attempts:
            attempt += 1
            try:
                result = await self._attempt(func, args, kwargs, attempt, retry_config)
                return RetryResult(
                    success=True,
                    result=result,
                    attempts=attempt,
                    total_delay=total_delay,
                    last_error=None,
                )
            except Exception as e:
                last_error = e
                if not self.is_retryable(e, retry_config):
                    break

            if attempt < retry_config.max_attempts:
                delay = self.calculate_delay(attempt - 1, retry_config)
                if on_retry is not None:
                    notified = on_retry(attempt, last_error, delay)
                    if inspect.isawaitable(notified):
                        await notified
                total_delay += delay
                await asyncio.sleep(delay)

        return RetryResult(
            success=False,
            result=None,
            attempts=attempt,
            total_delay=total_delay,
            last_error=last_error,
        )

    async def _attempt(
        self,
        func: Callable[..., T],
        args: tuple,
        kwargs: dict,
        attempt: int,
        config: RetryConfig,
    ) -> Any:
        result = func(*args, **kwargs)
        if not inspect.isawaitable(result):
            return result
        if config.attempt_timeout is None:
            return await result
        try:
            return await asyncio.wait_for(result, timeout=config.attempt_timeout)
        except asyncio.TimeoutError:
            raise AttemptTimeoutError(attempt, config.attempt_timeout) from None

    def calculate_delay(self, attempt: int, config: RetryConfig) -> float:
        """
        Délai avant la tentative suivante.

        Formula: min(initial * (base ^ attempt), max_delay), attempt 0-indexed
        """
        delay = config.initial_delay * (config.exponential_base**attempt)
        return min(delay, config.max_delay)

    def is_retryable(self, error: Exception, config: RetryConfig) -> bool:
        """True si l'erreur est retryable (les tentatives expirées le sont toujours)."""
        return isinstance(error, (AttemptTimeoutError,) + tuple(config.retryable_exceptions))
