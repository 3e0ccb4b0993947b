"""
LOT 3: Network - Interfaces

Interfaces pour les appels réseau du contrôleur:
- Retry avec backoff (teardown, appels collaborateurs)
- Sondes de santé des endpoints

Invariants:
    Les retries sont des événements visibles, jamais des boucles cachées.
    Une sonde en échec inclut: timeout, connexion refusée, réponse non conforme.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Configuration des retries.

    Backoff: delay = min(initial * base^attempt, max_delay)
    attempt_timeout: durée max d'une tentative (None = illimitée)
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    retryable_exceptions: tuple = field(
        default_factory=lambda: (ConnectionError, TimeoutError)
    )
    attempt_timeout: Optional[float] = None


@dataclass
class RetryResult:
    """Résultat d'une opération avec retry."""

    success: bool
    result: Optional[Any]
    attempts: int
    total_delay: float
    last_error: Optional[Exception]


# Hook appelé avant chaque nouvelle tentative: (attempt, error, delay)
RetryHook = Callable[[int, Exception, float], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ProbeResponse:
    """Réponse brute d'un endpoint sondé."""

    status_code: int
    body: str = ""


# Prédicat de résultat attendu (ex: code HTTP 200)
ResultPredicate = Callable[[ProbeResponse], bool]


@dataclass(frozen=True)
class ProbeResult:
    """Résultat d'une sonde: succès ou échec, jamais d'exception."""

    url: str
    success: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    latency_ms: Optional[int] = None
    status_code: Optional[int] = None
    message: Optional[str] = None


class IRetryHandler(ABC):
    """Interface gestion retries."""

    @abstractmethod
    async def execute_with_retry(
        self,
        func: Callable[..., T],
        *args: Any,
        config: Optional[RetryConfig] = None,
        on_retry: Optional[RetryHook] = None,
        **kwargs: Any,
    ) -> RetryResult:
        """
        Exécute func avec retry et backoff exponentiel.

        Args:
            func: Fonction à exécuter (sync ou async)
            config: Configuration retry optionnelle
            on_retry: Hook notifié avant chaque nouvelle tentative

        Returns:
            RetryResult avec succès/échec et détails
        """
        pass

    @abstractmethod
    def calculate_delay(self, attempt: int, config: RetryConfig) -> float:
        """Calcule le délai de backoff d'une tentative (0-indexed)."""
        pass


class IEndpointProber(ABC):
    """
    Primitive de sonde utilisée par le Health Validator.

    Un échec inclut timeout, connexion refusée et prédicat non satisfait.
    """

    @abstractmethod
    async def probe(
        self,
        url: str,
        timeout: float,
        expected: Optional[ResultPredicate] = None,
    ) -> ProbeResult:
        """
        Sonde un endpoint.

        Args:
            url: URL complète (endpoint + path)
            timeout: Timeout de la sonde en secondes
            expected: Prédicat de réponse attendue

        Returns:
            ProbeResult (success=False en cas d'échec)
        """
        pass
