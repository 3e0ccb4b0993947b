"""
LOT 3: Network

Module réseau du contrôleur avec:
- Retry avec backoff exponentiel (teardown, collaborateurs)
- Sondes HTTP des endpoints candidats
"""

from .interfaces import (
    # Dataclasses
    RetryConfig,
    RetryResult,
    ProbeResponse,
    ProbeResult,
    # Types
    RetryHook,
    ResultPredicate,
    # Interfaces
    IRetryHandler,
    IEndpointProber,
)
from .retry_handler import (
    RetryHandler,
    # Exceptions
    AttemptTimeoutError,
    MaxRetriesExceededError,
)
from .endpoint_prober import (
    HttpEndpointProber,
    http_codes_matcher,
)

__all__ = [
    # Dataclasses
    "RetryConfig",
    "RetryResult",
    "ProbeResponse",
    "ProbeResult",
    # Types
    "RetryHook",
    "ResultPredicate",
    # Interfaces
    "IRetryHandler",
    "IEndpointProber",
    # Implementations
    "RetryHandler",
    "HttpEndpointProber",
    "http_codes_matcher",
    # Exceptions
    "AttemptTimeoutError",
    "MaxRetriesExceededError",
]
