"""
LOT 3: Network - HTTP Endpoint Prober

Sonde HTTP des endpoints d'un environnement candidat.

Invariants:
    Une sonde ne lève jamais: timeout, connexion refusée et réponse
    non conforme au prédicat sont des échecs (success=False).
    Code attendu par défaut: 200 (health check du target group).
"""

import time
from typing import List, Optional, Tuple

import httpx

from .interfaces import IEndpointProber, ProbeResponse, ProbeResult, ResultPredicate


def http_codes_matcher(codes: str = "200") -> ResultPredicate:
    """
    Construit un prédicat à partir d'une liste de codes style ELB.

    Formats acceptés: "200", "200,302", "200-299".

    Args:
        codes: Liste de codes ou plages séparés par des virgules

    Returns:
        Prédicat sur ProbeResponse

    Raises:
        ValueError: Si la liste de codes est invalide
    """
    ranges: List[Tuple[int, int]] = []
    for part in codes.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            low, high = part.split("-", 1)
            start, end = int(low), int(high)
        else:
            start = end = int(part)
        if not 100 <= start <= end <= 599:
            raise ValueError(f"Invalid HTTP code range: {part}")
        ranges.append((start, end))

    if not ranges:
        raise ValueError("HTTP codes matcher cannot be empty")

    def matches(response: ProbeResponse) -> bool:
        return any(start <= response.status_code <= end for start, end in ranges)

    return matches


class HttpEndpointProber(IEndpointProber):
    """
    Sonde HTTP GET basée sur httpx.AsyncClient.

    Le client est partagé entre sondes; le fermer via aclose().
    """

    DEFAULT_EXPECTED: ResultPredicate = staticmethod(http_codes_matcher("200"))

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        """
        Args:
            client: Client httpx injecté (tests: httpx.MockTransport)
        """
        self._client = client or httpx.AsyncClient(follow_redirects=False)
        self._owns_client = client is None

    async def probe(
        self,
        url: str,
        timeout: float,
        expected: Optional[ResultPredicate] = None,
    ) -> ProbeResult:
        """
        Sonde un endpoint par GET.

        Args:
            url: URL complète
            timeout: Timeout total de la requête (secondes)
            expected: Prédicat de réponse attendue (défaut: HTTP 200)

        Returns:
            ProbeResult
        """
        predicate = expected or self.DEFAULT_EXPECTED
        start = time.perf_counter()

        try:
            response = await self._client.get(url, timeout=timeout)
        except httpx.TimeoutException:
            return ProbeResult(url=url, success=False, message=f"Probe timeout after {timeout}s")
        except httpx.HTTPError as e:
            return ProbeResult(url=url, success=False, message=f"Connection error: {e}")

        latency = int((time.perf_counter() - start) * 1000)
        probe_response = ProbeResponse(status_code=response.status_code, body=response.text)

        if not predicate(probe_response):
            return ProbeResult(
                url=url,
                success=False,
                latency_ms=latency,
                status_code=response.status_code,
                message=f"Unexpected response: HTTP {response.status_code}",
            )

        return ProbeResult(
            url=url,
            success=True,
            latency_ms=latency,
            status_code=response.status_code,
            message="OK",
        )

    async def aclose(self) -> None:
        """Ferme le client HTTP s'il a été créé ici."""
        if self._owns_client:
            await self._client.aclose()
