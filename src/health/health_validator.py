"""
LOT 4: Health Validator Implementation

Validation continue de la santé d'un environnement par sondes périodiques.

Invariants:
    Une tâche de sonde par environnement, première sonde immédiate.
    Timeout de sonde = échec (jamais d'exception remontée au contrôleur).
    Zéro succès sur unhealthy_threshold_count x interval => UNHEALTHY.
"""

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Deque, Dict, FrozenSet, Optional

from ..logging.structured_logger import StructuredLogger
from ..network.interfaces import IEndpointProber, ProbeResult
from .interfaces import HealthCheckSpec, HealthVerdict, IHealthValidator, VerdictStatus

if TYPE_CHECKING:
    from ..deployment.interfaces import Environment


TERMINAL_VERDICTS: FrozenSet[VerdictStatus] = frozenset(
    {VerdictStatus.HEALTHY, VerdictStatus.UNHEALTHY}
)


def compute_verdict(
    environment_id: str,
    window: Deque[ProbeResult],
    spec: HealthCheckSpec,
) -> HealthVerdict:
    """
    Calcule le verdict d'une fenêtre de sondes.

    Les séquences consécutives sont comptées depuis la sonde la plus récente.
    """
    now = datetime.now(timezone.utc)
    results = list(window)

    consecutive_successes = 0
    consecutive_failures = 0
    for result in reversed(results):
        if result.success and consecutive_failures == 0:
            consecutive_successes += 1
        elif not result.success and consecutive_successes == 0:
            consecutive_failures += 1
        else:
            break

    if consecutive_successes >= spec.healthy_threshold_count:
        verdict = VerdictStatus.HEALTHY
    elif consecutive_failures >= spec.unhealthy_threshold_count:
        verdict = VerdictStatus.UNHEALTHY
    else:
        verdict = VerdictStatus.INCONCLUSIVE

    success_count = sum(1 for r in results if r.success)
    return HealthVerdict(
        environment_id=environment_id,
        window_start=results[0].timestamp if results else now,
        window_end=results[-1].timestamp if results else now,
        success_count=success_count,
        failure_count=len(results) - success_count,
        verdict=verdict,
        consecutive_successes=consecutive_successes,
        consecutive_failures=consecutive_failures,
    )


class _EnvironmentMonitor:
    """État de surveillance d'un environnement."""

    def __init__(self, environment_id: str, url: str, spec: HealthCheckSpec) -> None:
        self.environment_id = environment_id
        self.url = url
        self.spec = spec
        self.window: Deque[ProbeResult] = deque(maxlen=spec.effective_window)
        self.verdict = compute_verdict(environment_id, self.window, spec)
        self.changed = asyncio.Condition()
        self.task: Optional[asyncio.Task] = None


class HealthValidator(IHealthValidator):
    """
    Validateur de santé à fenêtre glissante.

    Example:
        validator = HealthValidator(HttpEndpointProber())
        await validator.evaluate(candidate, HealthCheckSpec(interval_seconds=10))
        verdict = await validator.wait_for_verdict(candidate.environment_id, timeout=300)
    """

    # Intervalle entre deux annulations dans stop()
    STOP_RETRY_SECONDS = 0.05

    def __init__(
        self,
        prober: IEndpointProber,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        """
        Args:
            prober: Primitive de sonde (HTTP en production)
            logger: Logger structuré (changements de verdict)
        """
        self._prober = prober
        self._logger = logger
        self._monitors: Dict[str, _EnvironmentMonitor] = {}

    @staticmethod
    def build_url(endpoint: str, path: str) -> str:
        """Concatène endpoint et path du health check."""
        return endpoint.rstrip("/") + "/" + path.lstrip("/")

    async def evaluate(self, environment: "Environment", spec: HealthCheckSpec) -> HealthVerdict:
        """
        Démarre la surveillance si besoin et retourne le dernier verdict.

        Args:
            environment: Environnement sondé
            spec: Spécification du health check

        Returns:
            Dernier verdict (INCONCLUSIVE tant que la fenêtre est vide)
        """
        monitor = self._monitors.get(environment.environment_id)
        if monitor is None:
            monitor = _EnvironmentMonitor(
                environment.environment_id,
                self.build_url(environment.endpoint, spec.path),
                spec,
            )
            self._monitors[environment.environment_id] = monitor
            monitor.task = asyncio.create_task(self._probe_loop(monitor))
        return monitor.verdict

    def latest_verdict(self, environment_id: str) -> Optional[HealthVerdict]:
        """Dernier verdict sans bloquer."""
        monitor = self._monitors.get(environment_id)
        return monitor.verdict if monitor else None

    def is_monitoring(self, environment_id: str) -> bool:
        """True si une tâche de sonde est active pour l'environnement."""
        monitor = self._monitors.get(environment_id)
        return monitor is not None and monitor.task is not None and not monitor.task.done()

    async def wait_for_verdict(
        self,
        environment_id: str,
        timeout: Optional[float],
        statuses: Optional[FrozenSet[VerdictStatus]] = None,
    ) -> Optional[HealthVerdict]:
        """
        Attend un verdict dans statuses (défaut: HEALTHY ou UNHEALTHY).

        Args:
            environment_id: Environnement surveillé
            timeout: Attente max en secondes (None = illimitée)
            statuses: Verdicts attendus

        Returns:
            Verdict atteint, dernier verdict à l'expiration, None si non surveillé
        """
        monitor = self._monitors.get(environment_id)
        if monitor is None:
            return None

        wanted = statuses or TERMINAL_VERDICTS

        async def _wait() -> HealthVerdict:
            async with monitor.changed:
                await monitor.changed.wait_for(lambda: monitor.verdict.verdict in wanted)
                return monitor.verdict

        try:
            return await asyncio.wait_for(_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return monitor.verdict

    def reset(self, environment_id: str) -> None:
        """
        Vide la fenêtre; le verdict repasse INCONCLUSIVE.

        Les sondes continuent, la prochaine alimente une fenêtre neuve.
        """
        monitor = self._monitors.get(environment_id)
        if monitor is None:
            return
        monitor.window.clear()
        monitor.verdict = compute_verdict(environment_id, monitor.window, monitor.spec)

    async def stop(self, environment_id: str) -> None:
        """Annule la tâche de sonde et oublie l'environnement."""
        monitor = self._monitors.pop(environment_id, None)
        if monitor is None or monitor.task is None:
            return
        task = monitor.task
        # Une annulation arrivée en fin de sonde peut être absorbée par
        # wait_for: on réannule jusqu'à la fin effective de la tâche.
        while not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=self.STOP_RETRY_SECONDS)
        if not task.cancelled() and task.exception() is not None and self._logger is not None:
            self._logger.warn(
                f"Probe loop ended with error: {task.exception()}",
                environment_id=environment_id,
            )

    async def stop_all(self) -> None:
        """Arrête toutes les surveillances."""
        for environment_id in list(self._monitors):
            await self.stop(environment_id)

    async def _probe_once(self, monitor: _EnvironmentMonitor) -> ProbeResult:
        """
        Exécute une sonde bornée par timeout_seconds.

        Returns:
            Résultat de sonde, échec si timeout ou erreur
        """
        spec = monitor.spec
        try:
            return await asyncio.wait_for(
                self._prober.probe(monitor.url, spec.timeout_seconds, spec.predicate()),
                timeout=spec.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ProbeResult(
                url=monitor.url,
                success=False,
                message=f"Probe timeout after {spec.timeout_seconds}s",
            )
        except Exception as e:
            return ProbeResult(url=monitor.url, success=False, message=f"Probe error: {e}")

    async def _probe_loop(self, monitor: _EnvironmentMonitor) -> None:
        """Boucle de sonde à intervalle fixe."""
        loop = asyncio.get_running_loop()
        next_at = loop.time()

        while True:
            result = await self._probe_once(monitor)
            await self._record(monitor, result)

            next_at += monitor.spec.interval_seconds
            await asyncio.sleep(max(0.0, next_at - loop.time()))

    async def _record(self, monitor: _EnvironmentMonitor, result: ProbeResult) -> None:
        """Ajoute un résultat à la fenêtre et notifie les attentes."""
        previous = monitor.verdict.verdict
        monitor.window.append(result)
        monitor.verdict = compute_verdict(monitor.environment_id, monitor.window, monitor.spec)

        if monitor.verdict.verdict != previous and self._logger is not None:
            log = self._logger.warn if monitor.verdict.verdict is VerdictStatus.UNHEALTHY else self._logger.info
            log(
                f"Health verdict {previous.value} -> {monitor.verdict.verdict.value}",
                environment_id=monitor.environment_id,
                success_count=monitor.verdict.success_count,
                failure_count=monitor.verdict.failure_count,
                last_probe=result.message,
            )

        async with monitor.changed:
            monitor.changed.notify_all()
