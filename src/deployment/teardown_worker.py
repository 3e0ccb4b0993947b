"""
LOT 6: Teardown Worker

Destruction asynchrone des environnements retirés ou abandonnés.

Invariants:
    La destruction ne bloque jamais la machine à états.
    Chaque retry est journalisé (WARN) et émis en audit.
    Un échec définitif est non fatal: le déploiement reste SUCCEEDED.
"""

import asyncio
import inspect
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..audit.interfaces import AuditEventType, IAuditEmitter
from ..logging.structured_logger import StructuredLogger
from ..network.interfaces import RetryConfig
from ..network.retry_handler import MaxRetriesExceededError, RetryHandler
from .interfaces import IEnvironmentProvisioner, TeardownError, TeardownStatus

StatusCallback = Callable[[str, TeardownStatus], Union[None, Awaitable[None]]]


class TeardownWorker:
    """
    Planifie la destruction d'environnements en tâches de fond.

    Example:
        worker = TeardownWorker(provisioner, audit_emitter=audit)
        worker.schedule("env-blue", request_id="req-42")
        await worker.drain()
    """

    def __init__(
        self,
        provisioner: IEnvironmentProvisioner,
        retry_handler: Optional[RetryHandler] = None,
        retry_config: Optional[RetryConfig] = None,
        audit_emitter: Optional[IAuditEmitter] = None,
        logger: Optional[StructuredLogger] = None,
        attempt_timeout: Optional[float] = None,
    ) -> None:
        """
        Args:
            provisioner: Collaborateur de provisioning
            retry_handler: Gestionnaire de retries
            retry_config: Backoff (retryable: TeardownError)
            audit_emitter: Émetteur audit (TEARDOWN, TEARDOWN_RETRY)
            logger: Logger structuré
            attempt_timeout: Durée max d'un appel teardown_environment
        """
        self._provisioner = provisioner
        self._retry = retry_handler or RetryHandler()
        self._retry_config = retry_config or RetryConfig(
            max_attempts=5,
            initial_delay=1.0,
            max_delay=30.0,
            retryable_exceptions=(TeardownError,),
        )
        if attempt_timeout is not None:
            self._retry_config = replace(self._retry_config, attempt_timeout=attempt_timeout)
        self._audit = audit_emitter
        self._logger = logger
        self._tasks: Dict[str, asyncio.Task] = {}
        self._status: Dict[str, TeardownStatus] = {}
        self._errors: Dict[str, MaxRetriesExceededError] = {}

    def schedule(
        self,
        environment_id: str,
        request_id: str,
        listener_id: Optional[str] = None,
        reason: str = "",
        on_status: Optional[StatusCallback] = None,
    ) -> asyncio.Task:
        """
        Planifie la destruction (idempotent par environnement).

        Returns:
            Tâche de destruction
        """
        existing = self._tasks.get(environment_id)
        if existing is not None and self._status.get(environment_id) is not TeardownStatus.FAILED:
            return existing

        self._status[environment_id] = TeardownStatus.SCHEDULED
        self._errors.pop(environment_id, None)
        task = asyncio.create_task(
            self._run(environment_id, request_id, listener_id, reason, on_status)
        )
        self._tasks[environment_id] = task
        return task

    def status(self, environment_id: str) -> Optional[TeardownStatus]:
        return self._status.get(environment_id)

    def error(self, environment_id: str) -> Optional[MaxRetriesExceededError]:
        return self._errors.get(environment_id)

    def pending(self) -> List[str]:
        """Environnements dont la destruction est en cours."""
        return [env for env, task in self._tasks.items() if not task.done()]

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Attend la fin de toutes les destructions planifiées."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def _run(
        self,
        environment_id: str,
        request_id: str,
        listener_id: Optional[str],
        reason: str,
        on_status: Optional[StatusCallback],
    ) -> TeardownStatus:
        await self._notify(environment_id, TeardownStatus.SCHEDULED, on_status)

        async def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            await self._notify(environment_id, TeardownStatus.RETRYING, on_status)
            if self._logger is not None:
                self._logger.warn(
                    f"Teardown retry {attempt} for {environment_id}",
                    correlation_id=request_id,
                    listener_id=listener_id,
                    error=str(error),
                    delay=delay,
                )
            if self._audit is not None:
                await self._audit.emit_event(
                    event_type=AuditEventType.TEARDOWN_RETRY,
                    request_id=request_id,
                    listener_id=listener_id,
                    action="teardown_retry",
                    metadata={
                        "environment_id": environment_id,
                        "attempt": attempt,
                        "error": str(error),
                        "delay": delay,
                    },
                )

        outcome = await self._retry.execute_with_retry(
            self._provisioner.teardown_environment,
            environment_id,
            config=self._retry_config,
            on_retry=_on_retry,
        )

        if outcome.success:
            status = TeardownStatus.COMPLETED
            if self._logger is not None:
                self._logger.info(
                    f"Environment {environment_id} torn down",
                    correlation_id=request_id,
                    listener_id=listener_id,
                    attempts=outcome.attempts,
                    reason=reason,
                )
        else:
            status = TeardownStatus.FAILED
            self._errors[environment_id] = MaxRetriesExceededError(outcome.attempts, outcome.last_error)
            if self._logger is not None:
                self._logger.error(
                    f"Teardown of {environment_id} failed",
                    correlation_id=request_id,
                    listener_id=listener_id,
                    attempts=outcome.attempts,
                    error=str(outcome.last_error),
                )

        if self._audit is not None:
            await self._audit.emit_event(
                event_type=AuditEventType.TEARDOWN,
                request_id=request_id,
                listener_id=listener_id,
                action="teardown",
                metadata={
                    "environment_id": environment_id,
                    "success": outcome.success,
                    "attempts": outcome.attempts,
                    "reason": reason,
                },
            )

        await self._notify(environment_id, status, on_status)
        return status

    async def _notify(
        self,
        environment_id: str,
        status: TeardownStatus,
        on_status: Optional[StatusCallback],
    ) -> None:
        self._status[environment_id] = status
        if on_status is not None:
            outcome: Any = on_status(environment_id, status)
            if inspect.isawaitable(outcome):
                await outcome
