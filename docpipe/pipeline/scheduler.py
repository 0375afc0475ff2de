"""
Execution schedulers — how a started execution gets a driver.

  DeferredScheduler  records IDs only; the caller runs them (tests, CLI, Lambda-style handlers)
  AsyncioScheduler   one asyncio task per execution inside the current process
  CeleryScheduler    one Celery task per execution on the worker fleet

Schedulers never decide *whether* an execution may run; the orchestrator's
claim (store version check + lease) does. The asyncio scheduler additionally
refuses to start a second task for an execution it is already driving.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from docpipe.core.errors import ExecutionClaimedError

logger = logging.getLogger(__name__)

Runner = Callable[[str], Awaitable[Any]]


class ExecutionScheduler(Protocol):
    async def schedule(self, execution_id: str) -> None:
        ...


class DeferredScheduler:
    def __init__(self) -> None:
        self.scheduled: list[str] = []

    async def schedule(self, execution_id: str) -> None:
        self.scheduled.append(execution_id)


class AsyncioScheduler:
    """In-process worker pool: concurrent tasks across executions, one per execution."""

    def __init__(self, runner: Runner | None = None) -> None:
        self._runner = runner
        self._tasks: dict[str, asyncio.Task] = {}

    def bind(self, runner: Runner) -> None:
        self._runner = runner

    async def schedule(self, execution_id: str) -> None:
        if self._runner is None:
            raise RuntimeError("AsyncioScheduler has no runner bound")

        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            logger.debug("Execution already has a task | exec=%s", execution_id)
            return

        task = asyncio.create_task(self._drive(execution_id), name=f"execution:{execution_id}")
        self._tasks[execution_id] = task

    async def _drive(self, execution_id: str) -> None:
        try:
            await self._runner(execution_id)
        except ExecutionClaimedError as exc:
            logger.info("Execution driven elsewhere | exec=%s owner=%s", execution_id, exc.owner)
        except asyncio.CancelledError:
            logger.warning("Execution task cancelled | exec=%s", execution_id)
            raise
        except Exception:
            # Record stays at its last checkpoint; the stale scanner resumes it
            logger.exception("Execution task crashed | exec=%s", execution_id)
        finally:
            if self._tasks.get(execution_id) is asyncio.current_task():
                del self._tasks[execution_id]

    def is_active(self, execution_id: str) -> bool:
        task = self._tasks.get(execution_id)
        return task is not None and not task.done()

    def cancel(self, execution_id: str) -> bool:
        """Hard-cancel the task (interrupts an in-flight stage or backoff)."""
        task = self._tasks.get(execution_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def join(self) -> None:
        """Wait for every task scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        self._tasks.clear()


class CeleryScheduler:
    """
    Sends run_execution to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    def __init__(self, countdown: int = 0) -> None:
        self._countdown = countdown

    async def schedule(self, execution_id: str) -> None:
        from docpipe.workers.tasks import run_execution

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            None,
            lambda: run_execution.apply_async(
                kwargs={"execution_id": execution_id},
                countdown=self._countdown,
            ),
        )
        logger.info("Execution task published | exec=%s", execution_id)
