"""Composition of progress-reporting tasks into phased pipelines."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Protocol, Sequence, Tuple

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[float, Any], Awaitable[None]]


class ProgressTask(Protocol):
    """A unit of work that reports fractional progress while it runs.

    Simulated ground hardware and real hardware drivers implement the same
    contract, so the orchestration in :class:`PhasedTaskRunner` does not
    care which one it is driving.
    """

    name: str

    async def run(self, progress: ProgressCallback) -> Any:
        """Run the task to completion, reporting through ``progress``.

        Raises:
            Exception: Any failure ends the task and is propagated.
        """
        ...

    def cancel(self) -> None:
        """Request that a running task stops at its next opportunity."""
        ...


@dataclass(slots=True)
class Phase:
    task: ProgressTask
    progress: ProgressCallback


class PhasedTaskRunner:
    """Runs phases concurrently or in sequence with first-failure-wins semantics."""

    def __init__(self, name: str = "pipeline") -> None:
        self.name = name

    async def run_parallel(self, phases: Sequence[Phase]) -> List[Any]:
        """Run ``phases`` concurrently and return their results in order.

        When one phase fails the remaining phases are cancelled and the
        failure is raised immediately, without waiting for them to finish.
        """
        if not phases:
            return []

        running = [
            asyncio.create_task(
                phase.task.run(phase.progress), name=f"{self.name}:{phase.task.name}"
            )
            for phase in phases
        ]

        try:
            done, pending = await asyncio.wait(
                running, return_when=asyncio.FIRST_EXCEPTION
            )
        except asyncio.CancelledError:
            await self._cancel(list(zip(phases, running)))
            raise

        failed = [
            (phase, task)
            for phase, task in zip(phases, running)
            if task in done and not task.cancelled() and task.exception() is not None
        ]
        if failed:
            phase, task = failed[0]
            LOGGER.info(
                "%s: phase %s failed; cancelling %d sibling phase(s)",
                self.name,
                phase.task.name,
                len(pending),
            )
            await self._cancel(
                [(p, t) for p, t in zip(phases, running) if t in pending]
            )
            raise task.exception()  # type: ignore[misc]

        return [task.result() for task in running]

    async def run_sequence(self, phases: Sequence[Phase]) -> List[Any]:
        """Run ``phases`` one after another; the first failure stops the pipeline."""
        results: List[Any] = []
        for phase in phases:
            LOGGER.debug("%s: starting phase %s", self.name, phase.task.name)
            results.append(await phase.task.run(phase.progress))
        return results

    @staticmethod
    async def _cancel(running: List[Tuple[Phase, "asyncio.Task[Any]"]]) -> None:
        targets = []
        for phase, task in running:
            if not task.done():
                phase.task.cancel()
                targets.append(task)
        for task in targets:
            task.cancel()
        if targets:
            await asyncio.gather(*targets, return_exceptions=True)

