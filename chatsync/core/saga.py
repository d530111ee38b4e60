"""
Compensable multi-step operations.

A Saga runs its steps in order. When a step fails, the compensations of the
steps that already completed run in reverse order and the original error is
re-raised. Compensation failures are logged and do not mask that error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from chatsync.infra.logging_config import get_logger

logger = get_logger("saga")

Action = Callable[[], Awaitable[Any]]
Compensation = Callable[[], Awaitable[None]]


@dataclass
class SagaStep:
    name: str
    action: Action
    compensate: Optional[Compensation] = None


@dataclass
class Saga:
    name: str
    steps: List[SagaStep] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    compensated: List[str] = field(default_factory=list)

    def step(
        self, name: str, action: Action, compensate: Optional[Compensation] = None
    ) -> "Saga":
        self.steps.append(SagaStep(name, action, compensate))
        return self

    async def run(self) -> dict[str, Any]:
        """Run every step; returns each step's result keyed by step name."""
        results: dict[str, Any] = {}
        done: List[SagaStep] = []
        for step in self.steps:
            try:
                results[step.name] = await step.action()
            except BaseException as exc:
                logger.warning("%s: step %r failed: %s", self.name, step.name, exc)
                await self._compensate(done)
                raise
            done.append(step)
            self.completed.append(step.name)
        return results

    async def _compensate(self, done: List[SagaStep]) -> None:
        for step in reversed(done):
            if step.compensate is None:
                continue
            try:
                await step.compensate()
                self.compensated.append(step.name)
            except Exception:
                logger.exception("%s: compensation for %r failed", self.name, step.name)
