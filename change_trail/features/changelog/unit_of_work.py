"""Unit of work: named steps executed in order inside one transaction.

A barrier step aborts the whole unit when it fails: the transaction is
rolled back and the original exception propagates. Any other step runs in
its own savepoint; when it raises one of its tolerated exceptions, only the
savepoint is rolled back, the failure is recorded under the step name and
the unit still commits.

Example:
    uow = UnitOfWork(storage)
    uow.add("operation", lambda done: storage.execute(mutation), barrier=True)
    uow.add("changelog", write_audit_record, tolerate=(AuditWriteFailure,))
    result = await uow.run()
    result["operation"]           # value returned by the barrier step
    result.failures["changelog"]  # tolerated exception, if any
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Self

from change_trail.core.exceptions import ConfigurationError

if TYPE_CHECKING:
    from .storage import TransactionalStorage

logger = logging.getLogger(__name__)

StepFunc = Callable[[Mapping[str, Any]], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class Step:
    name: str
    run: StepFunc
    barrier: bool = False
    tolerate: tuple[type[Exception], ...] = ()


@dataclass(slots=True)
class UnitOfWorkResult:
    """Outcome of a committed unit of work, keyed by step name."""

    results: dict[str, Any] = field(default_factory=dict)
    failures: dict[str, Exception] = field(default_factory=dict)

    def __getitem__(self, name: str) -> Any:
        return self.results[name]

    @property
    def succeeded(self) -> bool:
        """Whether every step completed without a tolerated failure."""
        return not self.failures


class UnitOfWork:
    """Ordered, named storage steps sharing one transaction."""

    def __init__(self, storage: TransactionalStorage) -> None:
        self.storage = storage
        self.steps: list[Step] = []

    def add(
        self,
        name: str,
        run: StepFunc,
        *,
        barrier: bool = False,
        tolerate: tuple[type[Exception], ...] = (),
    ) -> Self:
        """Append a step.

        Args:
            name: Unique step name; results are recorded under it.
            run: Coroutine function receiving the results recorded so far.
            barrier: Abort the whole unit if this step fails.
            tolerate: Exceptions that do not abort a non-barrier step.
        """
        if any(step.name == name for step in self.steps):
            raise ConfigurationError("Duplicate unit of work step", details={"step": name})
        if barrier and tolerate:
            raise ConfigurationError("Barrier steps cannot tolerate failures", details={"step": name})
        self.steps.append(Step(name, run, barrier, tolerate))
        return self

    async def run(self) -> UnitOfWorkResult:
        """Execute all steps and commit.

        Raises:
            Exception: Whatever a barrier step, or an untolerated failure of
                any other step, raised. The transaction is rolled back first.
        """
        result = UnitOfWorkResult()
        await self.storage.begin_transaction()
        try:
            for step in self.steps:
                if step.barrier:
                    result.results[step.name] = await step.run(result.results)
                    continue
                try:
                    async with self.storage.savepoint():
                        result.results[step.name] = await step.run(result.results)
                except step.tolerate as exc:
                    result.failures[step.name] = exc
        except BaseException:
            await self.storage.rollback()
            raise
        await self.storage.commit()

        logger.debug(
            "Unit of work committed",
            extra={"steps": [step.name for step in self.steps], "failed": list(result.failures)},
        )
        return result
