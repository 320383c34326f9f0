"""Ordered step runner used by the installer.

Each step returns a tagged :class:`StepResult`. The runner executes steps in
order, halts on the first fatal result and aggregates warnings. Nothing is
rolled back: partial work stays on disk for inspection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from pipebundle.exceptions import BundleError
from pipebundle.exit_codes import EXIT_GENERIC_FAILURE, EXIT_SUCCESS

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    FATAL = "fatal"


@dataclass
class StepResult:
    status: StepStatus
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    exit_code: int = EXIT_SUCCESS

    @classmethod
    def ok(cls, message: str = "") -> "StepResult":
        return cls(StepStatus.OK, message)

    @classmethod
    def warning(cls, message: str, warnings: Sequence[str] = ()) -> "StepResult":
        return cls(StepStatus.WARNING, message, list(warnings) or [message])

    @classmethod
    def fatal(cls, message: str, exit_code: int = EXIT_GENERIC_FAILURE) -> "StepResult":
        return cls(StepStatus.FATAL, message, exit_code=exit_code)

    @classmethod
    def from_error(cls, exc: BundleError) -> "StepResult":
        return cls.fatal(str(exc), exc.exit_code)

    @property
    def is_fatal(self) -> bool:
        return self.status == StepStatus.FATAL


class Step(Protocol):
    step_id: str
    title: str

    def run(self, ctx: Any) -> StepResult: ...


class Reporter(Protocol):
    def step_started(self, step: Step) -> None: ...

    def step_finished(self, step: Step, result: StepResult) -> None: ...


@dataclass
class PipelineResult:
    completed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    failure: Optional[StepResult] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.failure is None else self.failure.exit_code

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "completed": list(self.completed),
            "warnings": list(self.warnings),
            "failed_step": self.failed_step,
            "error": self.failure.message if self.failure else None,
            "exit_code": self.exit_code,
        }


def run_pipeline(steps: Sequence[Step], ctx: Any, reporter: Optional[Reporter] = None) -> PipelineResult:
    """Run *steps* in order against *ctx*.

    A :class:`~pipebundle.exceptions.BundleError` raised by a step counts as
    a fatal result carrying the error's exit code. Other exceptions
    propagate.
    """
    result = PipelineResult()
    for step in steps:
        logger.info("step %s: start", step.step_id)
        if reporter is not None:
            reporter.step_started(step)
        try:
            outcome = step.run(ctx)
        except BundleError as exc:
            outcome = StepResult.from_error(exc)
        if reporter is not None:
            reporter.step_finished(step, outcome)
        result.warnings.extend(outcome.warnings)
        if outcome.is_fatal:
            logger.info("step %s: fatal (%s)", step.step_id, outcome.message)
            result.failed_step = step.step_id
            result.failure = outcome
            break
        logger.info("step %s: %s", step.step_id, outcome.status.value)
        result.completed.append(step.step_id)
    return result
