"""Step execution: preconditions, retries, rollback and state persistence."""

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from ..errors import ActionFailed, ActionTimeout, ProvisionError
from ..execution import redact
from .actions import ActionResult
from .models import (
    Criticality,
    ExecutionContext,
    ExecutionRecord,
    Outcome,
    Plan,
    Step,
    evaluate,
)

_logging = logging.getLogger(__name__)

# Extra time an action gets beyond its own timeout before the executor cancels it
CANCEL_GRACE = 5.0


class StepObserver(Protocol):
    def step_started(self, step: Step) -> None: ...

    def step_finished(self, record: ExecutionRecord) -> None: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StepExecutor:
    """Runs a Plan's Steps strictly in order.

    A FATAL failure halts the run and marks the remaining Steps not_run.
    A WARN failure is recorded and execution continues. ``request_stop``
    lets the current Step finish, then stops the same way.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        reporter: StepObserver | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ctx = ctx
        self.reporter = reporter
        self.sleep = sleep
        self._stop_requested = False

    def request_stop(self) -> None:
        self._stop_requested = True

    async def execute(self, plan: Plan) -> list[ExecutionRecord]:
        records: list[ExecutionRecord] = []
        halted_by: str | None = None

        for step in plan.steps:
            if halted_by is not None or self._stop_requested:
                reason = f"halted after '{halted_by}' failed" if halted_by else "interrupted"
                record = ExecutionRecord(
                    step.id,
                    step.description,
                    Outcome.NOT_RUN,
                    criticality=step.criticality,
                    goal=step.goal,
                    error=reason,
                )
                self.ctx.outcomes[step.id] = record.outcome
                records.append(record)
                if self.reporter:
                    self.reporter.step_finished(record)
                continue

            if self.reporter:
                self.reporter.step_started(step)
            record = await self._run_step(step)
            self.ctx.outcomes[step.id] = record.outcome
            records.append(record)
            if self.reporter:
                self.reporter.step_finished(record)

            if record.outcome is Outcome.FAILED and step.criticality is Criticality.FATAL:
                halted_by = step.id

        return records

    async def _run_step(self, step: Step) -> ExecutionRecord:
        record = ExecutionRecord(
            step.id,
            step.description,
            Outcome.FAILED,
            criticality=step.criticality,
            goal=step.goal,
            started_at=_now(),
        )
        try:
            await self._attempt(step, record)
        finally:
            record.finished_at = _now()
            record.output = redact(record.output, self.ctx.secrets)
            if record.error:
                record.error = redact(record.error, self.ctx.secrets)
            record.warnings = [redact(w, self.ctx.secrets) for w in record.warnings]
            self.ctx.secrets.clear()
        return record

    async def _attempt(self, step: Step, record: ExecutionRecord) -> None:
        try:
            needed = await evaluate(step.precondition, self.ctx)
        except (ProvisionError, OSError) as e:
            record.error = f"precondition check failed: {e}"
            return
        if not needed:
            _logging.debug(f"Step '{step.id}' precondition false, skipping")
            record.outcome = Outcome.SKIPPED
            return

        attempts = step.effective_attempts
        timeout = step.retry.timeout
        for attempt in range(1, attempts + 1):
            record.attempts = attempt
            try:
                result = await asyncio.wait_for(
                    step.action.run(self.ctx, timeout), timeout + CANCEL_GRACE
                )
            except asyncio.TimeoutError:
                error: ProvisionError = ActionTimeout(
                    f"timed out after {timeout}s", timeout, step.id
                )
            except (ActionFailed, ActionTimeout) as e:
                error = e
            except OSError as e:
                error = ActionFailed(str(e), step_id=step.id)
            else:
                try:
                    self._persist(step, result, record)
                except ProvisionError as e:
                    record.error = f"could not record state: {e.message}"
                return

            record.error = error.message
            if isinstance(error, ActionFailed) and error.output:
                record.output = error.output
            if attempt < attempts:
                _logging.debug(
                    f"Step '{step.id}' attempt {attempt}/{attempts} failed: {error.message}; "
                    f"retrying in {step.retry.backoff}s"
                )
                await self.sleep(step.retry.backoff)

        if step.rollback is not None:
            await self._rollback(step, record)

    def _persist(self, step: Step, result: ActionResult, record: ExecutionRecord) -> None:
        # State is written before success is reported
        for entry in result.created:
            self.ctx.state.record(entry)
        for key in result.removed:
            self.ctx.state.remove(key)
        record.outcome = Outcome.SUCCEEDED
        record.output = result.output
        record.warnings.extend(result.warnings)
        record.error = None

    async def _rollback(self, step: Step, record: ExecutionRecord) -> None:
        _logging.debug(f"Rolling back step '{step.id}'")
        try:
            result = await asyncio.wait_for(
                step.rollback.run(self.ctx, step.retry.timeout),
                step.retry.timeout + CANCEL_GRACE,
            )
        except asyncio.TimeoutError:
            record.warnings.append("rollback timed out; manual cleanup may be needed")
            return
        except (ProvisionError, OSError) as e:
            record.warnings.append(f"rollback failed: {e}; manual cleanup may be needed")
            return
        for key in result.removed:
            self.ctx.state.remove(key)
        record.rolled_back = True
        record.warnings.append("changes rolled back")


async def execute_plan(
    plan: Plan, ctx: ExecutionContext, reporter: StepObserver | None = None
) -> list[ExecutionRecord]:
    """Execute plan, turning Ctrl-C into a stop after the current Step."""
    executor = StepExecutor(ctx, reporter)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, executor.request_stop)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        return await executor.execute(plan)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


__all__ = [
    "CANCEL_GRACE",
    "StepObserver",
    "StepExecutor",
    "execute_plan",
]
