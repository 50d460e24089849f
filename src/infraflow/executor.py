"""Flow executor.

Runs the steps of a FlowGraph against provider clients:

- A step is ready when every dependency has succeeded in this or a prior
  execution. Ready steps run concurrently up to ``max_concurrency``.
- Transient errors are retried with exponential backoff up to the retry
  policy's attempt limit; permanent errors (including immutable drift)
  fail the step immediately.
- A failed step blocks its dependents but never its siblings; the run
  continues with everything that is still reachable.
- The flow state is persisted after every terminal step transition. The
  ``running`` status exists only in memory, so a crash or cancellation
  leaves each in-flight step at its previously persisted status.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .clients import ProviderClients
from .config import DEFAULT_MAX_CONCURRENCY, RetryPolicy
from .errors import InfraFlowError, TransientProviderError, determine_error_codes
from .graph import FlowGraph, Step, StepContext, StepOutcome
from .state import FlowState, FlowStateStore, StepAction, StepRecord, StepStatus

logger = logging.getLogger(__name__)


@dataclass
class FlowResult:
    """Outcome of one executor run."""

    state: FlowState
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    # Destroy steps with nothing to do
    skipped: list[str] = field(default_factory=list)
    # Steps not run because a dependency did not succeed
    blocked: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked


@dataclass
class _Attempted:
    attempts: int
    outcome: StepOutcome | None = None
    error: BaseException | None = None


class FlowExecutor:
    """Executes flow graphs and keeps the persisted flow state current."""

    def __init__(
        self,
        store: FlowStateStore,
        *,
        retry_policy: RetryPolicy | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._store = store
        self._retry_policy = retry_policy or RetryPolicy()
        self._max_concurrency = max_concurrency

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def execute(
        self,
        graph: FlowGraph,
        state: FlowState,
        clients: ProviderClients | None = None,
    ) -> FlowResult:
        """Run every step that is not yet succeeded.

        Steps already recorded as succeeded are treated as satisfied and
        not re-run.

        Raises:
            PersistenceError: If saving the state fails; in-flight steps
                are cancelled.
            asyncio.CancelledError: If the caller cancels; in-flight steps
                are cancelled and keep their prior persisted status.
        """
        return await self._run(graph, state, clients, skip=set())

    async def execute_destroy(
        self,
        graph: FlowGraph,
        state: FlowState,
        clients: ProviderClients | None = None,
    ) -> FlowResult:
        """Destroy the resources of an apply graph in reverse order.

        Every recorded step runs its destroy function, even one that never
        finished an attempt: a create interrupted before its outcome was
        persisted may still have left the resource behind. Steps without a
        record are skipped. Successfully destroyed steps are removed from
        the state.
        """
        destroy_graph = graph.reversed()
        skip: set[str] = set()
        for step in destroy_graph:
            record = state.record(step.id)
            if record is None:
                skip.add(step.id)
                continue
            if record.action is not StepAction.DESTROY or record.status is StepStatus.SUCCEEDED:
                record.action = StepAction.DESTROY
                record.status = StepStatus.PENDING
                record.attempts = 0

        result = await self._run(destroy_graph, state, clients, skip=skip)
        result.skipped = sorted(skip) + result.skipped
        return result

    async def _run(
        self,
        graph: FlowGraph,
        state: FlowState,
        clients: ProviderClients | None,
        *,
        skip: set[str],
    ) -> FlowResult:
        for step in graph:
            if step.id not in skip and state.record(step.id) is None:
                state.steps[step.id] = StepRecord(
                    kind=step.ref.kind,
                    name=step.ref.name,
                    parent=step.ref.parent,
                    action=step.action,
                    fingerprint=step.fingerprint,
                    depends_on=sorted(step.depends_on),
                )
        self._store.save(state.instance_id, state)

        result = FlowResult(state=state)
        attempted: set[str] = set(skip)
        running: dict[asyncio.Task[_Attempted], str] = {}
        # Last persisted record of each running step
        pre_run: dict[str, StepRecord] = {}

        logger.info(
            "Starting flow execution",
            extra={
                "instance_id": state.instance_id,
                "steps": len(graph),
                "max_concurrency": self._max_concurrency,
            },
        )

        try:
            while True:
                for step_id in graph.ready(self._satisfied(graph, state), exclude=attempted):
                    if len(running) >= self._max_concurrency:
                        break
                    record = state.steps[step_id]
                    attempted.add(step_id)
                    pre_run[step_id] = record.model_copy(deep=True)
                    record.status = StepStatus.RUNNING
                    task = asyncio.create_task(
                        self._run_step(graph.step(step_id), state, clients),
                        name=step_id,
                    )
                    running[task] = step_id

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    step_id = running.pop(task)
                    del pre_run[step_id]
                    self._complete(graph.step(step_id), state, task.result(), result)
                    self._store.save(state.instance_id, state.checkpoint(pre_run))
        except BaseException:
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        result.blocked = [
            step_id
            for step_id in graph.step_ids
            if step_id not in attempted
            and (record := state.record(step_id)) is not None
            and record.status is not StepStatus.SUCCEEDED
        ]

        logger.info(
            "Flow execution finished",
            extra={
                "instance_id": state.instance_id,
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
                "skipped": len(result.skipped),
                "blocked": len(result.blocked),
            },
        )
        return result

    @staticmethod
    def _satisfied(graph: FlowGraph, state: FlowState) -> set[str]:
        # A step without a record was destroyed or never needed to run
        return {
            step_id
            for step_id in graph.step_ids
            if (record := state.record(step_id)) is None or record.status is StepStatus.SUCCEEDED
        }

    async def _run_step(
        self,
        step: Step,
        state: FlowState,
        clients: ProviderClients | None,
    ) -> _Attempted:
        fn = step.function()
        dependency_outputs = {
            dep: record.dependency_outputs()
            for dep in step.depends_on
            if (record := state.record(dep)) is not None
        }
        log_extra = {
            "instance_id": state.instance_id,
            "step_id": step.id,
            "action": step.action.value,
        }

        attempt = 0
        while True:
            attempt += 1
            ctx = StepContext(
                step_id=step.id,
                instance_id=state.instance_id,
                clients=clients,
                dependency_outputs=dependency_outputs,
                attempt=attempt,
            )
            try:
                outcome = await fn(ctx)
            except (TransientProviderError, TimeoutError) as e:
                if attempt >= self._retry_policy.max_attempts:
                    logger.error(
                        "Step failed, retries exhausted",
                        extra={**log_extra, "attempts": attempt, "error": str(e)},
                    )
                    return _Attempted(attempts=attempt, error=e)
                delay = self._retry_policy.backoff_for(attempt)
                logger.warning(
                    "Transient step failure, retrying",
                    extra={**log_extra, "attempt": attempt, "delay_seconds": delay, "error": str(e)},
                )
                await asyncio.sleep(delay)
                continue
            except InfraFlowError as e:
                logger.error(
                    "Step failed",
                    extra={**log_extra, "attempts": attempt, "error": str(e)},
                )
                return _Attempted(attempts=attempt, error=e)
            except Exception as e:
                logger.exception("Unexpected error in step", extra=log_extra)
                return _Attempted(attempts=attempt, error=e)

            logger.info("Step succeeded", extra={**log_extra, "attempts": attempt})
            return _Attempted(attempts=attempt, outcome=outcome)

    def _complete(
        self,
        step: Step,
        state: FlowState,
        attempted: _Attempted,
        result: FlowResult,
    ) -> None:
        record = state.steps[step.id]
        now = datetime.now(UTC)
        record.attempts = attempted.attempts
        record.updated_at = now

        if attempted.error is not None:
            record.status = StepStatus.FAILED
            record.last_error = str(attempted.error)
            record.error_codes = [code.value for code in determine_error_codes(attempted.error)]
            result.failed[step.id] = record.last_error
            return

        outcome = attempted.outcome or StepOutcome()
        if step.action is StepAction.DESTROY:
            del state.steps[step.id]
            if outcome.skipped:
                result.skipped.append(step.id)
            else:
                result.succeeded.append(step.id)
            return

        record.status = StepStatus.SUCCEEDED
        record.resource_id = outcome.resource_id
        record.outputs = dict(outcome.outputs)
        record.fingerprint = step.fingerprint
        record.depends_on = sorted(step.depends_on)
        record.last_error = None
        record.error_codes = []
        record.last_succeeded_at = now
        result.succeeded.append(step.id)
