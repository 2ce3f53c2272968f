"""
Executor: runs plan steps against the runtimes on a worker pool.

A step starts only once every step it is ordered after has succeeded. A
failure is contained: steps ordered after it are skipped, unrelated
branches keep going. Every success is written to the state store before
the next dependent step can start.
"""
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from stackmap import interpolate
from stackmap.errors import FatalRuntimeError, ProviderError, StateError, TransientRuntimeError
from stackmap.graph import ResourceGraph
from stackmap.models.plan import Action, Plan, Step
from stackmap.models.resource import split_address
from stackmap.runtime.base import Outputs, Runtime
from stackmap.state import StateStore, normalize

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    PENDING   = "pending"
    SUCCEEDED = "succeeded"
    FAILED    = "failed"
    SKIPPED   = "skipped"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    step: Step
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return self.step.address

    def to_dict(self) -> dict:
        return {
            "step": self.step.step_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class RunResult:
    results: Dict[str, StepResult] = field(default_factory=dict)
    cancelled_by_user: bool = False

    def _with(self, status: StepStatus) -> List[StepResult]:
        return [r for r in self.results.values() if r.status == status]

    @property
    def succeeded(self) -> List[StepResult]:
        return self._with(StepStatus.SUCCEEDED)

    @property
    def failed(self) -> List[StepResult]:
        return self._with(StepStatus.FAILED)

    @property
    def skipped(self) -> List[StepResult]:
        return self._with(StepStatus.SKIPPED)

    @property
    def cancelled(self) -> List[StepResult]:
        return self._with(StepStatus.CANCELLED)

    @property
    def ok(self) -> bool:
        return all(r.status == StepStatus.SUCCEEDED for r in self.results.values())

    def get(self, action: Action, address: str) -> StepResult:
        return self.results[f"{action.value}:{address}"]

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "cancelled": self.cancelled_by_user,
            "summary": {s.value: len(self._with(s)) for s in StepStatus if s != StepStatus.PENDING},
            "steps": [r.to_dict() for r in self.results.values()],
        }


class Executor:
    def __init__(
        self,
        store: StateStore,
        runtimes: List[Runtime],
        parallelism: int = 4,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 10.0,
        on_event: Optional[Callable[[StepResult], None]] = None,
    ):
        self.store = store
        self.runtimes = runtimes
        self.parallelism = parallelism
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.on_event = on_event
        self._cancel = threading.Event()

    # ------------------------------------------------------------ control
    def cancel(self) -> None:
        """Stop starting new steps; steps already running are finished."""
        if not self._cancel.is_set():
            logger.warning("cancellation requested, waiting for in-flight steps")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _runtime_for(self, resource_type: str) -> Runtime:
        for runtime in self.runtimes:
            if runtime.handles(resource_type):
                return runtime
        raise FatalRuntimeError(f"no runtime handles '{resource_type}'")

    # ------------------------------------------------------------ single step
    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(TransientRuntimeError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _call(self, result: StepResult, fn: Callable[[], Any]) -> Any:
        value = None
        for attempt in self._retrying():
            with attempt:
                result.attempts += 1
                value = fn()
        return value

    def _lookup(self, address: str, attribute: str) -> Any:
        entry = self.store.get(address)
        if entry is None:
            raise KeyError(address)
        return entry.get("outputs", {})[attribute]

    def _apply(self, step: Step, graph: Optional[ResourceGraph], result: StepResult) -> None:
        resource_type, name = split_address(step.address)
        runtime = self._runtime_for(resource_type)

        if step.action == Action.DELETE:
            entry = self.store.get(step.address)
            if entry is None:
                logger.info("%s already absent from state", step.address)
                return
            self._call(result, lambda: runtime.delete(
                resource_type, name, entry.get("outputs", {}), entry.get("resolved", {}),
            ))
            self.store.remove(step.address)
            return

        if graph is None:
            raise FatalRuntimeError("create/update steps need the resource graph", address=step.address)
        decl = graph.get(step.address)
        resolved = interpolate.resolve(decl.attributes, self._lookup, step.address)

        if step.action == Action.CREATE:
            outputs: Outputs = self._call(result, lambda: runtime.create(resource_type, name, resolved))
        else:
            entry = self.store.get(step.address) or {}
            current = entry.get("outputs", {})
            if self._call(result, lambda: runtime.read(resource_type, name, current)) is None:
                logger.warning("%s is recorded in state but no longer exists, recreating it", step.address)
                outputs = self._call(result, lambda: runtime.create(resource_type, name, resolved))
            else:
                outputs = self._call(result, lambda: runtime.update(
                    resource_type, name, resolved, current, step.changed,
                ))

        result.outputs = outputs
        self.store.put(step.address, {
            "type": resource_type,
            "name": name,
            "index": decl.index,
            "attributes": normalize(decl.attributes),
            "resolved": normalize(resolved),
            "outputs": normalize(outputs),
            "dependencies": graph.dependencies(step.address),
        })

    def _work(self, step: Step, graph: Optional[ResourceGraph]) -> StepResult:
        result = StepResult(step)
        logger.info("%s %s", step.action.value, step.address)
        try:
            self._apply(step, graph, result)
        except ProviderError as exc:
            result.status = StepStatus.FAILED
            result.error = str(exc)
            logger.error("%s %s failed after %d attempt(s): %s", step.action.value, step.address, result.attempts, exc)
            return result
        result.status = StepStatus.SUCCEEDED
        return result

    # ------------------------------------------------------------ scheduling
    def _refresh(self, plan: Plan, graph: Optional[ResourceGraph]) -> None:
        if graph is None:
            return
        for address in plan.refresh:
            deps = graph.dependencies(address)

            def _rewrite(entry, deps=deps):
                if entry is not None:
                    entry["dependencies"] = deps
                return entry

            self.store.update(address, _rewrite)

    def run(self, plan: Plan, graph: Optional[ResourceGraph] = None) -> RunResult:
        """
        Execute ``plan``. ``graph`` is required unless the plan only deletes.

        StateError aborts scheduling and is re-raised once running steps end.
        """
        run = RunResult({s.step_id: StepResult(s) for s in plan.steps})
        preds = plan.predecessors()
        running: Dict[Future, str] = {}
        state_error: Optional[StateError] = None

        self._refresh(plan, graph)

        def _emit(result: StepResult) -> None:
            if self.on_event is not None:
                self.on_event(result)

        def _schedule(pool: ThreadPoolExecutor) -> None:
            progressed = True
            while progressed:
                progressed = False
                for step in plan.steps:
                    current = run.results[step.step_id]
                    if current.status != StepStatus.PENDING or step.step_id in running.values():
                        continue
                    blocked = [
                        p for p in preds[step.step_id]
                        if run.results[p].status in (StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED)
                    ]
                    if blocked:
                        current.status = StepStatus.SKIPPED
                        current.error = f"depends on {blocked[0]} which did not succeed"
                        _emit(current)
                        progressed = True
                        continue
                    # Only hand the pool what it can start right away
                    if self.cancelled or len(running) >= self.parallelism:
                        continue
                    if all(run.results[p].status == StepStatus.SUCCEEDED for p in preds[step.step_id]):
                        running[pool.submit(self._work, step, graph)] = step.step_id

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="stackmap") as pool:
            _schedule(pool)
            while running:
                try:
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    run.cancelled_by_user = True
                    self.cancel()
                    continue
                for future in done:
                    step_id = running.pop(future)
                    try:
                        outcome = future.result()
                    except StateError as exc:
                        state_error = state_error or exc
                        self.cancel()
                        outcome = StepResult(run.results[step_id].step, StepStatus.FAILED, error=str(exc))
                    except Exception as exc:
                        logger.exception("unexpected error in %s", step_id)
                        outcome = StepResult(run.results[step_id].step, StepStatus.FAILED, error=repr(exc))
                    run.results[step_id] = outcome
                    _emit(outcome)
                _schedule(pool)

        for result in run.results.values():
            if result.status == StepStatus.PENDING:
                result.status = StepStatus.CANCELLED
                _emit(result)

        if state_error is not None:
            raise state_error
        return run
