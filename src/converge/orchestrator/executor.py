"""Plan executor: tiered, bounded-parallel provider calls with failure isolation."""

import threading
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum

from converge.orchestrator.planner import (
    Operation,
    Plan,
    PlanStep,
    lookup_reference,
    upstream_changed,
)
from converge.providers.base import DesiredResource, ObservedResource, ProviderAdapter, ProviderRegistry
from converge.resources.models import Secret, canonicalize, resolve_references
from converge.secrets.materializer import SecretMaterializer
from converge.state.manager import StateManager
from converge.state.models import StateRecord
from converge.utils.errors import (
    ConvergeError,
    ErrorContext,
    ProviderError,
    StateStoreError,
    ValidationError,
    error_handler,
)
from converge.utils.logging import LogContext, get_logger
from converge.utils.retry import RetryStrategy

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Outcome(Enum):
    """Final outcome of a resource in one run."""
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED_NOOP = "skipped-noop"
    CANCELLED = "cancelled"


@dataclass
class ResourceResult:
    """Result of one resource in a run."""

    key: str
    operation: Operation
    outcome: Outcome
    error: Optional[ConvergeError] = None
    blocked_by: Optional[str] = None
    attempts: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.outcome in (Outcome.APPLIED, Outcome.SKIPPED_NOOP)

    def detail(self) -> str:
        if self.error:
            return self.error.message
        if self.blocked_by:
            return f"blocked by {self.blocked_by}"
        return ""


@dataclass
class ExecutionResult:
    """Per-resource outcomes of an apply or destroy run."""

    results: Dict[str, ResourceResult] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    outputs: Dict[str, Any] = field(default_factory=dict)

    def is_success(self) -> bool:
        return all(result.is_success() for result in self.results.values())

    def exit_code(self) -> int:
        return 0 if self.is_success() else 1

    def get_summary(self) -> Dict[str, int]:
        summary = {outcome.value: 0 for outcome in Outcome}
        for result in self.results.values():
            summary[result.outcome.value] += 1
        return summary


class ProgressCallback:
    """Hooks invoked while a plan executes. Called from worker threads."""

    def on_start(self, total: int) -> None:
        pass

    def on_resource_start(self, key: str, operation: Operation) -> None:
        pass

    def on_resource_complete(self, key: str, result: ResourceResult) -> None:
        pass

    def on_complete(self, success: bool) -> None:
        pass


_UNSUCCESSFUL = (Outcome.FAILED, Outcome.BLOCKED)


class ReconciliationExecutor:
    """Executes plans tier by tier.

    Tiers run strictly in sequence; resources inside a tier run concurrently
    on a bounded thread pool. A failed resource blocks its dependents only.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        state_manager: StateManager,
        materializer: Optional[SecretMaterializer] = None,
        max_workers: int = 4,
        retry: Optional[RetryStrategy] = None,
        convergence: Optional[RetryStrategy] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize executor.

        Args:
            registry: Provider adapters by kind
            state_manager: State store updated after every provider call
            materializer: Secret value generator
            max_workers: Maximum parallel provider calls
            retry: Backoff for transient provider errors
            convergence: Polling used to confirm eventually consistent resources
            cancel_event: Set to stop scheduling operations that have not started
        """
        self.registry = registry
        self.state_manager = state_manager
        self.materializer = materializer or SecretMaterializer()
        self.max_workers = max_workers
        self.retry = retry or RetryStrategy()
        self.convergence = convergence or RetryStrategy(max_attempts=10, base_delay=0.5, max_delay=5.0)
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Stop scheduling; in-flight provider calls finish and are recorded."""
        logger.warning("Cancellation requested; waiting for in-flight operations")
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def execute(
        self,
        plan: Plan,
        parallel: bool = True,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ExecutionResult:
        """Execute creates/updates by tier, then deletes in teardown order.

        Raises:
            StateStoreError: If state cannot be written; the run stops
        """
        progress = progress_callback or ProgressCallback()
        start_time = _utcnow()
        results: Dict[str, ResourceResult] = {}
        progress.on_start(len(plan.changes()))

        for number, tier in enumerate(plan.apply_tiers, start=1):
            runnable = []
            for key in tier:
                step = plan.get_step(key)
                early = self._precheck_apply(step, results)
                if early is not None:
                    results[key] = early
                    progress.on_resource_complete(key, early)
                else:
                    runnable.append(step)
            if runnable:
                logger.info(f"Applying tier {number} ({len(runnable)} resources)")
                self._run_tier(runnable, parallel, results, progress, self._apply_step)

        for tier in plan.delete_tiers:
            runnable = []
            for key in tier:
                step = plan.get_step(key)
                early = self._precheck_delete(step, plan, results)
                if early is not None:
                    results[key] = early
                    progress.on_resource_complete(key, early)
                else:
                    runnable.append(step)
            if runnable:
                logger.info(f"Deleting {len(runnable)} resources")
                self._run_tier(runnable, parallel, results, progress, self._delete_step)

        ordered = {step.key: results[step.key] for step in plan.steps if step.key in results}
        end_time = _utcnow()
        execution = ExecutionResult(
            results=ordered,
            start_time=start_time,
            end_time=end_time,
            duration=(end_time - start_time).total_seconds(),
        )

        summary = execution.get_summary()
        log = logger.info if execution.is_success() else logger.error
        log(
            f"Run finished in {execution.duration:.1f}s: {summary['applied']} applied, "
            f"{summary['failed']} failed, {summary['blocked']} blocked, "
            f"{summary['skipped-noop']} unchanged, {summary['cancelled']} cancelled"
        )
        progress.on_complete(execution.is_success())
        return execution

    def _precheck_apply(self, step: PlanStep, results: Dict[str, ResourceResult]) -> Optional[ResourceResult]:
        """Outcome decided without a provider call, or None if the step must run."""
        for dep_key in step.dependencies():
            dep_result = results.get(dep_key)
            if dep_result is not None and dep_result.outcome in _UNSUCCESSFUL:
                logger.warning(f"{step.key} blocked by {dep_key}")
                return ResourceResult(step.key, step.operation, Outcome.BLOCKED, blocked_by=dep_key)

        if self.cancelled:
            return ResourceResult(step.key, step.operation, Outcome.CANCELLED)

        if step.operation == Operation.NO_OP:
            applied_deps = [
                dep for dep in step.dependencies()
                if dep in results and results[dep].outcome == Outcome.APPLIED
            ]
            if applied_deps and upstream_changed(step.resource, step.record, self.state_manager.records()):
                logger.info(f"{step.key}: referenced value changed during this run, updating")
                step.operation = Operation.UPDATE
                step.reason = "referenced value changed"
                return None
            return ResourceResult(step.key, step.operation, Outcome.SKIPPED_NOOP)

        return None

    def _precheck_delete(
        self,
        step: PlanStep,
        plan: Plan,
        results: Dict[str, ResourceResult]
    ) -> Optional[ResourceResult]:
        dependents = plan.delete_graph.get_dependents(step.key) if plan.delete_graph else set()
        for dependent in sorted(dependents):
            dep_result = results.get(dependent)
            if dep_result is not None and dep_result.outcome in _UNSUCCESSFUL:
                logger.warning(f"Deletion of {step.key} blocked by {dependent}")
                return ResourceResult(step.key, step.operation, Outcome.BLOCKED, blocked_by=dependent)

        if self.cancelled:
            return ResourceResult(step.key, step.operation, Outcome.CANCELLED)
        return None

    def _run_tier(
        self,
        steps: List[PlanStep],
        parallel: bool,
        results: Dict[str, ResourceResult],
        progress: ProgressCallback,
        func: Callable[[PlanStep, ProgressCallback], ResourceResult]
    ) -> None:
        if not parallel or len(steps) == 1 or self.max_workers == 1:
            for step in steps:
                results[step.key] = func(step, progress)
            return

        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(steps)))
        try:
            futures = {pool.submit(func, step, progress): step for step in steps}
            for future in as_completed(futures):
                step = futures[future]
                results[step.key] = future.result()
        except StateStoreError:
            self.cancel_event.set()
            raise
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

    def _apply_step(self, step: PlanStep, progress: ProgressCallback) -> ResourceResult:
        return self._run_step(step, progress, self._apply)

    def _delete_step(self, step: PlanStep, progress: ProgressCallback) -> ResourceResult:
        return self._run_step(step, progress, self._delete)

    def _run_step(
        self,
        step: PlanStep,
        progress: ProgressCallback,
        action: Callable[[PlanStep, LogContext, List[int]], None]
    ) -> ResourceResult:
        if self.cancelled:
            return ResourceResult(step.key, step.operation, Outcome.CANCELLED)

        progress.on_resource_start(step.key, step.operation)
        log = LogContext(logger, resource_id=step.key, resource_kind=step.kind, operation=step.operation.value)
        attempts = [0]
        start_time = _utcnow()
        error: Optional[ConvergeError] = None

        try:
            log.info(f"{step.operation.value} ({step.reason})")
            action(step, log, attempts)
            outcome = Outcome.APPLIED
        except StateStoreError:
            raise
        except Exception as e:
            error = error_handler.handle_exception(
                e,
                ErrorContext(resource_key=step.key, resource_kind=step.kind, operation=step.operation.value)
            )
            if error.context.resource_key is None:
                error.context.resource_key = step.key
                error.context.operation = step.operation.value
            error_handler.log_error(error)
            outcome = Outcome.FAILED

        end_time = _utcnow()
        result = ResourceResult(
            key=step.key,
            operation=step.operation,
            outcome=outcome,
            error=error,
            attempts=attempts[0],
            start_time=start_time,
            end_time=end_time,
            duration=(end_time - start_time).total_seconds(),
        )
        progress.on_resource_complete(step.key, result)
        return result

    def _call(self, func: Callable, attempts: List[int], *args):
        def counted():
            attempts[0] += 1
            return func(*args)
        return self.retry.execute_with_retry(counted)

    def _apply(self, step: PlanStep, log: LogContext, attempts: List[int]) -> None:
        resource = step.resource
        adapter = self.registry.get(resource.kind)
        records = self.state_manager.records()

        try:
            resolved = resolve_references(resource.attributes, lambda ref: lookup_reference(ref, records))
        except KeyError as e:
            raise ValidationError(
                f"{resource.key}: reference {e} cannot be resolved from state",
                context=ErrorContext(resource_key=resource.key)
            )
        inputs = canonicalize(resolved)

        if isinstance(resource, Secret):
            desired = self.materializer.prepare(resource, step.record, inputs)
        else:
            desired = DesiredResource(kind=resource.kind, name=resource.name, attributes=inputs)

        if step.operation == Operation.CREATE:
            resource_id, outputs = self._call(adapter.create, attempts, desired)
        else:
            resource_id = step.record.resource_id
            outputs = self._call(adapter.update, attempts, resource_id, desired)

        record = StateRecord(
            kind=resource.kind,
            name=resource.name,
            resource_id=resource_id,
            attributes=resource.canonical_attributes(),
            inputs=inputs,
            outputs=outputs or {},
            dependencies=sorted(resource.dependencies()),
            policy_fingerprint=resource.policy_fingerprint(inputs) if isinstance(resource, Secret) else None,
            created_at=step.record.created_at if step.record else _utcnow(),
            converged=not adapter.eventually_consistent,
        )
        self.state_manager.save(resource.key, record)

        if adapter.eventually_consistent:
            log.info("waiting for change to propagate")
            observed = self._await_convergence(adapter, resource_id, desired)
            record = record.model_copy(update={
                "converged": True,
                "outputs": {**record.outputs, **observed.outputs},
                "updated_at": _utcnow(),
            })
            self.state_manager.save(resource.key, record)

    def _await_convergence(
        self,
        adapter: ProviderAdapter,
        resource_id: str,
        desired: DesiredResource
    ) -> ObservedResource:
        def check() -> ObservedResource:
            observed = adapter.read(resource_id)
            if not adapter.is_converged(desired, observed):
                raise ProviderError(
                    f"{desired.key} has not converged yet",
                    transient=True,
                    context=ErrorContext(resource_key=desired.key, provider_id=resource_id, operation="read")
                )
            return observed

        return self.convergence.execute_with_retry(check)

    def _delete(self, step: PlanStep, log: LogContext, attempts: List[int]) -> None:
        record = step.record
        adapter = self.registry.get(record.kind)
        self._call(adapter.delete, attempts, record.resource_id)
        self.state_manager.delete(step.key)
        log.info("deleted")
