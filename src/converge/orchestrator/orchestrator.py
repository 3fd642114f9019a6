"""Main orchestrator that coordinates validation, planning and execution."""

import threading
from typing import Any, Dict, Optional

from converge.config.parser import Declaration
from converge.config.models import RetrySettings
from converge.orchestrator.dependency_graph import DependencyGraph
from converge.orchestrator.executor import (
    ExecutionResult,
    Outcome,
    ProgressCallback,
    ReconciliationExecutor,
)
from converge.orchestrator.planner import Plan, ReconciliationPlanner, lookup_reference
from converge.providers.base import ProviderRegistry
from converge.resources.models import ResourceRef
from converge.secrets.materializer import SecretMaterializer
from converge.state.manager import StateManager
from converge.utils.logging import get_logger
from converge.utils.retry import RetryStrategy

logger = get_logger(__name__)


def build_retry_strategy(settings: RetrySettings) -> RetryStrategy:
    return RetryStrategy(
        max_attempts=settings.max_attempts,
        base_delay=settings.base_delay,
        max_delay=settings.max_delay,
        jitter=settings.jitter,
    )


class ProvisioningOrchestrator:
    """Coordinates planning and execution of one declaration."""

    def __init__(
        self,
        declaration: Declaration,
        state_manager: StateManager,
        registry: ProviderRegistry,
        materializer: Optional[SecretMaterializer] = None,
        cancel_event: Optional[threading.Event] = None,
        max_workers: Optional[int] = None,
        retry: Optional[RetryStrategy] = None,
        convergence: Optional[RetryStrategy] = None
    ):
        """Initialize provisioning orchestrator.

        Args:
            declaration: Parsed declaration
            state_manager: State store for this declaration
            registry: Provider adapters by kind
            materializer: Secret value generator
            cancel_event: Shared cancellation flag
            max_workers: Overrides ``settings.max_workers``
            retry: Overrides the strategy built from ``settings.retry``
            convergence: Overrides the strategy built from ``settings.convergence``
        """
        settings = declaration.settings
        self.declaration = declaration
        self.state_manager = state_manager
        self.registry = registry
        self.cancel_event = cancel_event or threading.Event()

        self.planner = ReconciliationPlanner(registry)
        self.executor = ReconciliationExecutor(
            registry=registry,
            state_manager=state_manager,
            materializer=materializer,
            max_workers=max_workers or settings.max_workers,
            retry=retry or build_retry_strategy(settings.retry),
            convergence=convergence or build_retry_strategy(settings.convergence),
            cancel_event=self.cancel_event,
        )

        self.logger = get_logger(__name__)

    def validate(self) -> DependencyGraph:
        """Validate every resource and build the dependency graph.

        Nothing is sent to any provider when validation fails.

        Raises:
            ValidationError: On an invalid resource or unknown kind
            CycleError: If the references form a cycle
        """
        declared = self.declaration.keys()
        for resource in self.declaration.resources:
            resource.validate(declared, self.registry.required_attributes(resource.kind))

        graph = DependencyGraph.build(self.declaration.resources)
        self.logger.debug(f"Validated {graph.size()} resources")
        return graph

    def plan(self, refresh: bool = False) -> Plan:
        """Create a plan against the current state without changing anything."""
        graph = self.validate()
        state = self.state_manager.load()
        return self.planner.create_plan(self.declaration.resources, graph, state, refresh=refresh)

    def apply(
        self,
        parallel: bool = True,
        progress_callback: Optional[ProgressCallback] = None,
        refresh: bool = False
    ) -> ExecutionResult:
        """Plan and execute under the state lock, then derive outputs.

        Raises:
            ValidationError: If the declaration is invalid
            CycleError: If the references form a cycle
            StateStoreError: If the state cannot be read, locked or written
        """
        graph = self.validate()

        self.state_manager.lock(self.declaration.settings.lock_timeout)
        try:
            state = self.state_manager.load()
            plan = self.planner.create_plan(self.declaration.resources, graph, state, refresh=refresh)
            self.logger.info(f"Applying plan (parallel={parallel})...")
            result = self.executor.execute(plan, parallel=parallel, progress_callback=progress_callback)
            result.outputs = self._derive_outputs(result)
            self.state_manager.set_outputs(result.outputs)
        finally:
            self.state_manager.unlock()

        return result

    def plan_destruction(self) -> Plan:
        state = self.state_manager.load()
        return self.planner.create_destruction_plan(state)

    def destroy(self, progress_callback: Optional[ProgressCallback] = None) -> ExecutionResult:
        """Delete every recorded resource, dependents first."""
        self.state_manager.lock(self.declaration.settings.lock_timeout)
        try:
            plan = self.plan_destruction()
            self.logger.info(f"Destroying {len(plan.steps)} resources...")
            result = self.executor.execute(plan, progress_callback=progress_callback)

            # Outputs of surviving resources stay visible
            remaining = self.state_manager.records()
            outputs = {
                name: value
                for name, value in self.state_manager.get_state().outputs.items()
                if name in self.declaration.outputs
                and ResourceRef.parse(self.declaration.outputs[name].ref).key in remaining
            }
            self.state_manager.set_outputs(outputs)
            result.outputs = outputs
        finally:
            self.state_manager.unlock()

        return result

    def cancel(self) -> None:
        self.executor.cancel()

    def outputs(self) -> Dict[str, Any]:
        """Outputs recorded by the last apply."""
        return dict(self.state_manager.load().outputs)

    def _derive_outputs(self, result: ExecutionResult) -> Dict[str, Any]:
        """Resolve declared outputs from resources that ended applied or unchanged."""
        records = self.state_manager.records()
        outputs = {}
        for name, output in self.declaration.outputs.items():
            ref = ResourceRef.parse(output.ref)
            resource_result = result.results.get(ref.key)
            if resource_result is None or resource_result.outcome not in (
                Outcome.APPLIED, Outcome.SKIPPED_NOOP
            ):
                self.logger.warning(f"Output '{name}' not derived: {ref.key} did not converge")
                continue
            try:
                value = lookup_reference(ref, records)
            except KeyError:
                self.logger.warning(f"Output '{name}': {ref} is not available")
                continue
            outputs[name] = {"value": value, "sensitive": output.sensitive}
        return outputs
