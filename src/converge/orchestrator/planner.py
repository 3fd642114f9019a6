"""Planner: diffs desired resources against recorded state."""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from converge.orchestrator.dependency_graph import DependencyGraph
from converge.providers.base import ProviderRegistry
from converge.resources.models import Resource, ResourceRef, canonicalize, resolve_references
from converge.state.models import State, StateRecord
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class Operation(Enum):
    """Operation planned for a resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass
class PlanStep:
    """One resource and the operation planned for it."""

    key: str
    operation: Operation
    resource: Optional[Resource] = None
    record: Optional[StateRecord] = None
    reason: str = ""
    changed_attributes: List[str] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return self.resource.kind if self.resource else self.record.kind

    def dependencies(self) -> List[str]:
        if self.resource is not None:
            return sorted(self.resource.dependencies())
        return list(self.record.dependencies) if self.record else []


@dataclass
class Plan:
    """Ordered operations converging recorded state to the declaration.

    ``steps`` holds creates/updates/no-ops in dependency order followed by
    deletes in teardown order.
    """

    steps: List[PlanStep] = field(default_factory=list)
    apply_tiers: List[List[str]] = field(default_factory=list)
    delete_tiers: List[List[str]] = field(default_factory=list)
    graph: Optional[DependencyGraph] = None
    delete_graph: Optional[DependencyGraph] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get_step(self, key: str) -> Optional[PlanStep]:
        for step in self.steps:
            if step.key == key:
                return step
        return None

    def changes(self) -> List[PlanStep]:
        return [step for step in self.steps if step.operation != Operation.NO_OP]

    def has_changes(self) -> bool:
        return bool(self.changes())

    def get_steps_by_operation(self, operation: Operation) -> List[PlanStep]:
        return [step for step in self.steps if step.operation == operation]

    def get_summary(self) -> Dict[str, int]:
        summary = {op.value: 0 for op in Operation}
        for step in self.steps:
            summary[step.operation.value] += 1
        return summary


_UNKNOWN = object()


def lookup_reference(ref: ResourceRef, records: Dict[str, StateRecord]) -> Any:
    """Value a reference points at, read from recorded state.

    Dotted attributes walk into nested outputs (``versions.2``). Outputs take
    precedence over applied inputs.

    Raises:
        KeyError: If the target or attribute is not recorded
    """
    record = records.get(ref.key)
    if record is None:
        raise KeyError(ref.key)
    if ref.attribute is None or ref.attribute == "id":
        return record.resource_id

    for source in (record.outputs, record.inputs):
        value: Any = source
        for part in ref.attribute.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                value = _UNKNOWN
                break
        if value is not _UNKNOWN:
            return value

    raise KeyError(str(ref))


def resolve_against_state(resource: Resource, records: Dict[str, StateRecord]) -> Any:
    """Resolved attributes, or _UNKNOWN if some reference cannot be resolved yet."""
    try:
        return canonicalize(resolve_references(
            resource.attributes, lambda ref: lookup_reference(ref, records)
        ))
    except KeyError:
        return _UNKNOWN


def upstream_changed(resource: Resource, record: StateRecord, records: Dict[str, StateRecord]) -> bool:
    """Whether a referenced value now differs from what was last applied."""
    if not resource.references():
        return False
    resolved = resolve_against_state(resource, records)
    if resolved is _UNKNOWN:
        return False
    return resolved != canonicalize(record.inputs)


class ReconciliationPlanner:
    """Creates apply and destruction plans."""

    def __init__(self, registry: Optional[ProviderRegistry] = None):
        self.registry = registry
        self.logger = get_logger(__name__)

    def create_plan(
        self,
        resources: List[Resource],
        graph: DependencyGraph,
        state: State,
        refresh: bool = False
    ) -> Plan:
        """Diff desired resources against state.

        Args:
            resources: Validated desired resources, in declaration order
            graph: Dependency graph over ``resources``
            state: Recorded state
            refresh: Read live resources first to detect drift

        Returns:
            Plan
        """
        self.logger.info("Creating plan...")
        records = dict(state.records)
        drifted = self._refresh(resources, records) if refresh else {}

        desired_keys = {resource.key for resource in resources}
        steps = []
        for key in graph.topological_sort():
            resource = graph.get_item(key)
            steps.append(self._diff(resource, records.get(key), records, drifted.get(key)))

        delete_graph = self._build_delete_graph(
            [record for key, record in records.items() if key not in desired_keys]
        )
        delete_tiers = delete_graph.destruction_tiers()
        for tier in delete_tiers:
            for key in tier:
                steps.append(PlanStep(
                    key=key,
                    operation=Operation.DELETE,
                    record=records[key],
                    reason="no longer declared",
                ))

        plan = Plan(
            steps=steps,
            apply_tiers=graph.tiers(),
            delete_tiers=delete_tiers,
            graph=graph,
            delete_graph=delete_graph,
        )

        summary = plan.get_summary()
        self.logger.info(
            f"Plan created: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['delete']} to delete, {summary['no-op']} unchanged"
        )
        return plan

    def create_destruction_plan(self, state: State) -> Plan:
        """Plan deleting every recorded resource, dependents first."""
        self.logger.info("Creating destruction plan...")
        delete_graph = self._build_delete_graph(state.list_records())
        delete_tiers = delete_graph.destruction_tiers()

        steps = [
            PlanStep(key=key, operation=Operation.DELETE, record=state.records[key], reason="destroy")
            for tier in delete_tiers
            for key in tier
        ]
        self.logger.info(f"Destruction plan created: {len(steps)} resources")
        return Plan(steps=steps, delete_tiers=delete_tiers, delete_graph=delete_graph)

    def _build_delete_graph(self, records: List[StateRecord]) -> DependencyGraph:
        keys = {record.key for record in records}
        graph = DependencyGraph()
        for record in records:
            graph.add_node(
                record.key,
                [dep for dep in record.dependencies if dep in keys],
                item=record
            )
        graph.validate()
        return graph

    def _diff(
        self,
        resource: Resource,
        record: Optional[StateRecord],
        records: Dict[str, StateRecord],
        drift: Optional[str]
    ) -> PlanStep:
        if record is None:
            return PlanStep(
                key=resource.key,
                operation=Operation.CREATE,
                resource=resource,
                reason="not in state",
            )

        if drift == "missing":
            return PlanStep(
                key=resource.key,
                operation=Operation.CREATE,
                resource=resource,
                record=None,
                reason="recorded but missing from provider",
            )

        desired = resource.canonical_attributes()
        current = canonicalize(record.attributes)
        changed = sorted(
            name for name in set(desired) | set(current)
            if desired.get(name, _UNKNOWN) != current.get(name, _UNKNOWN)
        )
        if changed:
            return PlanStep(
                key=resource.key,
                operation=Operation.UPDATE,
                resource=resource,
                record=record,
                reason="attributes changed",
                changed_attributes=changed,
            )

        if not record.converged:
            return PlanStep(
                key=resource.key,
                operation=Operation.UPDATE,
                resource=resource,
                record=record,
                reason="convergence not confirmed",
            )

        if upstream_changed(resource, record, records):
            return PlanStep(
                key=resource.key,
                operation=Operation.UPDATE,
                resource=resource,
                record=record,
                reason="referenced value changed",
            )

        if drift == "drifted":
            return PlanStep(
                key=resource.key,
                operation=Operation.UPDATE,
                resource=resource,
                record=record,
                reason="live resource drifted",
            )

        return PlanStep(
            key=resource.key,
            operation=Operation.NO_OP,
            resource=resource,
            record=record,
            reason="up to date",
        )

    def _refresh(self, resources: List[Resource], records: Dict[str, StateRecord]) -> Dict[str, str]:
        """Read live resources; returns key -> 'missing' | 'drifted'."""
        if self.registry is None:
            return {}

        drifted = {}
        for resource in resources:
            record = records.get(resource.key)
            if record is None:
                continue
            adapter = self.registry.get(record.kind)
            observed = adapter.read(record.resource_id)
            if observed is None:
                self.logger.warning(f"{resource.key} is recorded but no longer exists")
                drifted[resource.key] = "missing"
                continue
            live = canonicalize(observed.attributes)
            applied = canonicalize(record.inputs)
            diverged = [
                name for name, value in applied.items()
                if name in live and live[name] != value
            ]
            if diverged:
                self.logger.warning(f"{resource.key} drifted: {', '.join(sorted(diverged))}")
                drifted[resource.key] = "drifted"
        return drifted
