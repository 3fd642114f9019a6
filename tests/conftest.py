"""Pytest configuration and fixtures."""

import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from converge.config.models import EngineSettings, OutputConfig, ProjectConfig, ProviderConfig  # noqa: E402
from converge.config.parser import Declaration  # noqa: E402
from converge.orchestrator.orchestrator import ProvisioningOrchestrator  # noqa: E402
from converge.providers.base import (  # noqa: E402
    DesiredResource,
    ObservedResource,
    ProviderAdapter,
    ProviderRegistry,
)
from converge.resources.models import ResourceRef, build_resource  # noqa: E402
from converge.state.manager import StateManager  # noqa: E402
from converge.utils.errors import ProviderError  # noqa: E402
from converge.utils.retry import RetryStrategy  # noqa: E402


class FakeCloud:
    """In-memory provider backend that records every call.

    ``fail(operation, key, ...)`` queues errors raised by the next matching
    calls, so tests can inject permanent and transient failures.
    """

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.events: List[Tuple[str, str, str]] = []
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[Tuple[str, str], List[Exception]] = {}
        self.pending_reads = 0
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def fail(self, operation: str, key: str, error: Optional[Exception] = None, times: int = 1) -> None:
        error = error or ProviderError(f"injected {operation} failure for {key}")
        self.failures.setdefault((operation, key), []).extend([error] * times)

    def record(self, operation: str, key: str) -> None:
        with self._lock:
            self.calls.append((operation, key))
            queued = self.failures.get((operation, key))
            error = queued.pop(0) if queued else None
        if error is not None:
            raise error

    def enter(self, operation: str, key: str) -> None:
        with self._lock:
            self.events.append(("start", operation, key))
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def leave(self, operation: str, key: str) -> None:
        with self._lock:
            self.events.append(("end", operation, key))
            self.active -= 1

    def event_index(self, event: str, operation: str, key: str) -> int:
        return self.events.index((event, operation, key))

    def calls_for(self, operation: str) -> List[str]:
        return [key for op, key in self.calls if op == operation]

    def mutating_calls(self) -> List[Tuple[str, str]]:
        return [call for call in self.calls if call[0] in ("create", "update", "delete")]

    def registry(self, kinds=("network", "database", "app", "binding"), eventually_consistent=()) -> ProviderRegistry:
        config = ProviderConfig(name="fake")
        registry = ProviderRegistry(config)
        for kind in kinds:
            registry.register(FakeAdapter(config, self, kind, kind in eventually_consistent))
        registry.register(FakeSecretAdapter(config, self))
        return registry


class FakeAdapter(ProviderAdapter):
    """Adapter whose outputs echo the applied attributes."""

    def __init__(self, config: ProviderConfig, cloud: FakeCloud, kind: str, eventually_consistent: bool = False):
        super().__init__(config)
        self.cloud = cloud
        self.kind = kind
        self.eventually_consistent = eventually_consistent

    def _key(self, resource_id: str) -> str:
        return resource_id.split("/", 1)[1]

    def _call(self, operation: str, key: str) -> None:
        self.cloud.enter(operation, key)
        try:
            self.cloud.record(operation, key)
            if self.cloud.delay:
                time.sleep(self.cloud.delay)
        finally:
            self.cloud.leave(operation, key)

    def outputs(self, resource_id: str, desired: DesiredResource) -> Dict[str, Any]:
        return {"id": resource_id, "name": desired.name, **desired.attributes}

    def create(self, desired):
        self._call("create", desired.key)
        resource_id = f"fake/{desired.key}"
        outputs = self.outputs(resource_id, desired)
        self.cloud.objects[resource_id] = {
            "attributes": dict(desired.attributes),
            "outputs": outputs,
            "pending_reads": self.cloud.pending_reads if self.eventually_consistent else 0,
        }
        return resource_id, outputs

    def read(self, resource_id):
        self._call("read", self._key(resource_id))
        obj = self.cloud.objects.get(resource_id)
        if obj is None:
            return None
        ready = obj["pending_reads"] == 0
        if not ready:
            obj["pending_reads"] -= 1
        return ObservedResource(attributes=dict(obj["attributes"]), outputs=dict(obj["outputs"]), ready=ready)

    def update(self, resource_id, desired):
        self._call("update", desired.key)
        outputs = self.outputs(resource_id, desired)
        self.cloud.objects[resource_id] = {
            "attributes": dict(desired.attributes),
            "outputs": outputs,
            "pending_reads": self.cloud.pending_reads if self.eventually_consistent else 0,
        }
        return outputs

    def delete(self, resource_id):
        self._call("delete", self._key(resource_id))
        self.cloud.objects.pop(resource_id, None)


class FakeSecretAdapter(FakeAdapter):
    """Secret adapter keeping every written value as a version."""

    def __init__(self, config: ProviderConfig, cloud: FakeCloud):
        super().__init__(config, cloud, "secret")

    def outputs(self, resource_id, desired):
        obj = self.cloud.objects.get(resource_id, {})
        versions = list(obj.get("versions", []))
        if "value" in desired.attributes:
            versions.append(desired.attributes["value"])
        outputs = {"id": resource_id, "secret_id": resource_id, "versions_list": versions}
        if versions:
            outputs.update(version=len(versions), value=versions[-1])
        return outputs

    def create(self, desired):
        self._call("create", desired.key)
        resource_id = f"fake/{desired.key}"
        outputs = self.outputs(resource_id, desired)
        self.cloud.objects[resource_id] = self._stored(desired, outputs)
        return resource_id, outputs

    def update(self, resource_id, desired):
        self._call("update", desired.key)
        outputs = self.outputs(resource_id, desired)
        self.cloud.objects[resource_id] = self._stored(desired, outputs)
        return outputs

    def _stored(self, desired, outputs):
        return {
            "attributes": {k: v for k, v in desired.attributes.items() if k != "value"},
            "outputs": outputs,
            "versions": outputs["versions_list"],
            "pending_reads": 0,
        }


def res(kind: str, name: str, depends_on=None, **attributes):
    """Shorthand for building a resource in tests."""
    return build_resource(kind, name, attributes, depends_on)


def ref(text: str) -> ResourceRef:
    return ResourceRef.parse(text)


def fast_retry(max_attempts: int = 3) -> RetryStrategy:
    return RetryStrategy(max_attempts=max_attempts, base_delay=0, jitter=False, sleep=lambda _: None)


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def registry(cloud):
    return cloud.registry()


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / "state.json"


@pytest.fixture
def state_manager(state_path):
    return StateManager(str(state_path))


@pytest.fixture
def make_orchestrator(registry, state_path):
    """Factory building an orchestrator over fresh state manager instances."""

    def factory(resources, outputs=None, max_workers=4, registry_override=None, cancel_event=None):
        declaration = Declaration(
            project=ProjectConfig(name="test"),
            provider=ProviderConfig(name="fake"),
            settings=EngineSettings(state_path=str(state_path), max_workers=max_workers, lock_timeout=1),
            resources=list(resources),
            outputs={
                name: value if isinstance(value, OutputConfig) else OutputConfig(ref=value)
                for name, value in (outputs or {}).items()
            },
        )
        return ProvisioningOrchestrator(
            declaration=declaration,
            state_manager=StateManager(str(state_path)),
            registry=registry_override or registry,
            cancel_event=cancel_event,
            retry=fast_retry(),
            convergence=fast_retry(max_attempts=5),
        )

    return factory
