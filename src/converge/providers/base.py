"""Base provider adapter interface and registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, List, Optional, Tuple

from converge.config.models import ProviderConfig
from converge.utils.errors import ConfigurationError, ValidationError

PROVIDER_ENTRY_POINT_GROUP = "converge.providers"


@dataclass
class DesiredResource:
    """Fully resolved desired state handed to an adapter."""
    kind: str
    name: str
    attributes: Dict[str, Any]

    @property
    def key(self) -> str:
        return f"{self.kind}.{self.name}"


@dataclass
class ObservedResource:
    """What the provider reports about a live resource."""
    attributes: Dict[str, Any]
    outputs: Dict[str, Any] = field(default_factory=dict)
    ready: bool = True


class ProviderAdapter(ABC):
    """Create/read/update/delete for one resource kind.

    Every call may raise ``ProviderError``; ``transient=True`` errors are
    retried by the engine.
    """

    kind: str = ""
    required_attributes: Tuple[str, ...] = ()
    # When True the engine confirms every create/update with read() polling
    eventually_consistent: bool = False

    def __init__(self, config: ProviderConfig):
        self.config = config

    @abstractmethod
    def create(self, desired: DesiredResource) -> Tuple[str, Dict[str, Any]]:
        """Create the resource.

        Returns:
            (provider-assigned id, computed outputs)
        """

    @abstractmethod
    def read(self, resource_id: str) -> Optional[ObservedResource]:
        """Observe the live resource; None means it does not exist."""

    @abstractmethod
    def update(self, resource_id: str, desired: DesiredResource) -> Dict[str, Any]:
        """Update the resource in place and return its computed outputs."""

    @abstractmethod
    def delete(self, resource_id: str) -> None:
        """Delete the resource. Deleting a missing resource is not an error."""

    def is_converged(self, desired: DesiredResource, observed: Optional[ObservedResource]) -> bool:
        """Whether ``observed`` reflects ``desired``."""
        if observed is None or not observed.ready:
            return False
        return all(
            observed.attributes.get(name) == value
            for name, value in desired.attributes.items()
        )


class ProviderRegistry:
    """Maps resource kinds to adapters."""

    def __init__(self, config: ProviderConfig):
        self.config = config
        self._adapters: Dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        if not adapter.kind:
            raise ConfigurationError(f"Adapter {type(adapter).__name__} does not declare a kind")
        self._adapters[adapter.kind] = adapter

    def get(self, kind: str) -> ProviderAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise ValidationError(
                f"No provider adapter for resource kind '{kind}'",
                suggestions=[f"Supported kinds: {', '.join(self.kinds()) or 'none'}"]
            )
        return adapter

    def supports(self, kind: str) -> bool:
        return kind in self._adapters

    def required_attributes(self, kind: str) -> Tuple[str, ...]:
        return self.get(kind).required_attributes

    def kinds(self) -> List[str]:
        return sorted(self._adapters)


RegistryFactory = Callable[[ProviderConfig], ProviderRegistry]


def load_registry(config: ProviderConfig) -> ProviderRegistry:
    """Build the adapter registry for ``config.name``.

    ``local`` is built in; other providers are discovered through the
    ``converge.providers`` entry point group.

    Raises:
        ConfigurationError: If no provider with that name is installed
    """
    if config.name == "local":
        from converge.providers.local import build_local_registry
        return build_local_registry(config)

    for entry_point in entry_points(group=PROVIDER_ENTRY_POINT_GROUP):
        if entry_point.name == config.name:
            factory: RegistryFactory = entry_point.load()
            return factory(config)

    raise ConfigurationError(
        f"Provider '{config.name}' is not installed",
        suggestions=[
            "Use provider name 'local' for the built-in simulated provider",
            f"Install a package exposing a '{PROVIDER_ENTRY_POINT_GROUP}' entry point",
        ]
    )
