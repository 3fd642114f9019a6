"""Provider adapters."""

from .base import (
    DesiredResource,
    ObservedResource,
    ProviderAdapter,
    ProviderRegistry,
    load_registry,
)
from .local import (
    ContainerServiceProvider,
    DatabaseInstanceProvider,
    DatabaseProvider,
    DatabaseUserProvider,
    IAMBindingProvider,
    LocalBackend,
    LocalProvider,
    SecretProvider,
    ServiceAccountProvider,
    build_local_registry,
)

__all__ = [
    'DesiredResource',
    'ObservedResource',
    'ProviderAdapter',
    'ProviderRegistry',
    'load_registry',
    'LocalBackend',
    'LocalProvider',
    'ServiceAccountProvider',
    'DatabaseInstanceProvider',
    'DatabaseProvider',
    'DatabaseUserProvider',
    'IAMBindingProvider',
    'ContainerServiceProvider',
    'SecretProvider',
    'build_local_registry',
]
