"""Declaration loading and engine configuration."""

from .models import (
    DeclarationConfig,
    EngineSettings,
    OutputConfig,
    ProjectConfig,
    ProviderConfig,
    ResourceConfig,
    RetrySettings,
)
from .parser import ConfigValidationError, Declaration, DeclarationParser, load_declaration

__all__ = [
    "DeclarationConfig",
    "EngineSettings",
    "OutputConfig",
    "ProjectConfig",
    "ProviderConfig",
    "ResourceConfig",
    "RetrySettings",
    "ConfigValidationError",
    "Declaration",
    "DeclarationParser",
    "load_declaration",
]
