"""YAML/JSON declaration parser."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from converge.config.models import (
    DeclarationConfig,
    EngineSettings,
    OutputConfig,
    ProjectConfig,
    ProviderConfig,
)
from converge.resources.models import (
    EnvOverride,
    Resource,
    ResourceRef,
    build_resource,
    resolve_overrides,
)
from converge.utils.errors import ValidationError
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class ConfigValidationError(ValidationError):
    """Raised when the declaration file fails schema validation."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        super().__init__(message)

    def __str__(self) -> str:
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


@dataclass
class Declaration:
    """Validated declaration ready for planning."""

    project: ProjectConfig
    provider: ProviderConfig
    settings: EngineSettings
    resources: List[Resource] = field(default_factory=list)
    outputs: Dict[str, OutputConfig] = field(default_factory=dict)

    def get_resource(self, key: str) -> Optional[Resource]:
        for resource in self.resources:
            if resource.key == key:
                return resource
        return None

    def keys(self) -> List[str]:
        return [resource.key for resource in self.resources]


def convert_value(value: Any) -> Any:
    """Turn ``{ref: ...}`` and ``{env: ...}`` mappings into typed values."""
    if isinstance(value, Mapping):
        if set(value) == {"ref"}:
            return ResourceRef.parse(value["ref"])
        if "env" in value and set(value) <= {"env", "default"}:
            if "default" in value:
                return EnvOverride(var=value["env"], default=value["default"])
            return EnvOverride(var=value["env"])
        return {k: convert_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [convert_value(v) for v in value]
    return value


class DeclarationParser:
    """Loads and validates a declaration file."""

    def __init__(self, path: str, environ: Optional[Mapping[str, str]] = None):
        self.path = Path(path)
        self.environ = environ
        self.data: Dict = {}

    def load(self) -> Declaration:
        """Read, validate and convert the declaration.

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigValidationError: If the file does not match the schema
            ValidationError: If a value cannot be converted
        """
        if not self.path.exists():
            raise FileNotFoundError(f"Declaration file not found: {self.path}")

        try:
            text = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ConfigValidationError(f"Failed to read {self.path}: {e}")

        try:
            if self.path.suffix == ".json":
                self.data = json.loads(text) or {}
            else:
                self.data = yaml.safe_load(text) or {}
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigValidationError(f"Failed to parse {self.path}: {e}")

        return self.parse(self.data)

    def parse(self, data: Dict) -> Declaration:
        if not isinstance(data, dict):
            raise ConfigValidationError("Declaration must be a mapping at the top level")

        try:
            config = DeclarationConfig(**data)
        except PydanticValidationError as e:
            errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
            raise ConfigValidationError(
                f"Declaration validation failed with {len(errors)} error(s)", errors
            )

        resources = []
        for resource_config in config.resources:
            attributes = resolve_overrides(
                convert_value(resource_config.attributes), self.environ
            )
            resource = build_resource(
                kind=resource_config.kind,
                name=resource_config.name,
                attributes=attributes,
                depends_on=resource_config.depends_on,
            )
            defaults = config.defaults.get(resource.kind)
            if defaults:
                resource = resource.with_defaults(resolve_overrides(convert_value(defaults), self.environ))
            resources.append(resource)

        declared = {resource.key for resource in resources}
        for name, output in config.outputs.items():
            ref = ResourceRef.parse(output.ref)
            if ref.key not in declared:
                raise ValidationError(
                    f"Output '{name}' references undeclared resource '{ref.key}'"
                )

        logger.debug(f"Loaded {len(resources)} resources from {self.path}")

        return Declaration(
            project=config.project,
            provider=config.provider,
            settings=config.settings,
            resources=resources,
            outputs=dict(config.outputs),
        )


def load_declaration(path: str, environ: Optional[Mapping[str, str]] = None) -> Declaration:
    return DeclarationParser(path, environ=environ).load()
