"""Pydantic models for the declaration file schema."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

KIND_PATTERN = r"^[a-z][a-z0-9_]*$"
NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"


class ProjectConfig(BaseModel):
    """Project metadata."""

    name: str = Field(..., min_length=1)
    environment: str = Field("default", min_length=1)


class ProviderConfig(BaseModel):
    """Explicit provider session configuration handed to every adapter.

    Credentials are resolved by the provider itself from ``profile``; nothing
    is held as process-wide state.
    """

    name: str = Field("local", description="Provider adapter set to load")
    project: str = Field("local-project", description="Target project/account")
    region: str = Field("local", description="Target region")
    profile: Optional[str] = Field(None, description="Credential profile name")
    options: Dict[str, Any] = Field(default_factory=dict, description="Adapter-specific options")


class RetrySettings(BaseModel):
    """Bounded exponential backoff."""

    max_attempts: int = Field(4, ge=1)
    base_delay: float = Field(0.5, ge=0)
    max_delay: float = Field(10.0, ge=0)
    jitter: bool = True

    @model_validator(mode="after")
    def validate_delays(self):
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self


class EngineSettings(BaseModel):
    """Reconciliation engine settings."""

    max_workers: int = Field(4, ge=1, le=64)
    state_path: str = Field(".converge/state.json")
    lock_timeout: float = Field(30.0, ge=0)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    convergence: RetrySettings = Field(
        default_factory=lambda: RetrySettings(max_attempts=10, base_delay=0.5, max_delay=5.0),
        description="Polling used to confirm eventually consistent resources"
    )


class ResourceConfig(BaseModel):
    """A resource block as written in the declaration."""

    kind: str = Field(..., pattern=KIND_PATTERN)
    name: str = Field(..., pattern=NAME_PATTERN)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> List[str]:
        for entry in v:
            parts = entry.split(".") if isinstance(entry, str) else []
            if len(parts) != 2 or not all(parts):
                raise ValueError(f"depends_on entry '{entry}' must be 'kind.name'")
        return v

    @property
    def key(self) -> str:
        return f"{self.kind}.{self.name}"


class OutputConfig(BaseModel):
    """Named value derived from an applied resource."""

    ref: str = Field(..., min_length=3)
    description: Optional[str] = None
    sensitive: bool = False


class DeclarationConfig(BaseModel):
    """Top-level declaration file."""

    project: ProjectConfig
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    settings: EngineSettings = Field(default_factory=EngineSettings)
    defaults: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, description="Per-kind attribute defaults"
    )
    resources: List[ResourceConfig] = Field(default_factory=list)
    outputs: Dict[str, OutputConfig] = Field(default_factory=dict)

    @field_validator("outputs", mode="before")
    @classmethod
    def expand_output_shorthand(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {
                name: {"ref": entry} if isinstance(entry, str) else entry
                for name, entry in v.items()
            }
        return v

    @model_validator(mode="after")
    def validate_unique_resources(self):
        seen = set()
        for resource in self.resources:
            if resource.key in seen:
                raise ValueError(f"Resource '{resource.key}' is declared more than once")
            seen.add(resource.key)
        return self
