"""Resource model for declared infrastructure."""

from .models import (
    SECRET_KIND,
    EnvOverride,
    GeneratePolicy,
    Resource,
    ResourceRef,
    Secret,
    build_resource,
    canonicalize,
    fingerprint,
    iter_references,
    resolve_overrides,
    resolve_references,
)

__all__ = [
    "SECRET_KIND",
    "EnvOverride",
    "GeneratePolicy",
    "Resource",
    "ResourceRef",
    "Secret",
    "build_resource",
    "canonicalize",
    "fingerprint",
    "iter_references",
    "resolve_overrides",
    "resolve_references",
]
