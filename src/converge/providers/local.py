"""Simulated provider that keeps resources in a local JSON file.

Mirrors the reference topology of one application: service identity, a
managed database instance with database and user, versioned secrets, IAM
bindings and a serverless container service.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from converge.config.models import ProviderConfig
from converge.providers.base import (
    DesiredResource,
    ObservedResource,
    ProviderAdapter,
    ProviderRegistry,
)
from converge.utils.errors import ErrorContext, ProviderError
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class LocalBackend:
    """Thread-safe JSON object store standing in for a cloud API."""

    def __init__(self, root: str):
        self.path = Path(root) / "objects.json"
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ProviderError(f"Local provider store is unreadable: {e}", cause=e)

    def _write(self, objects: Dict[str, Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        with open(temp_path, "w") as f:
            json.dump(objects, f, indent=2, sort_keys=True)
        temp_path.replace(self.path)

    def get(self, resource_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._read().get(resource_id)

    def insert(self, resource_id: str, obj: Dict[str, Any]) -> None:
        with self._lock:
            objects = self._read()
            if resource_id in objects:
                raise ProviderError(
                    f"Resource '{resource_id}' already exists",
                    context=ErrorContext(provider_id=resource_id)
                )
            objects[resource_id] = obj
            self._write(objects)

    def replace(self, resource_id: str, obj: Dict[str, Any]) -> None:
        with self._lock:
            objects = self._read()
            if resource_id not in objects:
                raise ProviderError(
                    f"Resource '{resource_id}' does not exist",
                    context=ErrorContext(provider_id=resource_id)
                )
            objects[resource_id] = obj
            self._write(objects)

    def remove(self, resource_id: str) -> bool:
        with self._lock:
            objects = self._read()
            if objects.pop(resource_id, None) is None:
                return False
            self._write(objects)
            return True

    def list_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._read())


class LocalProvider(ProviderAdapter):
    """Generic simulated adapter; subclasses shape ids and outputs per kind."""

    def __init__(self, config: ProviderConfig, backend: LocalBackend, kind: Optional[str] = None):
        super().__init__(config)
        self.backend = backend
        if kind:
            self.kind = kind

    def resource_id(self, desired: DesiredResource) -> str:
        return f"projects/{self.config.project}/{self.kind}s/{desired.name}"

    def compute_outputs(
        self,
        resource_id: str,
        desired: DesiredResource,
        previous: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return {"id": resource_id, "name": desired.name}

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def create(self, desired: DesiredResource) -> Tuple[str, Dict[str, Any]]:
        resource_id = self.resource_id(desired)
        outputs = self.compute_outputs(resource_id, desired)
        self.backend.insert(resource_id, {
            "kind": self.kind,
            "name": desired.name,
            "attributes": desired.attributes,
            "outputs": outputs,
            "created_at": self._now(),
            "pending_reads": self._propagation_reads(),
        })
        logger.debug(f"Created local {self.kind} {resource_id}")
        return resource_id, outputs

    def read(self, resource_id: str) -> Optional[ObservedResource]:
        obj = self.backend.get(resource_id)
        if obj is None:
            return None

        pending = obj.get("pending_reads", 0)
        if pending > 0:
            obj["pending_reads"] = pending - 1
            self.backend.replace(resource_id, obj)

        return ObservedResource(
            attributes=dict(obj["attributes"]),
            outputs=dict(obj["outputs"]),
            ready=pending == 0,
        )

    def update(self, resource_id: str, desired: DesiredResource) -> Dict[str, Any]:
        obj = self.backend.get(resource_id)
        if obj is None:
            raise ProviderError(
                f"Cannot update missing {self.kind} '{resource_id}'",
                context=ErrorContext(resource_key=desired.key, provider_id=resource_id)
            )
        outputs = self.compute_outputs(resource_id, desired, previous=obj)
        obj.update({
            "attributes": desired.attributes,
            "outputs": outputs,
            "updated_at": self._now(),
            "pending_reads": self._propagation_reads(),
        })
        self.backend.replace(resource_id, obj)
        logger.debug(f"Updated local {self.kind} {resource_id}")
        return outputs

    def delete(self, resource_id: str) -> None:
        if not self.backend.remove(resource_id):
            logger.debug(f"Local {self.kind} {resource_id} already absent")

    def _propagation_reads(self) -> int:
        if not self.eventually_consistent:
            return 0
        return int(self.config.options.get("propagation_reads", 1))


class ServiceAccountProvider(LocalProvider):
    kind = "service_account"
    required_attributes = ("account_id",)

    def resource_id(self, desired: DesiredResource) -> str:
        return f"projects/{self.config.project}/serviceAccounts/{self._email(desired)}"

    def _email(self, desired: DesiredResource) -> str:
        return f"{desired.attributes['account_id']}@{self.config.project}.iam.gserviceaccount.com"

    def compute_outputs(self, resource_id, desired, previous=None):
        email = self._email(desired)
        return {"id": resource_id, "email": email, "member": f"serviceAccount:{email}"}


class DatabaseInstanceProvider(LocalProvider):
    kind = "database_instance"
    required_attributes = ("database_version", "tier")

    def resource_id(self, desired: DesiredResource) -> str:
        return f"projects/{self.config.project}/instances/{desired.name}"

    def compute_outputs(self, resource_id, desired, previous=None):
        return {
            "id": resource_id,
            "name": desired.name,
            "connection_name": f"{self.config.project}:{self.config.region}:{desired.name}",
        }


class DatabaseProvider(LocalProvider):
    kind = "database"
    required_attributes = ("instance",)

    def resource_id(self, desired: DesiredResource) -> str:
        instance = desired.attributes["instance"]
        return f"projects/{self.config.project}/instances/{instance}/databases/{desired.name}"


class DatabaseUserProvider(LocalProvider):
    kind = "database_user"
    required_attributes = ("instance", "password")

    def resource_id(self, desired: DesiredResource) -> str:
        instance = desired.attributes["instance"]
        return f"projects/{self.config.project}/instances/{instance}/users/{desired.name}"


class IAMBindingProvider(LocalProvider):
    """IAM grants become visible only after propagation."""

    kind = "iam_binding"
    required_attributes = ("role", "member")
    eventually_consistent = True

    def resource_id(self, desired: DesiredResource) -> str:
        digest = hashlib.sha256(
            f"{desired.attributes.get('target', '')}|{desired.attributes['role']}|"
            f"{desired.attributes['member']}".encode("utf-8")
        ).hexdigest()[:12]
        return f"projects/{self.config.project}/iamBindings/{desired.name}-{digest}"

    def compute_outputs(self, resource_id, desired, previous=None):
        etag = hashlib.sha256(json.dumps(desired.attributes, sort_keys=True).encode("utf-8"))
        return {"id": resource_id, "etag": etag.hexdigest()[:16]}


class ContainerServiceProvider(LocalProvider):
    kind = "container_service"
    required_attributes = ("image",)

    def resource_id(self, desired: DesiredResource) -> str:
        return f"projects/{self.config.project}/locations/{self.config.region}/services/{desired.name}"

    def compute_outputs(self, resource_id, desired, previous=None):
        revision = 1
        if previous:
            revision = previous["outputs"].get("revision", 0) + 1
        digest = hashlib.sha256(resource_id.encode("utf-8")).hexdigest()[:10]
        return {
            "id": resource_id,
            "name": desired.name,
            "url": f"https://{desired.name}-{digest}.{self.config.region}.run.app",
            "revision": revision,
            "latest_revision": f"{desired.name}-{revision:05d}",
        }


class SecretProvider(LocalProvider):
    """Secrets whose every value write is a new immutable version."""

    kind = "secret"

    def resource_id(self, desired: DesiredResource) -> str:
        return f"projects/{self.config.project}/secrets/{desired.name}"

    def compute_outputs(self, resource_id, desired, previous=None):
        versions = list(previous.get("versions", [])) if previous else []
        return self._version_outputs(resource_id, versions)

    def _version_outputs(self, resource_id: str, versions: List[Dict[str, Any]]) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {"id": resource_id, "secret_id": resource_id}
        if versions:
            latest = versions[-1]
            outputs["version"] = latest["version"]
            outputs["value"] = latest["value"]
            outputs["versions"] = {str(v["version"]): v["value"] for v in versions}
        return outputs

    def create(self, desired: DesiredResource) -> Tuple[str, Dict[str, Any]]:
        resource_id = self.resource_id(desired)
        versions = []
        if "value" in desired.attributes:
            versions.append(self._new_version(1, desired.attributes["value"]))
        outputs = self._version_outputs(resource_id, versions)
        self.backend.insert(resource_id, {
            "kind": self.kind,
            "name": desired.name,
            "attributes": self._public_attributes(desired),
            "outputs": {"id": resource_id, "secret_id": resource_id},
            "versions": versions,
            "created_at": self._now(),
            "pending_reads": 0,
        })
        return resource_id, outputs

    def update(self, resource_id: str, desired: DesiredResource) -> Dict[str, Any]:
        obj = self.backend.get(resource_id)
        if obj is None:
            raise ProviderError(
                f"Cannot update missing secret '{resource_id}'",
                context=ErrorContext(resource_key=desired.key, provider_id=resource_id)
            )
        versions = list(obj.get("versions", []))
        if "value" in desired.attributes:
            versions.append(self._new_version(len(versions) + 1, desired.attributes["value"]))
        obj.update({
            "attributes": self._public_attributes(desired),
            "versions": versions,
            "updated_at": self._now(),
        })
        self.backend.replace(resource_id, obj)
        return self._version_outputs(resource_id, versions)

    def read(self, resource_id: str) -> Optional[ObservedResource]:
        obj = self.backend.get(resource_id)
        if obj is None:
            return None
        return ObservedResource(
            attributes=dict(obj["attributes"]),
            outputs=self._version_outputs(resource_id, obj.get("versions", [])),
        )

    def is_converged(self, desired: DesiredResource, observed: Optional[ObservedResource]) -> bool:
        if observed is None:
            return False
        if "value" in desired.attributes:
            return observed.outputs.get("value") == desired.attributes["value"]
        return True

    def access(self, resource_id: str, version: str = "latest") -> str:
        """Return the value of one version; old versions stay readable.

        Raises:
            ProviderError: If the secret or version does not exist
        """
        obj = self.backend.get(resource_id)
        versions = obj.get("versions", []) if obj else []
        if not versions:
            raise ProviderError(f"Secret '{resource_id}' has no versions")
        if version == "latest":
            return versions[-1]["value"]
        for entry in versions:
            if str(entry["version"]) == str(version):
                return entry["value"]
        raise ProviderError(f"Secret '{resource_id}' has no version {version}")

    def _new_version(self, number: int, value: Any) -> Dict[str, Any]:
        return {"version": number, "value": value, "created_at": self._now()}

    def _public_attributes(self, desired: DesiredResource) -> Dict[str, Any]:
        return {k: v for k, v in desired.attributes.items() if k != "value"}


BUILTIN_ADAPTERS = (
    ServiceAccountProvider,
    DatabaseInstanceProvider,
    DatabaseProvider,
    DatabaseUserProvider,
    IAMBindingProvider,
    ContainerServiceProvider,
    SecretProvider,
)


def build_local_registry(config: ProviderConfig) -> ProviderRegistry:
    """Registry of simulated adapters rooted at ``options.local_root``.

    ``options.generic_kinds`` registers a plain LocalProvider for extra kinds.
    """
    backend = LocalBackend(config.options.get("local_root", ".converge/local"))
    registry = ProviderRegistry(config)

    for adapter_cls in BUILTIN_ADAPTERS:
        registry.register(adapter_cls(config, backend))

    for kind in config.options.get("generic_kinds", []):
        registry.register(LocalProvider(config, backend, kind=kind))

    return registry
