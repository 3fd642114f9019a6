"""State file data models."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateRecord(BaseModel):
    """Last-applied snapshot of one resource."""

    kind: str = Field(..., description="Resource kind")
    name: str = Field(..., description="Resource name")
    resource_id: str = Field(..., description="Provider-assigned identifier")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Canonical declared attributes at last apply"
    )
    inputs: Dict[str, Any] = Field(
        default_factory=dict, description="Resolved attribute values sent to the provider"
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Computed outputs returned by the provider"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Keys of resources this one depended on"
    )
    policy_fingerprint: Optional[str] = Field(
        None, description="Fingerprint of the value policy (secrets only)"
    )
    converged: bool = Field(
        True, description="False while an eventually consistent change is unconfirmed"
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> str:
        return f"{self.kind}.{self.name}"


class State(BaseModel):
    """Complete persisted state for one declaration."""

    version: str = Field("1", description="State file format version")
    serial: int = Field(0, description="Incremented on every write")
    lineage: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Identifier shared by every serial of this state"
    )
    timestamp: datetime = Field(default_factory=_utcnow, description="Last update timestamp")
    records: Dict[str, StateRecord] = Field(
        default_factory=dict, description="Resource records keyed by 'kind.name'"
    )
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Derived outputs")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def list_records(self) -> List[StateRecord]:
        return list(self.records.values())

    def get_dependents(self, key: str) -> List[str]:
        """Keys of recorded resources that depended on ``key``."""
        return [r.key for r in self.records.values() if key in r.dependencies]

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "State":
        return cls.model_validate(data)
