"""
Deployment record model.

The deployment record is the persisted half of the resumability contract:
one record per environment and region holds the next stage to execute
(``step``) plus the identifiers discovered by earlier stages. Later stages
read those identifiers back, so a re-invoked run never needs to repeat a
completed stage to learn them.

Persisted keys keep the names used by the rest of the automation
(``REMOTE_STATE_SA``, ``STATE_SUBSCRIPTION``, ...); Python code uses the
snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "SCHEMA_VERSION",
    "INITIAL_STEP",
    "TERMINAL_STEP",
    "DEFAULTABLE_FIELDS",
    "StageStatus",
    "StageRun",
    "DeploymentRecord",
    "utc_now",
]

# Increment when making breaking changes to the record layout
SCHEMA_VERSION = 1

INITIAL_STEP = 0
TERMINAL_STEP = 5

# Fields the generic defaults file may fill in
DEFAULTABLE_FIELDS = frozenset({
    "keyvault",
    "subscription",
    "client_id",
    "tenant_id",
    "deployer_public_ip_address",
    "state_subscription",
    "remote_state_sa",
    "remote_state_rg",
})


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _duration(started_at: Optional[str], completed_at: str) -> Optional[float]:
    if not started_at:
        return None
    started = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
    completed = datetime.fromisoformat(completed_at.replace("Z", "+00:00"))
    return (completed - started).total_seconds()


class StageStatus(str, Enum):
    """Status values for a stage run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageRun(BaseModel):
    """History of the most recent run of one stage."""
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    attempts: int = 0

    def mark_running(self) -> None:
        self.status = StageStatus.RUNNING
        self.started_at = utc_now()
        self.completed_at = None
        self.duration_seconds = None
        self.error = None
        self.attempts += 1

    def mark_completed(self) -> None:
        self.status = StageStatus.COMPLETED
        self.completed_at = utc_now()
        self.duration_seconds = _duration(self.started_at, self.completed_at)

    def mark_failed(self, error: str) -> None:
        self.status = StageStatus.FAILED
        self.completed_at = utc_now()
        self.duration_seconds = _duration(self.started_at, self.completed_at)
        self.error = error

    def mark_skipped(self) -> None:
        self.status = StageStatus.SKIPPED
        self.completed_at = utc_now()


class DeploymentRecord(BaseModel):
    """
    Persisted state for one control plane, keyed by environment and region.

    ``step`` is the next stage to execute. It only moves forward; the
    ``force`` path deletes the whole record instead of lowering it.
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    schema_version: int = SCHEMA_VERSION
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    # Identity
    environment: str
    region_code: str

    step: int = Field(default=INITIAL_STEP, ge=INITIAL_STEP, le=TERMINAL_STEP)

    # Written once from the parameter file names
    deployer_tfstate_key: Optional[str] = None
    library_tfstate_key: Optional[str] = None

    # Discovered by stage 0
    keyvault: Optional[str] = None
    subscription: Optional[str] = None
    client_id: Optional[str] = None
    tenant_id: Optional[str] = None
    deployer_public_ip_address: Optional[str] = None

    # Discovered by stage 0 (subscription) and stage 2 (library outputs)
    state_subscription: Optional[str] = Field(default=None, alias="STATE_SUBSCRIPTION")
    remote_state_sa: Optional[str] = Field(default=None, alias="REMOTE_STATE_SA")
    remote_state_rg: Optional[str] = Field(default=None, alias="REMOTE_STATE_RG")

    stages: Dict[str, StageRun] = Field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        """Whether every stage has completed."""
        return self.step >= TERMINAL_STEP

    @classmethod
    def field_for(cls, key: str) -> Optional[str]:
        """Resolve an attribute name or persisted alias to the attribute name."""
        if key in cls.model_fields:
            return key
        for name, info in cls.model_fields.items():
            if info.alias == key:
                return name
        return None

    def get(self, key: str) -> Any:
        """Value for an attribute name or persisted alias; None when unset or unknown."""
        name = self.field_for(key)
        if name is None:
            return None
        return getattr(self, name)

    def set(self, key: str, value: Any) -> None:
        """Set a field by attribute name or persisted alias."""
        name = self.field_for(key)
        if name is None:
            raise KeyError(f"Unknown deployment record key: {key}")
        if name == "step":
            self.advance_to(value)
            return
        setattr(self, name, value)

    def advance_to(self, step: int) -> None:
        """
        Move the step counter forward.

        Raises:
            ValueError: If ``step`` is lower than the current step or out of range.
        """
        if step < self.step:
            raise ValueError(
                f"Step may not decrease (current {self.step}, requested {step})"
            )
        if step > TERMINAL_STEP:
            raise ValueError(f"Step {step} is beyond the terminal step {TERMINAL_STEP}")
        self.step = step

    def stage_run(self, stage_name: str) -> StageRun:
        """History entry for a stage (created on first access)."""
        if stage_name not in self.stages:
            self.stages[stage_name] = StageRun()
        return self.stages[stage_name]

    def to_document(self) -> Dict[str, Any]:
        """Serialize for JSON persistence using the persisted key names."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "DeploymentRecord":
        """
        Deserialize a persisted record.

        Unknown keys (written by newer versions or by hand) are dropped.
        """
        known = set(cls.model_fields)
        known.update(info.alias for info in cls.model_fields.values() if info.alias)
        filtered = {k: v for k, v in data.items() if k in known}
        return cls.model_validate(filtered)
