import os
import re
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from siliconstage.config import DEFAULT_STAGE_TIMEOUT_SEC

# Pseudo-stage that owns the flow's external inputs (RTL, testbenches).
SOURCE_STAGE = "@source"

# Publisher name of the constraints declared by the flow definition itself.
BASE_PUBLISHER = "@base"

NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StageStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STALE = "stale"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InvocationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    CANCELLED = "cancelled"


class FailureType:
    BACKEND_ERROR = "backend_error"
    MISSING_OUTPUT = "missing_output"
    TIMEOUT = "timeout"
    LAUNCH_ERROR = "launch_error"
    RESOURCE_TIMEOUT = "resource_timeout"
    CONSTRAINT_CONFLICT = "constraint_conflict"
    UPSTREAM_FAILED = "upstream_failed"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


def _check_name(value: str, what: str) -> str:
    if not NAME_RE.match(value or ""):
        raise ValueError(f"{what} '{value}' must match {NAME_RE.pattern}")
    return value


class BackendDescriptor(BaseModel):
    """How to launch the external tool behind one stage."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    command: str
    license_class: str = "default"
    timeout_sec: float = Field(default=DEFAULT_STAGE_TIMEOUT_SEC, gt=0)
    image: Optional[str] = None  # run inside this Docker image when set
    publishes_constraints: bool = False
    retry_exit_codes: List[int] = Field(default_factory=lambda: [75])

    @field_validator("command")
    @classmethod
    def _non_empty_command(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command template must not be empty")
        return value


class StageDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    inputs: List[str] = Field(default_factory=list)
    outputs: Dict[str, str] = Field(default_factory=dict)  # kind -> path relative to the work dir
    tool: BackendDescriptor

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        return _check_name(value, "Stage name")

    @field_validator("inputs")
    @classmethod
    def _valid_inputs(cls, value: List[str]) -> List[str]:
        for kind in value:
            _check_name(kind, "Artifact kind")
        if len(set(value)) != len(value):
            raise ValueError("input kinds must be unique")
        return value

    @field_validator("outputs")
    @classmethod
    def _valid_outputs(cls, value: Dict[str, str]) -> Dict[str, str]:
        for kind, rel_path in value.items():
            _check_name(kind, "Artifact kind")
            norm = os.path.normpath(rel_path)
            if os.path.isabs(rel_path) or norm == ".." or norm.startswith(".." + os.sep):
                raise ValueError(f"output '{kind}' path must stay inside the work dir: {rel_path}")
        return value


@dataclass(frozen=True)
class Artifact:
    """One immutable recorded output. A new hash means a new Artifact."""

    stage: str
    kind: str
    content_hash: str
    location: str
    object_path: Optional[str] = None
    recorded_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Artifact":
        return cls(
            stage=data["stage"],
            kind=data["kind"],
            content_hash=data["content_hash"],
            location=data.get("location", ""),
            object_path=data.get("object_path"),
            recorded_at=data.get("recorded_at", ""),
        )

    @property
    def path(self) -> str:
        """Where consumers should read the content from."""
        return self.object_path or self.location
