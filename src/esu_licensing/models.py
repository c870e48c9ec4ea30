"""Domain models for ESU license provisioning."""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class LicenseState(str, Enum):
    ACTIVATED = "Activated"
    DEACTIVATED = "Deactivated"


class LicenseEdition(str, Enum):
    STANDARD = "Standard"
    DATACENTER = "Datacenter"


class CoreType(str, Enum):
    PCORE = "pCore"
    VCORE = "vCore"


# Inclusive bounds; counts must also be even.
CORE_COUNT_BOUNDS: Dict[CoreType, tuple[int, int]] = {
    CoreType.PCORE: (16, 256),
    CoreType.VCORE: (8, 128),
}


def parse_enum(enum_type: type[Enum], value: Any) -> Enum:
    """Case-insensitive lookup of an enum member by its API value."""

    if isinstance(value, enum_type):
        return value
    text = str(value).strip().lower()
    for member in enum_type:
        if member.value.lower() == text:
            return member
    raise ValueError(f"{value!r} is not one of {', '.join(m.value for m in enum_type)}")


@dataclass(frozen=True, slots=True)
class Credentials:
    tenant_id: str
    client_id: str
    client_secret: str = field(repr=False)


@dataclass(slots=True)
class BearerToken:
    access_token: str = field(repr=False)
    expires_at: float

    def is_expired(self) -> bool:
        return time.time() >= self.expires_at - 60  # refresh 1 min early


@dataclass(frozen=True, slots=True)
class LicenseSpec:
    """Attributes of one ESU license resource."""

    subscription_id: str
    resource_group: str
    license_name: str
    location: str
    state: LicenseState
    edition: LicenseEdition
    core_type: CoreType
    core_count: int

    @property
    def resource_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}"
            f"/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.HybridCompute/licenses/{self.license_name}"
        )

    def with_overrides(
        self,
        *,
        license_name: Optional[str] = None,
        edition: Optional[LicenseEdition] = None,
        core_type: Optional[CoreType] = None,
        core_count: Optional[int] = None,
    ) -> "LicenseSpec":
        changes: Dict[str, Any] = {}
        if license_name is not None:
            changes["license_name"] = license_name
        if edition is not None:
            changes["edition"] = edition
        if core_type is not None:
            changes["core_type"] = core_type
        if core_count is not None:
            changes["core_count"] = core_count
        return replace(self, **changes)


@dataclass(frozen=True, slots=True)
class InputRow:
    """One CSV record. Empty override cells are carried as None."""

    line_number: int
    server_name: str
    edition: Optional[LicenseEdition] = None
    core_type: Optional[CoreType] = None
    core_count: Optional[int] = None


DEFAULT_NAME_TEMPLATE = "{license_name}"


def render_license_name(template: Optional[str], spec: LicenseSpec, row: InputRow) -> str:
    """License name for a row; the default template shares one license across rows."""

    return (template or DEFAULT_NAME_TEMPLATE).format(
        license_name=spec.license_name,
        server_name=row.server_name.strip(),
    )


@dataclass(slots=True)
class StepOutcome:
    succeeded: bool
    message: Optional[str] = None
    detail: Optional[str] = None


class Stage(str, Enum):
    AUTH = "auth"
    UPSERT = "upsert"
    ASSIGNMENT = "assignment"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


@dataclass(slots=True)
class TaskResult:
    """Outcome of a single row. `stage` names the step that ended the task."""

    row: InputRow
    license_name: str
    stage: Stage
    upsert: Optional[StepOutcome] = None
    assignment: Optional[StepOutcome] = None
    resource: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.stage is Stage.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        def _outcome(outcome: Optional[StepOutcome]) -> Optional[Dict[str, Any]]:
            if outcome is None:
                return None
            return {"succeeded": outcome.succeeded, "message": outcome.message}

        return {
            "line": self.row.line_number,
            "server": self.row.server_name,
            "license": self.license_name,
            "status": "succeeded" if self.succeeded else "failed",
            "stage": self.stage.value,
            "upsert": _outcome(self.upsert),
            "assignment": _outcome(self.assignment),
            "resource_id": (self.resource or {}).get("id"),
            "error": self.error,
            "duration_seconds": round(self.duration, 3),
        }


@dataclass(slots=True)
class BatchReport:
    results: List[TaskResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    aborted_reason: Optional[str] = None

    @property
    def succeeded(self) -> List[TaskResult]:
        return [result for result in self.results if result.succeeded]

    @property
    def failed(self) -> List[TaskResult]:
        return [result for result in self.results if not result.succeeded]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.all_succeeded else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": len(self.results),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "aborted_reason": self.aborted_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "rows": [result.to_dict() for result in self.results],
        }
