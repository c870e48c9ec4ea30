"""Pre-flight checks for run parameters and CSV rows.

Every check returns a list of violations instead of raising, so a single
pass can report everything that is wrong with a run before any request is
sent.
"""
from __future__ import annotations

import re
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from .models import (
    CORE_COUNT_BOUNDS,
    CoreType,
    InputRow,
    LicenseEdition,
    LicenseSpec,
    LicenseState,
    parse_enum,
    render_license_name,
)

RESOURCE_NAME_PATTERN = re.compile(r"^[-\w\._\(\)]+$")
RESOURCE_NAME_MAX_LENGTH = 90


@dataclass(frozen=True, slots=True)
class Violation:
    field: str
    value: Any
    message: str

    def __str__(self) -> str:
        return f"{self.field}={self.value!r}: {self.message}"


class ValidationError(ValueError):
    """Raised with every violation found during pre-flight validation."""

    def __init__(self, violations: Sequence[Violation]) -> None:
        self.violations = list(violations)
        super().__init__(str(self))

    def __str__(self) -> str:
        lines = [f"{len(self.violations)} validation error(s):"]
        lines.extend(f"  - {violation}" for violation in self.violations)
        return "\n".join(lines)


def ensure_valid(violations: Iterable[Violation]) -> None:
    collected = list(violations)
    if collected:
        raise ValidationError(collected)


def validate_guid(field: str, value: Any) -> List[Violation]:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return [Violation(field, value, "must be a GUID")]
    return []


def validate_not_empty(field: str, value: Any) -> List[Violation]:
    if value is None or not str(value).strip():
        return [Violation(field, value, "must not be empty")]
    return []


def validate_resource_name(field: str, value: Any) -> List[Violation]:
    text = "" if value is None else str(value)
    if not 1 <= len(text) <= RESOURCE_NAME_MAX_LENGTH:
        return [Violation(field, value, f"must be 1-{RESOURCE_NAME_MAX_LENGTH} characters")]
    violations: List[Violation] = []
    if not RESOURCE_NAME_PATTERN.match(text):
        violations.append(
            Violation(field, value, "may only contain alphanumerics, underscores, parentheses, hyphens and periods")
        )
    if text.endswith("."):
        violations.append(Violation(field, value, "must not end with a period"))
    return violations


def validate_choice(field: str, value: Any, enum_type: type) -> List[Violation]:
    try:
        parse_enum(enum_type, value)
    except ValueError as exc:
        return [Violation(field, value, str(exc))]
    return []


def validate_core_count(field: str, value: Any, core_type: Any) -> List[Violation]:
    """Core counts are even and bounded per core type (pCore 16-256, vCore 8-128)."""

    if isinstance(value, bool) or not isinstance(value, int):
        return [Violation(field, value, "must be an integer")]
    try:
        kind = parse_enum(CoreType, core_type)
    except ValueError:
        # Reported by the core type check.
        return []
    low, high = CORE_COUNT_BOUNDS[kind]
    violations: List[Violation] = []
    if value % 2:
        violations.append(Violation(field, value, "must be an even number"))
    if not low <= value <= high:
        violations.append(Violation(field, value, f"must be between {low} and {high} for {kind.value}"))
    return violations


def validate_run(
    *,
    subscription_id: Any,
    tenant_id: Any,
    client_id: Any,
    client_secret: Any,
    resource_group: Any,
    license_name: Any,
    location: Any,
    state: Any,
    edition: Any,
    core_type: Any,
    core_count: Any,
) -> List[Violation]:
    """Validate the parameters that govern the whole batch."""

    violations: List[Violation] = []
    violations += validate_guid("subscription_id", subscription_id)
    violations += validate_guid("tenant_id", tenant_id)
    violations += validate_guid("client_id", client_id)
    violations += validate_not_empty("client_secret", client_secret)
    violations += validate_resource_name("resource_group", resource_group)
    violations += validate_resource_name("license_name", license_name)
    violations += validate_not_empty("location", location)
    violations += validate_choice("state", state, LicenseState)
    violations += validate_choice("edition", edition, LicenseEdition)
    violations += validate_choice("core_type", core_type, CoreType)
    violations += validate_core_count("core_count", core_count, core_type)
    return violations


def validate_spec(spec: LicenseSpec, prefix: str = "") -> List[Violation]:
    violations: List[Violation] = []
    violations += validate_resource_name(f"{prefix}license_name", spec.license_name)
    violations += validate_core_count(f"{prefix}core_count", spec.core_count, spec.core_type)
    return violations


def validate_rows(
    rows: Sequence[InputRow],
    base_spec: LicenseSpec,
    name_template: Optional[str] = None,
) -> List[Violation]:
    """Validate each row as it will be sent, i.e. merged onto the base spec."""

    violations: List[Violation] = []
    if not rows:
        violations.append(Violation("rows", 0, "input file contains no rows"))
        return violations

    for row in rows:
        prefix = f"line {row.line_number}: "
        violations += validate_not_empty(f"{prefix}servername", row.server_name)
        try:
            name = render_license_name(name_template, base_spec, row)
        except (KeyError, IndexError) as exc:
            violations.append(Violation(f"{prefix}license_name", name_template, f"unknown placeholder {exc}"))
            continue
        merged = base_spec.with_overrides(
            license_name=name,
            edition=row.edition,
            core_type=row.core_type,
            core_count=row.core_count,
        )
        violations += validate_spec(merged, prefix)

    counts = Counter(row.server_name.strip().lower() for row in rows if row.server_name)
    for name, count in sorted(counts.items()):
        if count > 1:
            violations.append(Violation("servername", name, f"appears {count} times"))
    return violations
