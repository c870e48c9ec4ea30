"""Configuration loading for ESU license provisioning runs."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .auth import DEFAULT_AUTHORITY
from .licenses import DEFAULT_MANAGEMENT_URL, DEFAULT_TAGS
from .models import (
    DEFAULT_NAME_TEMPLATE,
    CoreType,
    Credentials,
    LicenseEdition,
    LicenseSpec,
    LicenseState,
    parse_enum,
)
from .validation import Violation, validate_run

CLIENT_SECRET_ENV = "ESU_LICENSING_CLIENT_SECRET"


def _is_placeholder(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    stripped = value.strip()
    return not stripped or (stripped.startswith("<") and stripped.endswith(">"))


class AzureConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    tenant_id: str
    client_id: str
    client_secret: str = Field(
        default="",
        repr=False,
        description=f"Application secret; falls back to the {CLIENT_SECRET_ENV} environment variable",
    )
    authority_url: str = Field(DEFAULT_AUTHORITY, description="Entra ID authority host")
    management_url: str = Field(DEFAULT_MANAGEMENT_URL, description="Azure Resource Manager endpoint")

    @model_validator(mode="before")
    @classmethod
    def _resolve_secret(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        for key in ("subscription_id", "tenant_id", "client_id"):
            if isinstance(values.get(key), str):
                values[key] = values[key].strip()
        if _is_placeholder(values.get("client_secret")) or values.get("client_secret") is None:
            values["client_secret"] = os.getenv(CLIENT_SECRET_ENV, "")
        return values


class LicenseConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource_group: str
    license_name: str
    location: str
    state: str = Field(LicenseState.ACTIVATED.value, description="Activated or Deactivated")
    edition: str = Field(description="Standard or Datacenter")
    core_type: str = Field(description="pCore or vCore")
    core_count: int = Field(description="Even processor count; 16-256 for pCore, 8-128 for vCore")
    name_template: str = Field(
        DEFAULT_NAME_TEMPLATE,
        description="Per-row license name, formatted with {license_name} and {server_name}",
    )
    tags: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_TAGS))


class AssignmentConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: Optional[List[str]] = Field(
        default=None,
        description="Argument list of the assignment tool; each item is a str.format template",
    )
    timeout: float = Field(300, gt=0, description="Seconds before an assignment call is abandoned")
    run_after_failed_upsert: bool = Field(
        False,
        description="Still run the assignment when the license upsert failed",
    )

    @field_validator("command")
    @classmethod
    def _reject_empty_command(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is not None and not value:
            return None
        return value


class RunnerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_workers: int = Field(8, ge=1, description="Maximum rows processed at the same time")
    request_timeout: float = Field(60, gt=0, description="Timeout for each management API call")
    token_timeout: float = Field(30, gt=0, description="Timeout for each token request")
    batch_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Overall deadline for the batch; unfinished rows are reported as timed out",
    )
    auth_failure_threshold: int = Field(
        5,
        ge=0,
        description="Abort queued rows when this many leading rows all fail to authenticate (0 disables)",
    )
    cache_tokens: bool = Field(True, description="Share one bearer token across rows until it nears expiry")


class LicensingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    azure: AzureConfig
    license: LicenseConfig
    assignment: AssignmentConfig = Field(default_factory=AssignmentConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LicensingConfig":
        return cls.model_validate(raw)

    @classmethod
    def from_yaml(cls, path: Path) -> "LicensingConfig":
        data = yaml.safe_load(path.read_text()) or {}
        return cls.from_dict(data)

    def credentials(self) -> Credentials:
        return Credentials(
            tenant_id=self.azure.tenant_id,
            client_id=self.azure.client_id,
            client_secret=self.azure.client_secret,
        )

    def violations(self) -> List[Violation]:
        """Field-level problems that must block the run before any request."""

        return validate_run(
            subscription_id=self.azure.subscription_id,
            tenant_id=self.azure.tenant_id,
            client_id=self.azure.client_id,
            client_secret=self.azure.client_secret,
            resource_group=self.license.resource_group,
            license_name=self.license.license_name,
            location=self.license.location,
            state=self.license.state,
            edition=self.license.edition,
            core_type=self.license.core_type,
            core_count=self.license.core_count,
        )

    def base_spec(self) -> LicenseSpec:
        """Build the run-wide LicenseSpec. Call only once `violations()` is empty."""

        return LicenseSpec(
            subscription_id=self.azure.subscription_id,
            resource_group=self.license.resource_group,
            license_name=self.license.license_name,
            location=self.license.location,
            state=parse_enum(LicenseState, self.license.state),  # type: ignore[arg-type]
            edition=parse_enum(LicenseEdition, self.license.edition),  # type: ignore[arg-type]
            core_type=parse_enum(CoreType, self.license.core_type),  # type: ignore[arg-type]
            core_count=self.license.core_count,
        )


def load_config(path: str | Path) -> LicensingConfig:
    """Load a LicensingConfig from a YAML file."""
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    return LicensingConfig.from_yaml(config_path)
