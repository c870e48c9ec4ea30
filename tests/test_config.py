from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from esu_licensing.config import CLIENT_SECRET_ENV, LicensingConfig, RunnerConfig, load_config
from esu_licensing.models import CoreType, LicenseEdition, LicenseState

from conftest import CLIENT_ID, SUBSCRIPTION_ID, TENANT_ID


def _payload(**license_overrides) -> dict:
    license_section = {
        "resource_group": "rg-arc-esu",
        "license_name": "ws2012-esu",
        "location": "westeurope",
        "state": "Activated",
        "edition": "Datacenter",
        "core_type": "pCore",
        "core_count": 16,
    }
    license_section.update(license_overrides)
    return {
        "azure": {
            "subscription_id": SUBSCRIPTION_ID,
            "tenant_id": TENANT_ID,
            "client_id": CLIENT_ID,
            "client_secret": "secret",
        },
        "license": license_section,
    }


def test_defaults_are_applied() -> None:
    config = LicensingConfig.from_dict(_payload())

    assert config.runner.max_workers == 8
    assert config.runner.batch_timeout is None
    assert config.runner.cache_tokens is True
    assert config.assignment.command is None
    assert config.license.name_template == "{license_name}"
    assert config.license.tags == {"createdBy": "esu-licensing", "esuUsage": "WS2012"}
    assert config.azure.management_url == "https://management.azure.com"


def test_base_spec_and_credentials() -> None:
    config = LicensingConfig.from_dict(_payload(edition="datacenter", core_type="PCORE"))

    spec = config.base_spec()
    credentials = config.credentials()

    assert spec.edition is LicenseEdition.DATACENTER
    assert spec.core_type is CoreType.PCORE
    assert spec.state is LicenseState.ACTIVATED
    assert spec.subscription_id == SUBSCRIPTION_ID
    assert credentials.tenant_id == TENANT_ID
    assert credentials.client_id == CLIENT_ID
    assert "secret" not in repr(credentials)


def test_config_is_immutable() -> None:
    config = LicensingConfig.from_dict(_payload())

    with pytest.raises(PydanticValidationError):
        config.runner.max_workers = 100  # type: ignore[misc]


def test_violations_cover_run_parameters() -> None:
    config = LicensingConfig.from_dict(_payload(core_type="vCore", core_count=130))

    assert [violation.field for violation in config.violations()] == ["core_count"]


@pytest.mark.parametrize("secret", [None, "", "<client secret>"])
def test_client_secret_falls_back_to_environment(monkeypatch: pytest.MonkeyPatch, secret) -> None:
    monkeypatch.setenv(CLIENT_SECRET_ENV, "from-env")
    payload = _payload()
    payload["azure"]["client_secret"] = secret

    config = LicensingConfig.from_dict(payload)

    assert config.azure.client_secret == "from-env"


def test_missing_secret_is_a_violation(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(CLIENT_SECRET_ENV, raising=False)
    payload = _payload()
    del payload["azure"]["client_secret"]

    config = LicensingConfig.from_dict(payload)

    assert [violation.field for violation in config.violations()] == ["client_secret"]


def test_runner_limits_are_enforced() -> None:
    with pytest.raises(PydanticValidationError):
        RunnerConfig(max_workers=0)
    with pytest.raises(PydanticValidationError):
        RunnerConfig(batch_timeout=-1)


def test_empty_assignment_command_disables_assignment() -> None:
    payload = _payload()
    payload["assignment"] = {"command": []}

    assert LicensingConfig.from_dict(payload).assignment.command is None


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_load_config_from_yaml(tmp_path: Path) -> None:
    payload = _payload()
    payload["runner"] = {"max_workers": 3, "batch_timeout": 600}
    payload["assignment"] = {"command": ["assign", "{server_name}"], "timeout": 30}
    config_path = tmp_path / "licensing.yaml"
    config_path.write_text(yaml.safe_dump(payload))

    config = load_config(config_path)

    assert config.runner.max_workers == 3
    assert config.runner.batch_timeout == 600
    assert config.assignment.command == ["assign", "{server_name}"]
    assert config.license.core_count == 16
