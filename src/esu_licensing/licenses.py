"""Azure Resource Manager client for Arc ESU license resources."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .http import UnexpectedResponseError, body_preview, parse_json
from .models import LicenseSpec

logger = logging.getLogger(__name__)

DEFAULT_MANAGEMENT_URL = "https://management.azure.com"
API_VERSION = "2023-06-20-preview"
# ESU licenses only exist for this product family.
LICENSE_TARGET = "Windows Server 2012"
DEFAULT_TAGS = {"createdBy": "esu-licensing", "esuUsage": "WS2012"}


class UpsertError(RuntimeError):
    """Raised when the management API rejects or fails a license request."""

    def __init__(self, status_code: Optional[int], body: str, license_name: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.license_name = license_name
        super().__init__(str(self))

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    def __str__(self) -> str:
        target = f" '{self.license_name}'" if self.license_name else ""
        if self.status_code is None:
            return f"License request{target} failed: {self.body}"
        return f"License request{target} failed (status {self.status_code}): {self.body}"


class LicenseUpsertClient:
    """Creates or updates `Microsoft.HybridCompute/licenses` resources.

    A PUT against the same resource group and license name is idempotent:
    it creates the license when absent and replaces it otherwise. State and
    processor count may change between calls; edition and core type are fixed
    by the service once the license exists and a change surfaces as an
    UpsertError.
    """

    def __init__(
        self,
        management_url: str = DEFAULT_MANAGEMENT_URL,
        timeout: float = 60,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        self._mgmt_url = management_url.rstrip("/")
        self._timeout = timeout
        self._tags = dict(DEFAULT_TAGS if tags is None else tags)

    def license_url(self, spec: LicenseSpec) -> str:
        return f"{self._mgmt_url}{spec.resource_id}?api-version={API_VERSION}"

    def build_body(self, spec: LicenseSpec) -> Dict[str, Any]:
        return {
            "location": spec.location,
            "properties": {
                "licenseDetails": {
                    "state": spec.state.value,
                    "target": LICENSE_TARGET,
                    "edition": spec.edition.value,
                    "type": spec.core_type.value,
                    "processors": spec.core_count,
                }
            },
            "tags": dict(self._tags),
        }

    def upsert(self, token: str, spec: LicenseSpec) -> Dict[str, Any]:
        logger.info(
            "Upserting license '%s' (%s %s x%d, %s)",
            spec.license_name,
            spec.edition.value,
            spec.core_type.value,
            spec.core_count,
            spec.state.value,
        )
        response = self._request("PUT", token, spec, json=self.build_body(spec))
        if response.status_code not in {200, 201}:
            logger.error(
                "License upsert for '%s' failed with status %s", spec.license_name, response.status_code
            )
            raise UpsertError(response.status_code, body_preview(response), spec.license_name)
        try:
            return parse_json(response)
        except UnexpectedResponseError as exc:
            raise UpsertError(response.status_code, str(exc), spec.license_name) from exc

    def get(self, token: str, spec: LicenseSpec) -> Optional[Dict[str, Any]]:
        response = self._request("GET", token, spec)
        if response.status_code == 404:
            return None
        if response.status_code >= 300:
            raise UpsertError(response.status_code, body_preview(response), spec.license_name)
        try:
            return parse_json(response)
        except UnexpectedResponseError as exc:
            raise UpsertError(response.status_code, str(exc), spec.license_name) from exc

    def _request(self, method: str, token: str, spec: LicenseSpec, **kwargs: Any) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            return requests.request(
                method, self.license_url(spec), headers=headers, timeout=self._timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise UpsertError(None, str(exc), spec.license_name) from exc
