from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import pytest
from requests import Request, Response

from esu_licensing.models import CoreType, LicenseEdition, LicenseSpec, LicenseState

SUBSCRIPTION_ID = "11111111-2222-3333-4444-555555555555"
TENANT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
CLIENT_ID = "99999999-8888-7777-6666-555555555555"


def make_response(status: int, payload: Any = None, method: str = "GET", url: str = "https://example.com") -> Response:
    response = Response()
    response.status_code = status
    if payload is None:
        response._content = b""
    elif isinstance(payload, (bytes, str)):
        response._content = payload if isinstance(payload, bytes) else payload.encode("utf-8")
    else:
        response._content = json.dumps(payload).encode("utf-8")
    response.headers["Content-Type"] = "application/json"
    response.encoding = "utf-8"
    response.request = Request(method, url).prepare()
    return response


class FakeArmApi:
    """In-memory stand-in for the token endpoint and the licenses API.

    Mirrors the server-side rule that edition and core type cannot change
    once a license exists. `fail` maps a license name to a forced status.
    """

    def __init__(self) -> None:
        self.licenses: Dict[str, Dict[str, Any]] = {}
        self.fail: Dict[str, int] = {}
        self.token_status = 200
        self.token_delay = 0.0
        self.token_requests = 0
        self.puts = 0
        self._lock = threading.Lock()

    def post(self, url: str, data: Optional[Dict[str, str]] = None, timeout: float = 0, **kwargs: Any) -> Response:
        time.sleep(self.token_delay)
        with self._lock:
            self.token_requests += 1
        if self.token_status != 200:
            return make_response(self.token_status, {"error": "invalid_client"}, "POST", url)
        return make_response(200, {"access_token": "fake-token", "expires_in": "3600"}, "POST", url)

    def request(self, method: str, url: str, headers: Dict[str, str], timeout: float = 0, **kwargs: Any) -> Response:
        assert headers["Authorization"] == "Bearer fake-token"
        path = urlparse(url).path
        name = path.rsplit("/", 1)[-1]
        if name in self.fail:
            return make_response(self.fail[name], {"error": {"code": "Forced"}}, method, url)
        with self._lock:
            if method == "GET":
                if path not in self.licenses:
                    return make_response(404, {"error": {"code": "ResourceNotFound"}}, method, url)
                return make_response(200, self.licenses[path], method, url)
            assert method == "PUT"
            self.puts += 1
            details = kwargs["json"]["properties"]["licenseDetails"]
            existing = self.licenses.get(path)
            if existing is not None:
                current = existing["properties"]["licenseDetails"]
                if current["edition"] != details["edition"] or current["type"] != details["type"]:
                    return make_response(409, {"error": {"code": "ImmutablePropertyChange"}}, method, url)
            resource = {
                "id": path,
                "name": name,
                "location": kwargs["json"]["location"],
                "properties": {"licenseDetails": dict(details), "provisioningState": "Succeeded"},
                "tags": kwargs["json"]["tags"],
            }
            self.licenses[path] = resource
            return make_response(200 if existing else 201, resource, method, url)


@pytest.fixture()
def fake_arm(monkeypatch: pytest.MonkeyPatch) -> FakeArmApi:
    api = FakeArmApi()
    monkeypatch.setattr("esu_licensing.auth.requests.post", api.post)
    monkeypatch.setattr("esu_licensing.licenses.requests.request", api.request)
    return api


@pytest.fixture()
def base_spec() -> LicenseSpec:
    return LicenseSpec(
        subscription_id=SUBSCRIPTION_ID,
        resource_group="rg-arc-esu",
        license_name="ws2012-esu",
        location="westeurope",
        state=LicenseState.ACTIVATED,
        edition=LicenseEdition.STANDARD,
        core_type=CoreType.VCORE,
        core_count=8,
    )
