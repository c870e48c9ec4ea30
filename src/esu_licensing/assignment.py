"""Hand-off to the external "assign license to server" tool."""
from __future__ import annotations

import logging
import os
import subprocess
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .models import InputRow, LicenseSpec

logger = logging.getLogger(__name__)

OUTPUT_LIMIT = 2000


class AssignmentError(RuntimeError):
    """Raised when the assignment tool fails for a server."""

    def __init__(self, server_name: str, message: str, output: str = "") -> None:
        self.server_name = server_name
        self.message = message
        self.output = output
        super().__init__(f"Assignment to '{server_name}' failed: {message}")


class LicenseAssigner(Protocol):
    def assign(self, row: InputRow, spec: LicenseSpec, resource: Mapping[str, Any]) -> str:
        """Link the license to the row's server and return the tool output."""
        ...


class NoopAssigner:
    """Used when no assignment command is configured."""

    def assign(self, row: InputRow, spec: LicenseSpec, resource: Mapping[str, Any]) -> str:
        logger.debug("Assignment disabled; skipping server '%s'", row.server_name)
        return "assignment disabled"


def assignment_variables(row: InputRow, spec: LicenseSpec, resource: Mapping[str, Any]) -> Dict[str, str]:
    return {
        "server_name": row.server_name,
        "edition": spec.edition.value,
        "core_type": spec.core_type.value,
        "core_count": str(spec.core_count),
        "license_name": spec.license_name,
        "license_id": str(resource.get("id") or spec.resource_id),
        "resource_group": spec.resource_group,
        "subscription_id": spec.subscription_id,
        "location": spec.location,
    }


def _trim(text: str) -> str:
    text = (text or "").strip()
    return text[:OUTPUT_LIMIT]


class CommandAssigner:
    """Runs a configured command once per server.

    Each argument is a `str.format` template over the names returned by
    `assignment_variables`, e.g. ``["pwsh", "./Assign-EsuLicense.ps1",
    "-ServerName", "{server_name}", "-LicenseResourceId", "{license_id}"]``.
    The command is executed without a shell.
    """

    def __init__(
        self,
        command: Sequence[str],
        timeout: float = 300,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        if not command:
            raise ValueError("assignment command must not be empty")
        self._command = list(command)
        self._timeout = timeout
        self._env = dict(env) if env else None

    def render(self, row: InputRow, spec: LicenseSpec, resource: Mapping[str, Any]) -> List[str]:
        variables = assignment_variables(row, spec, resource)
        try:
            return [part.format(**variables) for part in self._command]
        except (KeyError, IndexError) as exc:
            raise AssignmentError(row.server_name, f"unknown placeholder in assignment command: {exc}") from exc

    def assign(self, row: InputRow, spec: LicenseSpec, resource: Mapping[str, Any]) -> str:
        argv = self.render(row, spec, resource)
        env = {**os.environ, **self._env} if self._env else None
        logger.info("Assigning license '%s' to server '%s'", spec.license_name, row.server_name)
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise AssignmentError(row.server_name, f"timed out after {self._timeout}s") from exc
        except OSError as exc:
            raise AssignmentError(row.server_name, f"could not start {argv[0]!r}: {exc}") from exc

        output = _trim(result.stdout) or _trim(result.stderr)
        if result.returncode != 0:
            raise AssignmentError(
                row.server_name,
                f"exit code {result.returncode}: {_trim(result.stderr) or output}",
                output=output,
            )
        return output
