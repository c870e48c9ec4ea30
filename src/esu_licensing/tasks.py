"""Per-row unit of work: token, license upsert, then server assignment."""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional, Protocol

from .assignment import AssignmentError, LicenseAssigner
from .auth import AuthError
from .licenses import UpsertError
from .models import InputRow, LicenseSpec, Stage, StepOutcome, TaskResult, render_license_name

logger = logging.getLogger(__name__)


class TokenSource(Protocol):
    def get_token(self) -> str:
        ...


class LicenseClient(Protocol):
    def upsert(self, token: str, spec: LicenseSpec) -> Dict[str, Any]:
        ...


class RowTask:
    """Processes one input row without ever raising.

    Every collaborator is shared between threads; the task itself keeps no
    state between rows, so a single instance serves the whole batch. Once
    `stop` is called, rows still in flight end before their next side
    effect and report the stop stage instead.
    """

    def __init__(
        self,
        token_provider: TokenSource,
        client: LicenseClient,
        assigner: LicenseAssigner,
        base_spec: LicenseSpec,
        license_name_template: Optional[str] = None,
        assign_after_failed_upsert: bool = False,
    ) -> None:
        self._tokens = token_provider
        self._client = client
        self._assigner = assigner
        self._base_spec = base_spec
        self._name_template = license_name_template
        self._assign_after_failed_upsert = assign_after_failed_upsert
        self._stopped = threading.Event()
        self._stop_stage = Stage.SKIPPED
        self._stop_reason = ""

    def spec_for(self, row: InputRow) -> LicenseSpec:
        return self._base_spec.with_overrides(
            license_name=self.license_name_for(row),
            edition=row.edition,
            core_type=row.core_type,
            core_count=row.core_count,
        )

    def license_name_for(self, row: InputRow) -> str:
        return render_license_name(self._name_template, self._base_spec, row)

    def stop(self, stage: Stage, reason: str) -> None:
        if self._stopped.is_set():
            return
        self._stop_stage = stage
        self._stop_reason = reason
        self._stopped.set()

    def _halted(self, row: InputRow, result: TaskResult, before: str) -> bool:
        if not self._stopped.is_set():
            return False
        logger.warning("Not starting %s for '%s': %s", before, row.server_name, self._stop_reason)
        result.stage = self._stop_stage
        result.error = self._stop_reason
        return True

    def run(self, row: InputRow) -> TaskResult:
        started = time.monotonic()
        result = TaskResult(row=row, license_name=self._base_spec.license_name, stage=Stage.INTERNAL)
        try:
            self._run(row, result)
        except Exception as exc:  # noqa: BLE001 - a row must never take the batch down
            logger.exception("Unexpected failure while processing server '%s'", row.server_name)
            result.stage = Stage.INTERNAL
            result.error = f"{type(exc).__name__}: {exc}"
        result.duration = time.monotonic() - started
        return result

    def _run(self, row: InputRow, result: TaskResult) -> None:
        spec = self.spec_for(row)
        result.license_name = spec.license_name
        if self._halted(row, result, "token request"):
            return

        try:
            token = self._tokens.get_token()
        except AuthError as exc:
            logger.error("Authentication failed for server '%s': %s", row.server_name, exc)
            result.stage = Stage.AUTH
            result.error = str(exc)
            return

        if self._halted(row, result, "upsert"):
            return
        try:
            result.resource = self._client.upsert(token, spec)
            result.upsert = StepOutcome(True, "license upserted")
        except UpsertError as exc:
            result.upsert = StepOutcome(False, str(exc), exc.body)
            result.stage = Stage.UPSERT
            result.error = str(exc)
            if not self._assign_after_failed_upsert:
                logger.warning("Skipping assignment for '%s' after failed upsert", row.server_name)
                return

        if self._halted(row, result, "assignment"):
            return
        try:
            output = self._assigner.assign(row, spec, result.resource or {})
            result.assignment = StepOutcome(True, output or "assigned")
        except AssignmentError as exc:
            logger.error("%s", exc)
            result.assignment = StepOutcome(False, exc.message, exc.output)
            if result.upsert is not None and result.upsert.succeeded:
                result.stage = Stage.ASSIGNMENT
                result.error = str(exc)
            return

        if result.upsert is not None and result.upsert.succeeded:
            result.stage = Stage.COMPLETED
