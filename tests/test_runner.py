from __future__ import annotations

import threading
import time
from typing import List

import pytest

from esu_licensing.assignment import NoopAssigner
from esu_licensing.auth import ClientCredentialProvider
from esu_licensing.licenses import LicenseUpsertClient
from esu_licensing.models import CoreType, Credentials, InputRow, LicenseEdition, LicenseSpec, Stage, TaskResult
from esu_licensing.runner import BatchRunner
from esu_licensing.tasks import RowTask

from conftest import CLIENT_ID, TENANT_ID, FakeArmApi


class RecordingTask:
    """Row task double that tracks how many rows run at once."""

    def __init__(self, delay: float = 0.0, fail_servers: frozenset[str] = frozenset(), stage: Stage = Stage.UPSERT) -> None:
        self.delay = delay
        self.fail_servers = fail_servers
        self.stage = stage
        self.active = 0
        self.peak = 0
        self.seen: List[str] = []
        self.stops: List[Stage] = []
        self._lock = threading.Lock()

    def run(self, row: InputRow) -> TaskResult:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.seen.append(row.server_name)
        try:
            time.sleep(self.delay)
            if row.server_name in self.fail_servers:
                return TaskResult(row=row, license_name="lic", stage=self.stage, error="forced")
            return TaskResult(row=row, license_name="lic", stage=Stage.COMPLETED)
        finally:
            with self._lock:
                self.active -= 1

    def stop(self, stage: Stage, reason: str) -> None:
        self.stops.append(stage)

    def license_name_for(self, row: InputRow) -> str:
        return f"lic-{row.server_name}"


def _rows(count: int) -> List[InputRow]:
    return [InputRow(index + 2, f"srv{index}") for index in range(count)]


def _real_task(base_spec: LicenseSpec) -> RowTask:
    tokens = ClientCredentialProvider(Credentials(TENANT_ID, CLIENT_ID, "secret"))
    return RowTask(tokens, LicenseUpsertClient(), NoopAssigner(), base_spec, "{license_name}-{server_name}")


def test_hundred_rows_are_each_reported_once_under_bounded_pool() -> None:
    task = RecordingTask(delay=0.005)
    rows = _rows(100)

    report = BatchRunner(task, max_workers=4).run(rows)

    assert len(report.results) == 100
    assert [result.row for result in report.results] == rows
    assert sorted(task.seen) == sorted(row.server_name for row in rows)
    assert task.peak <= 4
    assert report.exit_code == 0


def test_failing_row_does_not_affect_others() -> None:
    task = RecordingTask(fail_servers=frozenset({"srv3"}))
    rows = _rows(10)

    report = BatchRunner(task, max_workers=3).run(rows)

    assert len(report.succeeded) == 9
    assert [result.row.server_name for result in report.failed] == ["srv3"]
    assert report.exit_code == 1


def test_task_that_raises_is_recorded_as_internal_failure() -> None:
    class ExplodingTask(RecordingTask):
        def run(self, row: InputRow) -> TaskResult:
            if row.server_name == "srv1":
                raise RuntimeError("boom")
            return TaskResult(row=row, license_name="lic", stage=Stage.COMPLETED)

    report = BatchRunner(ExplodingTask(), max_workers=2).run(_rows(3))

    assert [result.stage for result in report.results] == [Stage.COMPLETED, Stage.INTERNAL, Stage.COMPLETED]
    assert "boom" in report.results[1].error
    assert report.results[1].license_name == "lic-srv1"


def test_scenario_both_rows_succeed(fake_arm: FakeArmApi, base_spec: LicenseSpec) -> None:
    rows = [
        InputRow(2, "srv1", LicenseEdition.STANDARD, CoreType.VCORE, 8),
        InputRow(3, "srv2", LicenseEdition.DATACENTER, CoreType.PCORE, 16),
    ]

    report = BatchRunner(_real_task(base_spec), max_workers=2).run(rows)

    assert [result.stage for result in report.results] == [Stage.COMPLETED, Stage.COMPLETED]
    assert report.exit_code == 0
    assert len(fake_arm.licenses) == 2
    assert fake_arm.token_requests == 1


def test_scenario_conflict_for_one_row(fake_arm: FakeArmApi, base_spec: LicenseSpec) -> None:
    fake_arm.fail["ws2012-esu-srv2"] = 409
    rows = [
        InputRow(2, "srv1", LicenseEdition.STANDARD, CoreType.VCORE, 8),
        InputRow(3, "srv2", LicenseEdition.DATACENTER, CoreType.PCORE, 16),
    ]

    report = BatchRunner(_real_task(base_spec), max_workers=2).run(rows)

    first, second = report.results
    assert first.succeeded
    assert second.stage is Stage.UPSERT
    assert "409" in second.error
    assert report.exit_code == 1


def test_systemic_auth_failure_short_circuits(fake_arm: FakeArmApi, base_spec: LicenseSpec) -> None:
    fake_arm.token_status = 401
    fake_arm.token_delay = 0.02
    rows = _rows(50)

    report = BatchRunner(_real_task(base_spec), max_workers=1, auth_failure_threshold=3).run(rows)

    stages = [result.stage for result in report.results]
    assert len(stages) == 50
    assert stages.count(Stage.AUTH) < 50
    assert stages.count(Stage.AUTH) + stages.count(Stage.SKIPPED) == 50
    assert report.aborted_reason is not None
    assert fake_arm.puts == 0


def test_auth_short_circuit_can_be_disabled() -> None:
    task = RecordingTask(fail_servers=frozenset(f"srv{i}" for i in range(5)), stage=Stage.AUTH)

    report = BatchRunner(task, max_workers=1, auth_failure_threshold=0).run(_rows(5))

    assert [result.stage for result in report.results] == [Stage.AUTH] * 5
    assert report.aborted_reason is None


def test_batch_deadline_marks_unfinished_rows() -> None:
    task = RecordingTask(delay=0.3)

    report = BatchRunner(task, max_workers=1, batch_timeout=0.1).run(_rows(3))

    assert len(report.results) == 3
    assert all(result.stage is Stage.TIMEOUT for result in report.results)
    assert [result.license_name for result in report.results] == ["lic-srv0", "lic-srv1", "lic-srv2"]
    assert task.stops == [Stage.TIMEOUT]
    assert "deadline" in report.aborted_reason
    assert report.exit_code == 1


def test_empty_batch() -> None:
    report = BatchRunner(RecordingTask()).run([])

    assert report.results == []
    assert report.exit_code == 0
    assert report.finished_at is not None


def test_max_workers_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BatchRunner(RecordingTask(), max_workers=0)


def test_report_serializes_rows() -> None:
    report = BatchRunner(RecordingTask(fail_servers=frozenset({"srv0"}))).run(_rows(2))

    payload = report.to_dict()

    assert payload["total"] == 2
    assert payload["failed"] == 1
    assert payload["rows"][0]["status"] == "failed"
    assert payload["rows"][0]["error"] == "forced"
    assert payload["rows"][1]["stage"] == "completed"


def test_row_abandoned_at_deadline_does_not_upsert_afterwards(fake_arm: FakeArmApi, base_spec: LicenseSpec) -> None:
    fake_arm.token_delay = 0.3

    report = BatchRunner(_real_task(base_spec), max_workers=1, batch_timeout=0.1).run([InputRow(2, "srv1")])
    time.sleep(0.5)

    assert report.results[0].stage is Stage.TIMEOUT
    assert report.results[0].license_name == "ws2012-esu-srv1"
    assert fake_arm.token_requests == 1
    assert fake_arm.puts == 0
    assert fake_arm.licenses == {}


def test_auth_short_circuit_stops_the_task() -> None:
    task = RecordingTask(delay=0.02, fail_servers=frozenset(f"srv{i}" for i in range(10)), stage=Stage.AUTH)

    report = BatchRunner(task, max_workers=1, auth_failure_threshold=2).run(_rows(10))

    assert task.stops == [Stage.SKIPPED]
    skipped = [result for result in report.results if result.stage is Stage.SKIPPED]
    assert skipped
    assert all(result.license_name.startswith("lic-srv") for result in skipped)
