# tests/test_evidence_collector.py
import json

import pytest

from evidence_runner.evidence_collector import EvidenceCollector, canonical_json, compute_integrity, verify_evidence
from evidence_runner.specification_loader import ActionSpec
from evidence_runner.types import (
    ActionResult,
    CriterionEvaluation,
    ExecutionResult,
    Phase,
    RunReport,
    TaskResult,
    TaskStatus,
    ValidationResult,
)


def _action(task_id="T-1", action_id="STEP.1", success=True, phase=Phase.STEP):
    return ActionResult(
        action=ActionSpec(action_id=action_id, type="TERMINAL_COMMAND", parameters={"command": "echo hi"}),
        phase=phase,
        task_id=task_id,
        result=ExecutionResult(success=success, data={"exitCode": 0, "stdout": "hi\n"}, duration_ms=3.0),
        started_at="2024-01-01T00:00:00Z",
        completed_at="2024-01-01T00:00:01Z",
    )


@pytest.fixture
def collector(tmp_path):
    return EvidenceCollector(tmp_path / "evidence", run_id="run-1")


def test_canonical_json_is_order_independent():
    assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1}) == '{"a":[1,2],"b":1}'


def test_record_action_writes_sequenced_files(collector):
    collector.prepare_task("T-1")
    first = collector.record_action(_action(action_id="PREREQ.1", phase=Phase.PREREQ))
    second_result = _action(action_id="STEP.1")
    second = collector.record_action(second_result)

    assert first.name == "STEP-1.json"
    assert second.name == "STEP-2.json"
    assert second_result.evidence_file == str(second)

    record = json.loads(second.read_text(encoding="utf-8"))
    assert record["actionId"] == "STEP.1"
    assert record["taskId"] == "T-1"
    assert record["sequence"] == 2
    assert record["action"]["parameters"] == {"command": "echo hi"}
    assert record["result"]["data"]["stdout"] == "hi\n"
    assert record["metadata"]["runId"] == "run-1"
    assert record["metadata"]["tool"] == "evidence-runner"
    assert {"pid", "platform", "toolVersion"} <= set(record["metadata"])
    assert record["integrity"].startswith("sha256:")


def test_integrity_detects_tampering(collector):
    path = collector.record_action(_action())
    assert verify_evidence(path)

    record = json.loads(path.read_text(encoding="utf-8"))
    record["result"]["success"] = False
    path.write_text(json.dumps(record), encoding="utf-8")
    assert not verify_evidence(path)


def test_compute_integrity_ignores_existing_digest():
    record = {"a": 1}
    digest = compute_integrity(record)
    assert compute_integrity({**record, "integrity": "sha256:bogus"}) == digest


def test_action_files_are_never_overwritten(collector):
    task_dir = collector.prepare_task("T-1")
    (task_dir / "STEP-1.json").write_text("{}", encoding="utf-8")
    with pytest.raises(FileExistsError):
        collector.record_action(_action())


def test_prepare_task_archives_previous_run(tmp_path):
    root = tmp_path / "evidence"
    old = EvidenceCollector(root, run_id="old")
    old.record_action(_action())

    new = EvidenceCollector(root, run_id="new")
    new.prepare_task("T-1")
    assert list((root / "T-1").iterdir()) == []
    archived = list((root / "archive").glob("*/T-1/STEP-1.json"))
    assert len(archived) == 1
    assert json.loads(archived[0].read_text(encoding="utf-8"))["metadata"]["runId"] == "old"

    assert new.record_action(_action()).name == "STEP-1.json"


def test_unsafe_task_ids_are_sanitized(collector):
    assert collector.safe_name("../../etc/passwd") == "etc_passwd"
    assert collector.task_dir("API 1/users").name == "API_1_users"


def test_task_summary_and_validations(collector):
    action = _action()
    collector.record_action(action)
    result = TaskResult(task_id="T-1", title="t", status=TaskStatus.PASSED, steps=[action])
    result.attach_technical_debt([])
    validation = ValidationResult(passed=True, evaluations=[
        CriterionEvaluation(description="ok", passed=True, condition="STEP.1.exitCode === 0", actual=True),
    ])

    validations_path = collector.write_validations("T-1", validation)
    summary_path = collector.write_task_summary(result)

    validations = json.loads(validations_path.read_text(encoding="utf-8"))
    assert validations["total"] == 1 and validations["failed"] == 0

    summary = json.loads(summary_path.read_text(encoding="utf-8"))
    assert summary["status"] == "PASSED"
    assert summary["evidenceFiles"] == [action.evidence_file]
    assert summary["technicalDebt"] == []
    assert summary["failureAnalysis"] is None
    assert verify_evidence(summary_path)
    assert not list(summary_path.parent.glob("*.tmp"))


def test_write_report_keeps_timestamped_copies(collector):
    report = RunReport(run_id="run-1", spec_path="spec.json", started_at="2024-01-01T00:00:00Z")
    report.tasks["T-1"] = TaskResult(task_id="T-1", status=TaskStatus.FAILED, failure_reason="boom")

    latest = collector.write_report(report)
    collector.write_report(report)

    data = json.loads(latest.read_text(encoding="utf-8"))
    assert data["summary"]["failed"] == 1
    assert data["tasks"]["T-1"]["failureReason"] == "boom"
    assert verify_evidence(latest)
    assert len(list(latest.parent.glob("execution-report-*.json"))) == 2


def test_findings_attach_only_to_matching_verdict():
    failed = TaskResult(task_id="T", status=TaskStatus.FAILED)
    with pytest.raises(ValueError):
        failed.attach_technical_debt([])
    failed.attach_failure_analysis([])
    assert failed.technical_debt is None

    passed = TaskResult(task_id="T", status=TaskStatus.PASSED)
    with pytest.raises(ValueError):
        passed.attach_failure_analysis([])


def test_colliding_task_ids_get_distinct_directories(collector):
    first = collector.prepare_task("T 1")
    second = collector.prepare_task("T_1")
    third = collector.prepare_task("t_1")

    assert first.name == "T_1"
    assert second.name.startswith("T_1-") and third.name.startswith("t_1-")
    assert len({first, second, third}) == 3
    assert collector.task_dir("T 1") == first

    collector.record_action(_action(task_id="T 1"))
    collector.record_action(_action(task_id="T_1"))
    assert (first / "STEP-1.json").exists()
    assert (second / "STEP-1.json").exists()
    assert not (collector.evidence_dir / "archive").exists()


def test_task_named_archive_does_not_shadow_archive_dir(collector):
    assert collector.task_dir("archive").name != "archive"
