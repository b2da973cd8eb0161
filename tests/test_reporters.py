# tests/test_reporters.py
import asyncio
from xml.etree import ElementTree as ET

from evidence_runner.reporters.html_reporter import HtmlReporter
from evidence_runner.reporters.junit_reporter import JUnitReporter
from evidence_runner.specification_loader import ActionSpec
from evidence_runner.types import (
    ActionResult,
    CriterionEvaluation,
    ExecutionResult,
    Finding,
    Phase,
    RunReport,
    Severity,
    TaskResult,
    TaskStatus,
    ValidationResult,
)


def _report(evidence_dir):
    ok_step = ActionResult(
        action=ActionSpec(action_id="STEP.1", type="HTTP_REQUEST", description="list users"),
        phase=Phase.STEP,
        task_id="API-1",
        result=ExecutionResult(success=True, data={"status": 200}, duration_ms=42.0),
        started_at="2024-01-01T00:00:00Z",
        completed_at="2024-01-01T00:00:01Z",
        evidence_file=str(evidence_dir / "API-1" / "STEP-1.json"),
    )
    bad_step = ActionResult(
        action=ActionSpec(action_id="STEP.1", type="TERMINAL_COMMAND"),
        phase=Phase.STEP,
        task_id="BUILD-1",
        result=ExecutionResult(success=False, error="Command exited with code 2 <stderr>", duration_ms=5.0),
        started_at="2024-01-01T00:00:00Z",
        completed_at="2024-01-01T00:00:01Z",
        error_type="ExecutorExecutionError",
    )

    passed = TaskResult(task_id="API-1", title="Users API", status=TaskStatus.PASSED, steps=[ok_step],
                        validation=ValidationResult(passed=True, evaluations=[
                            CriterionEvaluation(description="status ok", passed=True, condition="STEP.1.status === 200"),
                        ]))
    passed.attach_technical_debt([
        Finding(category="PERFORMANCE_DEGRADATION", severity=Severity.LOW, description="slow", suggested_fix="cache"),
    ])
    failed = TaskResult(task_id="BUILD-1", title="Build", status=TaskStatus.FAILED, steps=[bad_step],
                        failure_reason="Step STEP.1 failed: Command exited with code 2",
                        validation=ValidationResult(passed=False))
    failed.attach_failure_analysis([
        Finding(category="UNKNOWN_ERROR", severity=Severity.MEDIUM, description="exit 2", suggested_fix="look"),
    ])
    skipped = TaskResult(task_id="DEPLOY-1", title="Deploy", status=TaskStatus.SKIPPED)

    report = RunReport(run_id="run-42", spec_path="spec.json", started_at="2024-01-01T00:00:00Z", duration_ms=1234.0)
    report.tasks = {"API-1": passed, "BUILD-1": failed, "DEPLOY-1": skipped}
    return report


def test_html_report(tmp_path):
    report = _report(tmp_path)
    path = asyncio.run(HtmlReporter().generate(report, str(tmp_path)))

    html = (tmp_path / "execution-report.html").read_text(encoding="utf-8")
    assert path == str(tmp_path / "execution-report.html")
    assert "run-42" in html
    assert "Users API" in html
    assert "PERFORMANCE_DEGRADATION" in html
    assert "UNKNOWN_ERROR" in html
    assert 'href="API-1/STEP-1.json"' in html
    assert "&lt;stderr&gt;" in html
    assert "<stderr>" not in html


def test_junit_report(tmp_path):
    report = _report(tmp_path)
    asyncio.run(JUnitReporter().generate(report, str(tmp_path)))

    root = ET.parse(tmp_path / "execution-report.junit.xml").getroot()
    assert root.tag == "testsuites"
    assert root.get("tests") == "3"
    assert root.get("failures") == "1"
    assert root.get("skipped") == "1"

    suites = {s.get("name"): s for s in root.findall("testsuite")}
    assert set(suites) == {"API-1", "BUILD-1", "DEPLOY-1"}

    api_cases = suites["API-1"].findall("testcase")
    assert [c.get("name") for c in api_cases] == ["STEP.1", "validation"]
    assert api_cases[0].find("failure") is None

    build_failures = suites["BUILD-1"].findall("testcase/failure")
    assert len(build_failures) == 2
    assert build_failures[0].get("type") == "ExecutorExecutionError"

    assert suites["DEPLOY-1"].find("testcase/skipped") is not None
