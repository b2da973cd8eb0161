# tests/test_analyzers.py
import asyncio

import pytest

from evidence_runner.debt_detectors.performance_detector import PerformanceDetector, severity_for_ratio
from evidence_runner.failure_analyzers.pattern_based_analyzer import PatternBasedAnalyzer
from evidence_runner.specification_loader import ActionSpec
from evidence_runner.types import ActionResult, ExecutionResult, Phase, Severity


def _step(action_type="TERMINAL_COMMAND", success=True, data=None, error=None, error_type=None,
          params=None, duration_ms=10.0, phase=Phase.STEP, action_id="STEP.1"):
    return ActionResult(
        action=ActionSpec(action_id=action_id, type=action_type, parameters=params or {}),
        phase=phase,
        task_id="T",
        result=ExecutionResult(success=success, data=data, error=error, duration_ms=duration_ms),
        started_at="2024-01-01T00:00:00Z",
        completed_at="2024-01-01T00:00:01Z",
        error_type=error_type,
    )


def _analyze(plugin, steps):
    return asyncio.run(plugin.analyze(steps, None))


# ==================== Failure analysis ====================

@pytest.mark.parametrize("step, category", [
    (_step("NOPE", success=False, error="No executor plugin found for action type: NOPE",
           error_type="NoExecutorFoundError"), "NO_EXECUTOR"),
    (_step("FILE_VALIDATION", success=False, error="File not found: /app/dist/index.js",
           params={"filePath": "dist/index.js"}), "INCOMPLETE_IMPLEMENTATION"),
    (_step(success=False, error="src/app.ts(3,1): error TS2304: Cannot find name 'x'",
           params={"command": "npx tsc --noEmit"}), "COMPILATION_ERROR"),
    (_step("HTTP_REQUEST", success=False, error="HTTP request failed: ConnectError('connection refused')",
           params={"url": "http://localhost:3000"}), "ENVIRONMENT_ERROR"),
    (_step("HTTP_REQUEST", success=False, error="HTTP 401 Unauthorized. Expected: 200",
           data={"status": 401}), "AUTHENTICATION_ERROR"),
    (_step(success=False, error="Action timeout after 500ms", error_type="TimeoutError"), "TIMEOUT"),
    (_step(success=False, error="npm ERR! code ERESOLVE", params={"command": "npm ci"}), "DEPENDENCY_ERROR"),
    (_step(success=False, error="TypeError: Cannot read properties of undefined"), "RUNTIME_ERROR"),
    (_step("HTTP_REQUEST", success=False, error="HTTP 422 Unprocessable Entity. Expected: 200",
           data={"status": 422}), "VALIDATION_FAILURE"),
    (_step(success=False, error="Missing required parameter(s): command"), "CONFIGURATION_ERROR"),
    (_step(success=False, error="Command exited with code 137. Expected: 0"), "UNKNOWN_ERROR"),
])
def test_failure_categories(step, category):
    findings = _analyze(PatternBasedAnalyzer(), [step])
    assert [f.category for f in findings] == [category]
    assert findings[0].related_steps == ["STEP.1"]
    assert findings[0].source == "pattern-based-analyzer"
    assert findings[0].suggested_fix


def test_one_finding_per_failed_step_cleanup_ignored():
    steps = [
        _step(success=True, action_id="STEP.1"),
        _step(success=False, error="TypeError: x is not a function", action_id="STEP.2"),
        _step(success=False, error="Action timeout after 10ms", error_type="TimeoutError", action_id="STEP.3"),
        _step(success=False, error="ignored", phase=Phase.CLEANUP, action_id="CLEANUP.1"),
    ]
    findings = _analyze(PatternBasedAnalyzer(), steps)
    assert [(f.related_steps[0], f.category) for f in findings] == [("STEP.2", "RUNTIME_ERROR"), ("STEP.3", "TIMEOUT")]


def test_all_steps_passed_means_validation_failure():
    findings = _analyze(PatternBasedAnalyzer(), [_step(), _step(action_id="STEP.2")])
    assert len(findings) == 1
    assert findings[0].category == "VALIDATION_FAILURE"
    assert findings[0].related_steps == ["STEP.1", "STEP.2"]


def test_location_prefers_file_from_error():
    step = _step("FILE_VALIDATION", success=False, error="File not found: /srv/app/config.yml",
                 params={"filePath": "config.yml"})
    assert _analyze(PatternBasedAnalyzer(), [step])[0].location == "/srv/app/config.yml"

    http = _step("HTTP_REQUEST", success=False, error="HTTP 500", params={"url": "/api", "method": "post"})
    assert _analyze(PatternBasedAnalyzer(), [http])[0].location == "POST /api"


# ==================== Technical debt ====================

def _http_step(status=200, body=None, headers=None, response_time=50, params=None):
    return _step(
        "HTTP_REQUEST",
        data={
            "status": status,
            "body": body if body is not None else {"ok": True},
            "headers": headers if headers is not None else {"content-type": "application/json"},
            "responseTime": response_time,
        },
        params=params or {"url": "/api/users", "method": "GET"},
    )


def test_severity_for_ratio():
    assert severity_for_ratio(3500, 1000) == Severity.HIGH
    assert severity_for_ratio(2500, 1000) == Severity.MEDIUM
    assert severity_for_ratio(1500, 1000) == Severity.LOW


def test_clean_http_response_has_no_debt():
    assert _analyze(PerformanceDetector({}), [_http_step()]) == []


def test_slow_http_request():
    findings = _analyze(PerformanceDetector({"httpRequestMs": 100}), [_http_step(response_time=450)])
    assert [f.category for f in findings] == ["PERFORMANCE_DEGRADATION"]
    assert findings[0].severity == Severity.HIGH
    assert findings[0].location == "GET /api/users"
    assert findings[0].evidence["actual"] == 450


def test_http_quality_findings():
    detector = PerformanceDetector({})
    unpaginated = _analyze(detector, [_http_step(body=list(range(25)))])
    assert [f.category for f in unpaginated] == ["API_ENDPOINT_INCOMPLETE"]

    paginated = _analyze(detector, [_http_step(body=list(range(25)), headers={"content-type": "application/json", "X-Total-Count": "25"})])
    assert paginated == []

    generic = _analyze(detector, [_http_step(body={"error": "Bad"})])
    assert [f.category for f in generic] == ["ERROR_HANDLING_INCOMPLETE"]

    accepted_5xx = _analyze(detector, [_http_step(status=503)])
    assert accepted_5xx[0].severity == Severity.HIGH

    no_content_type = _analyze(detector, [_http_step(headers={})])
    assert [f.description for f in no_content_type] == ["Response missing Content-Type header"]


def test_command_findings():
    detector = PerformanceDetector({"commandMs": 100})
    step = _step(
        data={"stdout": "it.only('focus')\nusing mock server\nDeprecationWarning: old api", "stderr": ""},
        params={"command": "npm test"},
        duration_ms=350,
    )
    categories = sorted(f.category for f in _analyze(detector, [step]))
    assert categories == ["CODE_QUALITY", "CODE_QUALITY", "INTEGRATION_ISSUE", "PERFORMANCE_DEGRADATION"]


def test_failed_and_background_steps_are_ignored():
    detector = PerformanceDetector({"commandMs": 1, "httpRequestMs": 1})
    steps = [
        _step(success=False, error="x", params={"command": "npm test"}, duration_ms=999),
        _step(data={"background": True, "status": "started"}, params={"command": "npm test"}, duration_ms=999),
    ]
    assert _analyze(detector, steps) == []


def test_thresholds_from_settings(monkeypatch):
    monkeypatch.setenv("EVIDENCE_RUNNER_HTTP_SLOW_THRESHOLD_MS", "250")
    detector = PerformanceDetector()
    assert detector.http_threshold_ms == 250
    assert detector.command_threshold_ms == 500
