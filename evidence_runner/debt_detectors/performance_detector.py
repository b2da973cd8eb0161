# evidence_runner/debt_detectors/performance_detector.py
"""
Performance & quality debt detector.

Looks at the successful actions of a PASSED task for latent issues:
- slow HTTP calls and slow query/test commands
- list endpoints without pagination metadata
- terse, generic error messages in API bodies
- 5xx responses that were accepted by expectedStatus
- responses without Content-Type
- warnings / deprecations in command output
- focused or skipped tests, mock-heavy test runs
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from evidence_runner.config import Settings
from evidence_runner.plugins import BaseTechnicalDebtDetector
from evidence_runner.types import ActionResult, Finding, Severity

logger = logging.getLogger(__name__)

_WARNING_LINE = re.compile(r"warning|deprecated", re.IGNORECASE)


def severity_for_ratio(actual: float, threshold: float) -> Severity:
    ratio = actual / threshold if threshold else 0
    if ratio > 3:
        return Severity.HIGH
    if ratio > 2:
        return Severity.MEDIUM
    return Severity.LOW


class PerformanceDetector(BaseTechnicalDebtDetector):
    name = "performance-detector"
    priority = 50

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(config)
        if config is None:
            settings = Settings()
            self.config = {
                "httpRequestMs": settings.http_slow_threshold_ms,
                "commandMs": settings.command_slow_threshold_ms,
            }
        self.http_threshold_ms = float(self.config.get("httpRequestMs", 1000))
        self.command_threshold_ms = float(self.config.get("commandMs", 500))

    async def analyze(self, steps: List[ActionResult], task_spec: Any) -> List[Finding]:
        findings: List[Finding] = []
        for step in steps:
            if not step.success:
                continue
            data = step.data if isinstance(step.data, dict) else {}
            if step.action.type == "HTTP_REQUEST":
                findings.extend(self._http_findings(step, data))
            elif step.action.type == "TERMINAL_COMMAND" and not data.get("background"):
                findings.extend(self._command_findings(step, data))
        return findings

    # ==================== HTTP ====================

    def _http_findings(self, step: ActionResult, data: Dict[str, Any]) -> List[Finding]:
        findings: List[Finding] = []
        params = step.action.parameters
        location = f"{str(params.get('method') or 'GET').upper()} {params.get('url', 'Unknown URL')}"
        duration = float(data.get("responseTime") or step.duration_ms or 0)
        status = data.get("status") if isinstance(data.get("status"), int) else 0
        headers = {str(k).lower(): v for k, v in (data.get("headers") or {}).items()}
        body = data.get("body")

        if duration > self.http_threshold_ms:
            findings.append(self.create_finding(
                "PERFORMANCE_DEGRADATION",
                severity_for_ratio(duration, self.http_threshold_ms),
                f"HTTP request took {duration:.0f}ms, exceeds {self.http_threshold_ms:.0f}ms threshold",
                "Optimize the endpoint, add caching, or paginate the response",
                location=location,
                related_steps=[step.action_id],
                evidence={"metric": "duration", "threshold": self.http_threshold_ms, "actual": duration},
            ))

        if status >= 500:
            findings.append(self.create_finding(
                "ERROR_HANDLING_INCOMPLETE", Severity.HIGH,
                f"API endpoint returned {status} and the test accepted it",
                "Return 4xx for client errors and handle server faults explicitly",
                location=location,
                related_steps=[step.action_id],
            ))

        if 200 <= status < 300:
            if isinstance(body, list) and len(body) > 10 and "x-total-count" not in headers:
                findings.append(self.create_finding(
                    "API_ENDPOINT_INCOMPLETE", Severity.LOW,
                    f"List endpoint returned {len(body)} items without pagination metadata",
                    "Add pagination support with totalCount, page and limit metadata",
                    location=location,
                    related_steps=[step.action_id],
                ))
            if isinstance(body, dict) and isinstance(body.get("error"), str) and len(body["error"]) < 20:
                findings.append(self.create_finding(
                    "ERROR_HANDLING_INCOMPLETE", Severity.MEDIUM,
                    f"API returns a generic error message without details: {body['error']!r}",
                    "Add specific error codes and detailed error messages",
                    location=location,
                    related_steps=[step.action_id],
                ))

        if status and "content-type" not in headers:
            findings.append(self.create_finding(
                "API_ENDPOINT_INCOMPLETE", Severity.LOW,
                "Response missing Content-Type header",
                "Add a Content-Type header to the response",
                location=location,
                related_steps=[step.action_id],
            ))
        return findings

    # ==================== Commands ====================

    def _command_findings(self, step: ActionResult, data: Dict[str, Any]) -> List[Finding]:
        findings: List[Finding] = []
        command = str(step.action.parameters.get("command") or "")
        stdout = str(data.get("stdout") or "")
        stderr = str(data.get("stderr") or "")
        is_test = "test" in command
        duration = float(step.duration_ms or 0)

        if duration > self.command_threshold_ms and (is_test or "query" in command):
            findings.append(self.create_finding(
                "PERFORMANCE_DEGRADATION",
                severity_for_ratio(duration, self.command_threshold_ms),
                f"Command execution took {duration:.0f}ms, exceeds {self.command_threshold_ms:.0f}ms threshold",
                "Profile and optimize slow operations, add database indexes",
                location=command,
                related_steps=[step.action_id],
                evidence={"metric": "duration", "threshold": self.command_threshold_ms, "actual": duration},
            ))

        warnings = [line.strip()[:100] for line in (stdout + "\n" + stderr).splitlines() if _WARNING_LINE.search(line)]
        if warnings:
            findings.append(self.create_finding(
                "CODE_QUALITY", Severity.LOW,
                f"Command produced {len(warnings)} warning(s)",
                "Address warnings: " + "; ".join(warnings[:2]),
                location=command,
                related_steps=[step.action_id],
                evidence={"warnings": warnings[:10]},
            ))

        if is_test and (".skip" in stdout or ".only" in stdout):
            findings.append(self.create_finding(
                "CODE_QUALITY", Severity.MEDIUM,
                "Tests using .skip() or .only() detected",
                "Remove .skip() and .only() before committing",
                location=command,
                related_steps=[step.action_id],
            ))

        if is_test and re.search(r"\b(mock|stub)\b", stdout, re.IGNORECASE):
            findings.append(self.create_finding(
                "INTEGRATION_ISSUE", Severity.MEDIUM,
                "Tests may be using mocks instead of real integrations",
                "Replace mocks with real integration tests where appropriate",
                location=command,
                related_steps=[step.action_id],
            ))
        return findings
