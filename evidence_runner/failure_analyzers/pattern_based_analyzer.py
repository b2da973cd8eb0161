# evidence_runner/failure_analyzers/pattern_based_analyzer.py
"""
Pattern-Based Failure Analyzer

Categorizes each failed action of a FAILED task from its error text, error
type and action type, and attaches a suggested fix. Rules are checked in
order; the first match wins, UNKNOWN_ERROR otherwise.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from evidence_runner.plugins import BaseFailureAnalyzer
from evidence_runner.types import ActionResult, Finding, Phase, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Rule:
    category: str
    severity: Severity
    suggested_fix: str
    patterns: Tuple[str, ...] = ()
    predicate: Optional[Callable[[ActionResult, str], bool]] = None

    def matches(self, step: ActionResult, error_lower: str) -> bool:
        if any(re.search(p, error_lower) for p in self.patterns):
            return True
        return self.predicate is not None and self.predicate(step, error_lower)


def _command(step: ActionResult) -> str:
    return str(step.action.parameters.get("command") or "")


def _http_status(step: ActionResult) -> int:
    data = step.data if isinstance(step.data, dict) else {}
    status = data.get("status")
    return status if isinstance(status, int) else 0


RULES: Tuple[_Rule, ...] = (
    _Rule(
        "NO_EXECUTOR", Severity.CRITICAL,
        "Install or register an executor plugin for this action type, or fix the type name",
        predicate=lambda s, e: s.error_type == "NoExecutorFoundError",
    ),
    _Rule(
        "INCOMPLETE_IMPLEMENTATION", Severity.HIGH,
        "Create the missing file or implementation the test expects",
        patterns=(r"file not found", r"enoent", r"cannot find module", r"no module named",
                  r"404 not found", r"does not exist", r"not implemented"),
        predicate=lambda s, e: s.action.type == "FILE_VALIDATION",
    ),
    _Rule(
        "COMPILATION_ERROR", Severity.HIGH,
        "Fix compilation errors before running tests",
        patterns=(r"\bts\d+:", r"syntaxerror", r"compilation failed", r"indentationerror"),
        predicate=lambda s, e: s.action.type == "TERMINAL_COMMAND" and re.search(r"\b(tsc|mypy|javac|gcc)\b", _command(s)) is not None,
    ),
    _Rule(
        "ENVIRONMENT_ERROR", Severity.HIGH,
        "Start required services or check environment configuration",
        patterns=(r"econnrefused", r"connection refused", r"port already in use", r"address already in use",
                  r"not running", r"connecterror", r"command not found"),
    ),
    _Rule(
        "AUTHENTICATION_ERROR", Severity.HIGH,
        "Ensure the auth token or credentials are set correctly",
        patterns=(r"\b401\b", r"unauthorized", r"\b403\b", r"forbidden", r"invalid token"),
    ),
    _Rule(
        "TIMEOUT", Severity.MEDIUM,
        "Check operation performance or increase the timeout threshold",
        patterns=(r"timeout", r"etimedout", r"timed out"),
        predicate=lambda s, e: s.error_type in ("TimeoutError", "HttpTimeoutError"),
    ),
    _Rule(
        "DEPENDENCY_ERROR", Severity.HIGH,
        "Update dependency manifests or check package registry availability",
        patterns=(r"npm err", r"package not found", r"eresolve", r"could not find a version",
                  r"resolutionimpossible"),
        predicate=lambda s, e: s.action.type == "TERMINAL_COMMAND" and re.search(r"\b(npm|pip) install\b", _command(s)) is not None,
    ),
    _Rule(
        "RUNTIME_ERROR", Severity.HIGH,
        "Add error handling or fix the runtime exception",
        patterns=(r"typeerror", r"referenceerror", r"rangeerror", r"attributeerror", r"keyerror",
                  r"cannot read propert", r"is not defined", r"traceback \(most recent call last\)"),
    ),
    _Rule(
        "VALIDATION_FAILURE", Severity.MEDIUM,
        "Update the implementation to match the expected behavior or schema",
        patterns=(r"expected.*but got", r"assertion failed", r"assertionerror", r"schema validation",
                  r"does not match"),
        predicate=lambda s, e: s.action.type == "HTTP_REQUEST" and _http_status(s) >= 400,
    ),
    _Rule(
        "CONFIGURATION_ERROR", Severity.MEDIUM,
        "Fix configuration file syntax or add the missing settings",
        patterns=(r"invalid configuration", r"config.*error", r"parse error", r"missing required parameter"),
    ),
)

UNKNOWN_RULE = _Rule("UNKNOWN_ERROR", Severity.MEDIUM, "Review error details and the evidence record")


class PatternBasedAnalyzer(BaseFailureAnalyzer):
    name = "pattern-based-analyzer"
    priority = 100

    async def analyze(self, steps: List[ActionResult], task_spec: Any) -> List[Finding]:
        failed = [s for s in steps if not s.success and s.phase != Phase.CLEANUP]
        if not failed:
            return [self.create_finding(
                category="VALIDATION_FAILURE",
                severity=Severity.MEDIUM,
                description="All actions succeeded but the validation criteria were not met",
                suggested_fix="Compare the validation criteria with the recorded evidence",
                related_steps=[s.action_id for s in steps],
            )]

        return [self._categorize(step) for step in failed]

    def _categorize(self, step: ActionResult) -> Finding:
        error = step.error or ""
        error_lower = error.lower()
        rule = next((r for r in RULES if r.matches(step, error_lower)), UNKNOWN_RULE)
        logger.debug(f"{step.action_id}: categorized as {rule.category}")

        return self.create_finding(
            category=rule.category,
            severity=rule.severity,
            description=_first_line(error) or f"{step.action_id} failed",
            suggested_fix=rule.suggested_fix,
            location=self._location(step, error),
            related_steps=[step.action_id],
            evidence={
                "actionType": step.action.type,
                "phase": step.phase.value,
                "errorType": step.error_type or _error_type(error),
                "evidenceFile": step.evidence_file,
                "fullError": error,
            },
        )

    @staticmethod
    def _location(step: ActionResult, error: str) -> Optional[str]:
        params: Dict[str, Any] = step.action.parameters
        file_match = re.search(r"(?:File not found|ENOENT):?\s*(.+)$", error, re.IGNORECASE | re.MULTILINE)
        if file_match:
            return file_match.group(1).strip()
        for key in ("filePath", "url", "command", "action"):
            if params.get(key):
                value = str(params[key])
                if key == "url":
                    return f"{str(params.get('method') or 'GET').upper()} {value}"
                return value
        return None


def _first_line(text: str) -> str:
    return text.strip().split("\n", 1)[0].strip()


def _error_type(error: str) -> str:
    match = re.match(r"^(\w+Error|ENOENT|ECONNREFUSED|ETIMEDOUT):", error)
    return match.group(1) if match else "Error"
