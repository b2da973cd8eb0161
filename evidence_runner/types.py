# evidence_runner/types.py
"""
Shared types, enums, dataclasses and the error taxonomy for the runner.

Everything an executor, analyzer or reporter plugin may need to import lives
here so plugins never reach into engine internals.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    """ISO-8601 UTC timestamp with a trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ==================== Error Taxonomy ====================

class EvidenceRunnerError(Exception):
    """Base exception for all runner errors"""
    pass


class SchemaValidationError(EvidenceRunnerError):
    """Specification failed to parse or validate. Always fatal."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class PluginLoadError(EvidenceRunnerError):
    """A plugin failed to import or to satisfy its interface. Never fatal."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class NoExecutorFoundError(EvidenceRunnerError):
    """No executor plugin is registered for an action type"""

    def __init__(self, action_type: str):
        super().__init__(f"No executor plugin found for action type: {action_type}")
        self.action_type = action_type


class ExecutorExecutionError(EvidenceRunnerError):
    """
    Executor failed to carry out an action.

    `data` carries whatever the executor captured before failing (stdout,
    response body, file stats) so it still lands in the evidence record.
    """

    def __init__(self, message: str, data: Any = None):
        super().__init__(message)
        self.data = data


class HttpTimeoutError(ExecutorExecutionError):
    """HTTP request exceeded its caller-specified timeout"""
    pass


class MCPProtocolError(EvidenceRunnerError):
    """JSON-RPC level failure: timeout, RPC error object, or closed connection"""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class ValidationCriterionError(EvidenceRunnerError):
    """A validation condition could not be evaluated"""
    pass


# ==================== Enums ====================

class TaskStatus(str, Enum):
    """Task lifecycle"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class Phase(str, Enum):
    """Action phase inside a task"""
    PREREQ = "PREREQ"
    STEP = "STEP"
    CLEANUP = "CLEANUP"


class Severity(str, Enum):
    """Severity of an analyzer/detector finding"""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


# ==================== Results ====================

@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one executor invocation. Immutable once created."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "durationMs": self.duration_ms,
        }


@dataclass
class ActionResult:
    """ExecutionResult plus the context the engine ran it in"""
    action: Any  # ActionSpec
    phase: Phase
    task_id: str
    result: ExecutionResult
    started_at: str
    completed_at: str
    error_type: Optional[str] = None
    evidence_file: Optional[str] = None

    @property
    def action_id(self) -> str:
        return self.action.action_id

    @property
    def success(self) -> bool:
        return self.result.success

    @property
    def data(self) -> Any:
        return self.result.data

    @property
    def error(self) -> Optional[str]:
        return self.result.error

    @property
    def duration_ms(self) -> float:
        return self.result.duration_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actionId": self.action.action_id,
            "type": self.action.type,
            "description": self.action.description,
            "phase": self.phase.value,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "errorType": self.error_type,
            "evidenceFile": self.evidence_file,
            **self.result.to_dict(),
        }


@dataclass
class Finding:
    """Failure analysis or technical debt item"""
    category: str
    severity: Severity
    description: str
    suggested_fix: str
    location: Optional[str] = None
    related_steps: List[str] = field(default_factory=list)
    source: Optional[str] = None
    detected_at: str = field(default_factory=utc_now)
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "severity": self.severity.value,
            "description": self.description,
            "suggestedFix": self.suggested_fix,
            "location": self.location,
            "relatedSteps": list(self.related_steps),
            "source": self.source,
            "detectedAt": self.detected_at,
            "evidence": self.evidence,
        }


@dataclass
class CriterionEvaluation:
    """Result of evaluating one validation criterion"""
    description: str
    passed: bool
    condition: Optional[str] = None
    actual: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationResult:
    """Verdict of the criteria evaluator for one task"""
    passed: bool
    evaluations: List[CriterionEvaluation] = field(default_factory=list)

    @property
    def failed_criteria(self) -> List[CriterionEvaluation]:
        return [e for e in self.evaluations if not e.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "total": len(self.evaluations),
            "failed": len(self.failed_criteria),
            "evaluations": [e.to_dict() for e in self.evaluations],
        }


@dataclass
class TaskResult:
    """
    Per-task outcome owned by one engine run.

    `technical_debt` and `failure_analysis` are mutually exclusive: the
    attach_* methods refuse to set the one that does not match the verdict.
    """
    task_id: str
    title: str = ""
    status: TaskStatus = TaskStatus.PENDING
    steps: List[ActionResult] = field(default_factory=list)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: float = 0.0
    failure_reason: Optional[str] = None
    validation: Optional[ValidationResult] = None
    technical_debt: Optional[List[Finding]] = None
    failure_analysis: Optional[List[Finding]] = None

    def attach_technical_debt(self, findings: List[Finding]) -> None:
        if self.status != TaskStatus.PASSED:
            raise ValueError(f"Technical debt can only be attached to PASSED tasks ({self.task_id} is {self.status.value})")
        self.failure_analysis = None
        self.technical_debt = list(findings)

    def attach_failure_analysis(self, findings: List[Finding]) -> None:
        if self.status != TaskStatus.FAILED:
            raise ValueError(f"Failure analysis can only be attached to FAILED tasks ({self.task_id} is {self.status.value})")
        self.technical_debt = None
        self.failure_analysis = list(findings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "title": self.title,
            "status": self.status.value,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "durationMs": self.duration_ms,
            "failureReason": self.failure_reason,
            "steps": [s.to_dict() for s in self.steps],
            "validation": self.validation.to_dict() if self.validation else None,
            "technicalDebt": [f.to_dict() for f in self.technical_debt] if self.technical_debt is not None else None,
            "failureAnalysis": [f.to_dict() for f in self.failure_analysis] if self.failure_analysis is not None else None,
        }


@dataclass
class RunReport:
    """Aggregated results of a whole run"""
    run_id: str
    spec_path: str
    started_at: str
    completed_at: Optional[str] = None
    duration_ms: float = 0.0
    tasks: Dict[str, TaskResult] = field(default_factory=dict)
    fatal_error: Optional[str] = None

    @property
    def summary(self) -> Dict[str, int]:
        statuses = [t.status for t in self.tasks.values()]
        return {
            "total": len(statuses),
            "passed": sum(1 for s in statuses if s == TaskStatus.PASSED),
            "failed": sum(1 for s in statuses if s == TaskStatus.FAILED),
            "skipped": sum(1 for s in statuses if s == TaskStatus.SKIPPED),
        }

    @property
    def has_failures(self) -> bool:
        return self.summary["failed"] > 0 or self.fatal_error is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "specPath": self.spec_path,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "durationMs": self.duration_ms,
            "summary": self.summary,
            "fatalError": self.fatal_error,
            "tasks": {tid: t.to_dict() for tid, t in self.tasks.items()},
        }
