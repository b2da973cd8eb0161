# evidence_runner/plugins.py
"""
Base classes for every plugin kind.

All executor, failure analyzer, technical debt detector, validator and
reporter plugins must inherit from the matching base class below. The
registry checks both the subclass relation and the required members listed
in REQUIRED_MEMBERS before registering an instance.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from evidence_runner.processes import ProcessGroup
from evidence_runner.types import (
    ActionResult,
    CriterionEvaluation,
    ExecutionResult,
    ExecutorExecutionError,
    Finding,
    RunReport,
    Severity,
)

if TYPE_CHECKING:
    from evidence_runner.config import Settings
    from evidence_runner.specification_loader import TaskSpec

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """
    Per-run state shared with executors.

    Lives exactly as long as one engine run; nothing here is module-global,
    so two runs in one interpreter never see each other's processes.
    """
    run_id: str
    settings: "Settings"
    global_config: Dict[str, Any] = field(default_factory=dict)
    processes: ProcessGroup = field(default_factory=ProcessGroup)
    evidence_dir: Optional[str] = None


# ==================== Executors ====================

class BaseExecutor(ABC):
    """Executes one action type (or a few closely related ones)"""

    name: str = ""
    version: str = "1.0.0"

    def __init__(self) -> None:
        self.context: Optional[ExecutionContext] = None
        if not self.name:
            self.name = type(self).__name__

    def bind(self, context: ExecutionContext) -> None:
        """Called by the engine before the first action of a run"""
        self.context = context

    @abstractmethod
    def action_types(self) -> List[str]:
        """Action type keys this executor handles (e.g. 'TERMINAL_COMMAND')."""
        pass

    @abstractmethod
    async def execute(self, parameters: Dict[str, Any], global_config: Dict[str, Any]) -> ExecutionResult:
        """
        Run one action.

        Return an ExecutionResult on success. Raise ExecutorExecutionError
        (with whatever partial data was captured) on failure.
        """
        pass

    def own_timeout_ms(self, parameters: Dict[str, Any]) -> Optional[int]:
        """Timeout this executor enforces on its own, if any; the engine waits longer than that."""
        return None

    async def cleanup(self) -> None:
        """Release long-lived resources. Called once at the end of a run."""
        return None

    @staticmethod
    def validate_parameters(parameters: Dict[str, Any], required: List[str]) -> None:
        missing = [p for p in required if parameters.get(p) in (None, "")]
        if missing:
            raise ExecutorExecutionError(f"Missing required parameter(s): {', '.join(missing)}")


# ==================== Analyzers / Detectors ====================

class _FindingPlugin(ABC):
    name: str = ""
    priority: int = 0

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        self.config = config or {}
        if not self.name:
            self.name = type(self).__name__

    @abstractmethod
    async def analyze(self, steps: List[ActionResult], task_spec: "TaskSpec") -> List[Finding]:
        pass

    def create_finding(
        self,
        category: str,
        severity: Severity,
        description: str,
        suggested_fix: str,
        location: Optional[str] = None,
        related_steps: Optional[List[str]] = None,
        evidence: Optional[Dict[str, Any]] = None,
    ) -> Finding:
        return Finding(
            category=category,
            severity=severity,
            description=description,
            suggested_fix=suggested_fix,
            location=location,
            related_steps=list(related_steps or []),
            source=self.name,
            evidence=dict(evidence or {}),
        )


class BaseFailureAnalyzer(_FindingPlugin):
    """Explains why a FAILED task failed. Never invoked for PASSED tasks."""


class BaseTechnicalDebtDetector(_FindingPlugin):
    """Flags latent quality issues in a PASSED task. Never invoked for FAILED tasks."""


# ==================== Validators / Reporters ====================

class BaseValidator(ABC):
    """Evaluates criteria of the form {"validator": name, ...}"""

    name: str = ""

    @abstractmethod
    async def validate(self, criterion: Dict[str, Any], context: Dict[str, Dict[str, Any]]) -> CriterionEvaluation:
        pass


class BaseReporter(ABC):
    """Renders the final run report in some output format"""

    name: str = ""
    format: str = ""

    @abstractmethod
    async def generate(self, report: RunReport, evidence_dir: str) -> Optional[str]:
        """Write the report; return the output path (or None)."""
        pass


REQUIRED_MEMBERS: Dict[type, List[str]] = {
    BaseExecutor: ["action_types", "execute", "cleanup"],
    BaseFailureAnalyzer: ["priority", "analyze"],
    BaseTechnicalDebtDetector: ["priority", "analyze"],
    BaseValidator: ["name", "validate"],
    BaseReporter: ["name", "format", "generate"],
}


def missing_members(instance: Any, base: type) -> List[str]:
    """Names from REQUIRED_MEMBERS that the instance lacks or has in the wrong shape"""
    missing = []
    for member in REQUIRED_MEMBERS.get(base, []):
        value = getattr(instance, member, None)
        if value is None:
            missing.append(member)
        elif member == "priority" and not isinstance(value, (int, float)):
            missing.append(f"{member} (not a number)")
        elif member in ("name", "format") and not (isinstance(value, str) and value):
            missing.append(f"{member} (empty)")
        elif member not in ("priority", "name", "format") and not callable(value):
            missing.append(f"{member} (not callable)")
    return missing
