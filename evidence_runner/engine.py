# evidence_runner/engine.py
"""
Execution Engine

Runs a loaded TestSpecification task by task:

    prerequisites -> steps -> cleanup          (actions, strictly sequential)
    evidence written after every action        (before the next one starts)
    validation criteria -> verdict
    PASSED -> technical debt detectors          (priority order, concatenated)
    FAILED -> failure analyzers                 (priority order, concatenated)
    task-summary.json

After the last task: execution-report.json, reporter plugins, then cleanup
of executors and managed processes. Cleanup and the report happen in
`finally` blocks, so a fatal error or Ctrl-C still leaves a report for the
tasks that did run.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from evidence_runner.config import Settings
from evidence_runner.evidence_collector import EvidenceCollector
from evidence_runner.plugin_registry import PluginRegistry
from evidence_runner.plugins import BaseExecutor, ExecutionContext
from evidence_runner.specification_loader import ActionSpec, SpecificationLoader, TaskSpec, TestSpecification
from evidence_runner.types import (
    ActionResult,
    EvidenceRunnerError,
    ExecutionResult,
    ExecutorExecutionError,
    Finding,
    NoExecutorFoundError,
    Phase,
    RunReport,
    TaskResult,
    TaskStatus,
    ValidationResult,
    utc_now,
)
from evidence_runner.validation_engine import ValidationEngine

logger = logging.getLogger(__name__)

# Head start an executor gets to report its own timeout before the engine cancels it
EXECUTOR_TIMEOUT_MARGIN_MS = 1000


# ==================== Config ====================

@dataclass
class EngineConfig:
    """Effective run options: Settings overlaid with CLI flags"""
    evidence_dir: str = "evidence"
    plugin_dirs: List[str] = field(default_factory=list)
    stop_on_failure: bool = False
    halt_on_error: bool = True
    dry_run: bool = False
    default_timeout_ms: int = 60_000
    executor_preference: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "EngineConfig":
        values: Dict[str, Any] = {
            "evidence_dir": settings.evidence_dir,
            "plugin_dirs": list(settings.plugin_dirs),
            "stop_on_failure": settings.stop_on_failure,
            "halt_on_error": settings.halt_on_error,
            "dry_run": settings.dry_run,
            "default_timeout_ms": settings.default_timeout_ms,
            "executor_preference": dict(settings.executor_preference),
        }
        for key, value in overrides.items():
            if key not in values:
                raise TypeError(f"Unknown engine option: {key}")
            if value is None:
                continue
            if key == "plugin_dirs":
                values[key] = values[key] + [str(p) for p in value]
            else:
                values[key] = value
        return cls(**values)


def _new_run_id() -> str:
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


# ==================== Engine ====================

class ExecutionEngine:
    """Drives one or more runs; all per-run state lives in locals and ExecutionContext"""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        settings: Optional[Settings] = None,
        registry: Optional[PluginRegistry] = None,
        loader: Optional[SpecificationLoader] = None,
    ):
        self.settings = settings or Settings()
        self.config = config or EngineConfig.from_settings(self.settings)
        self.loader = loader or SpecificationLoader()
        self._registry = registry

    @property
    def registry(self) -> PluginRegistry:
        if self._registry is None:
            self._registry = PluginRegistry(self.config.plugin_dirs).load_all()
        return self._registry

    async def run(self, spec_path: Union[str, Path]) -> RunReport:
        """Load (SchemaValidationError propagates) and execute a specification file"""
        spec = self.loader.load(spec_path)
        return await self.execute(spec)

    async def execute(self, spec: TestSpecification) -> RunReport:
        run_id = _new_run_id()
        registry = self.registry
        t0 = time.perf_counter()

        report = RunReport(run_id=run_id, spec_path=spec.source_path or "<memory>", started_at=utc_now())
        context = ExecutionContext(
            run_id=run_id,
            settings=self.settings,
            global_config=dict(spec.global_configuration),
            evidence_dir=self.config.evidence_dir,
        )
        collector = EvidenceCollector(
            self.config.evidence_dir,
            run_id=run_id,
            tool_name=self.settings.tool_name,
            tool_version=self.settings.tool_version,
        )
        validation_engine = ValidationEngine(registry)

        logger.info("=" * 70)
        logger.info(f"🚀 Run {run_id}: {spec.title}")
        logger.info(f"   Tasks: {len(spec.tasks)} | evidence: {self.config.evidence_dir}"
                    f"{' | DRY RUN' if self.config.dry_run else ''}")
        logger.info("=" * 70)

        for executor in registry.all_executors():
            executor.bind(context)

        try:
            async with context.processes:
                try:
                    await self._run_tasks(spec, report, context, collector, validation_engine)
                except Exception as e:
                    report.fatal_error = f"{type(e).__name__}: {e}"
                    logger.error(f"💥 Fatal error: {report.fatal_error}")
                    raise
                finally:
                    self._mark_unreached(spec, report)
                    report.completed_at = utc_now()
                    report.duration_ms = (time.perf_counter() - t0) * 1000
                    try:
                        if not self.config.dry_run:
                            collector.write_report(report)
                            await self._run_reporters(report, registry)
                    finally:
                        await registry.cleanup_all()
        finally:
            self._log_summary(report)

        return report

    async def _run_tasks(
        self,
        spec: TestSpecification,
        report: RunReport,
        context: ExecutionContext,
        collector: EvidenceCollector,
        validation_engine: ValidationEngine,
    ) -> None:
        for index, (task_id, task) in enumerate(spec.tasks.items(), start=1):
            logger.info("")
            logger.info(f"📋 Task {index}/{len(spec.tasks)}: {task_id} - {task.title}")
            logger.info("-" * 70)

            result = await self.execute_task(task, context, collector, validation_engine)
            report.tasks[task_id] = result

            if result.status == TaskStatus.FAILED and self.config.stop_on_failure:
                logger.warning("⏹️ Stopping run after failed task (stop-on-failure)")
                break

    def _mark_unreached(self, spec: TestSpecification, report: RunReport) -> None:
        for task_id, task in spec.tasks.items():
            if task_id not in report.tasks:
                report.tasks[task_id] = TaskResult(task_id=task_id, title=task.title, status=TaskStatus.SKIPPED)

    # ==================== Tasks ====================

    async def execute_task(
        self,
        task: TaskSpec,
        context: ExecutionContext,
        collector: EvidenceCollector,
        validation_engine: ValidationEngine,
    ) -> TaskResult:
        result = TaskResult(task_id=task.task_id, title=task.title, status=TaskStatus.RUNNING, started_at=utc_now())
        t0 = time.perf_counter()
        dry_run = self.config.dry_run

        if not dry_run:
            collector.prepare_task(task.task_id)

        try:
            await self._run_phases(task, result, context, collector)

            if dry_run:
                result.status = TaskStatus.FAILED if result.failure_reason else TaskStatus.PASSED
            else:
                logger.info("✓ Evaluating validation criteria")
                validation = await validation_engine.evaluate(result.steps, task.validation_criteria)
                result.validation = validation
                collector.write_validations(task.task_id, validation)
                self._apply_verdict(result, validation)
        except (EvidenceRunnerError, OSError, ValueError, TypeError) as e:
            result.status = TaskStatus.FAILED
            result.failure_reason = result.failure_reason or f"Task execution error: {e}"
            logger.error(f"❌ Task execution error: {e}")

        if not dry_run:
            if result.status == TaskStatus.PASSED:
                result.attach_technical_debt(await self._collect_findings(
                    self.registry.debt_detectors(), result.steps, task, "detector"))
                if result.technical_debt:
                    logger.warning(f"⚠️ Found {len(result.technical_debt)} technical debt item(s)")
            else:
                result.attach_failure_analysis(await self._collect_findings(
                    self.registry.failure_analyzers(), result.steps, task, "analyzer"))
                if result.failure_analysis:
                    categories = ", ".join(sorted({f.category for f in result.failure_analysis}))
                    logger.info(f"📊 Failure categories: {categories}")

        result.completed_at = utc_now()
        result.duration_ms = (time.perf_counter() - t0) * 1000

        icon = "✅" if result.status == TaskStatus.PASSED else "❌"
        logger.info(f"{icon} Task {task.task_id}: {result.status.value} ({result.duration_ms:.0f}ms)")
        if result.failure_reason:
            logger.info(f"   Reason: {result.failure_reason}")

        if not dry_run:
            collector.write_task_summary(result)
        return result

    async def _run_phases(
        self,
        task: TaskSpec,
        result: TaskResult,
        context: ExecutionContext,
        collector: EvidenceCollector,
    ) -> None:
        blocked = False
        for phase, actions in task.phases():
            if not actions:
                continue
            if blocked and phase != Phase.CLEANUP:
                logger.info(f"⏭️ Skipping {len(actions)} {phase.value} action(s)")
                continue

            logger.info(f"{_PHASE_ICONS[phase]} {phase.value} ({len(actions)} action(s))")
            for position, action in enumerate(actions):
                action_result = await self.execute_action(action, phase, task.task_id, context)
                result.steps.append(action_result)
                if not self.config.dry_run:
                    collector.record_action(action_result)

                if action_result.success or phase == Phase.CLEANUP:
                    continue

                no_executor = action_result.error_type == NoExecutorFoundError.__name__
                if action.continue_on_failure and not no_executor:
                    logger.info(f"   ↪️ {action.action_id} failed; continuing (continueOnFailure)")
                    continue

                if result.failure_reason is None:
                    label = "Prerequisite" if phase == Phase.PREREQ else "Step"
                    result.failure_reason = f"{label} {action.action_id} failed: {action_result.error}"

                remaining = len(actions) - position - 1
                if phase == Phase.PREREQ or no_executor or self.config.halt_on_error:
                    blocked = True
                    if remaining:
                        logger.info(f"⏭️ Skipping {remaining} remaining {phase.value} action(s)")
                    break

    def _apply_verdict(self, result: TaskResult, validation: ValidationResult) -> None:
        if validation.passed and result.failure_reason is None:
            result.status = TaskStatus.PASSED
            return

        result.status = TaskStatus.FAILED
        if result.failure_reason is None:
            failed = validation.failed_criteria
            if failed:
                result.failure_reason = "Validation failed: " + "; ".join(
                    f"{e.description}{f' ({e.error})' if e.error else ''}" for e in failed
                )
            else:
                result.failure_reason = "One or more actions failed"

    # ==================== Actions ====================

    def select_executor(self, action_type: str) -> Optional[BaseExecutor]:
        executors = self.registry.executors_for(action_type)
        if not executors:
            return None

        preferred = self.config.executor_preference.get(action_type)
        if preferred:
            for executor in executors:
                if executor.name == preferred:
                    return executor
            logger.warning(f"⚠️ Preferred executor '{preferred}' for {action_type} not registered; using {executors[0].name}")
        return executors[0]

    def action_timeout_ms(self, action: ActionSpec, executor: BaseExecutor, context: ExecutionContext) -> int:
        """
        Engine-side bound for one action: the action's own `timeout`, else the
        global `timeout`, else the configured default. Without an explicit
        action timeout the bound is raised past any timeout the executor
        enforces itself (an HTTP step's `timeout` parameter).
        """
        if action.timeout_ms:
            return int(action.timeout_ms)
        timeout_ms = int(context.global_config.get("timeout") or self.config.default_timeout_ms)
        own = executor.own_timeout_ms(dict(action.parameters))
        if own is not None:
            timeout_ms = max(timeout_ms, own + EXECUTOR_TIMEOUT_MARGIN_MS)
        return timeout_ms

    async def execute_action(
        self,
        action: ActionSpec,
        phase: Phase,
        task_id: str,
        context: ExecutionContext,
    ) -> ActionResult:
        started_at = utc_now()
        t0 = time.perf_counter()
        error_type: Optional[str] = None

        logger.info(f"  ▶ {action.action_id}: {action.description or action.type}")
        executor = self.select_executor(action.type)

        if executor is None:
            error = NoExecutorFoundError(action.type)
            outcome = ExecutionResult(success=False, error=str(error))
            error_type = type(error).__name__
        elif self.config.dry_run:
            outcome = ExecutionResult(success=True, data={"dryRun": True, "executor": executor.name})
        else:
            timeout_ms = self.action_timeout_ms(action, executor, context)
            try:
                returned = await asyncio.wait_for(
                    executor.execute(dict(action.parameters), context.global_config),
                    timeout=int(timeout_ms) / 1000.0,
                )
                outcome = self._coerce_result(returned, executor)
            except asyncio.TimeoutError:
                outcome = ExecutionResult(success=False, error=f"Action timeout after {timeout_ms}ms")
                error_type = "TimeoutError"
            except ExecutorExecutionError as e:
                outcome = ExecutionResult(success=False, data=e.data, error=str(e))
                error_type = type(e).__name__
            except EvidenceRunnerError as e:
                outcome = ExecutionResult(success=False, data=getattr(e, "data", None), error=str(e))
                error_type = type(e).__name__
            except Exception as e:
                # Plugin code: any failure belongs to this action only
                outcome = ExecutionResult(success=False, error=str(e) or repr(e))
                error_type = type(e).__name__

        outcome = replace(outcome, duration_ms=round((time.perf_counter() - t0) * 1000, 3))
        if outcome.success:
            logger.info(f"    ✅ {action.action_id} ({outcome.duration_ms:.0f}ms)")
        else:
            logger.error(f"    ❌ {action.action_id}: {outcome.error}")

        return ActionResult(
            action=action,
            phase=phase,
            task_id=task_id,
            result=outcome,
            started_at=started_at,
            completed_at=utc_now(),
            error_type=error_type,
        )

    @staticmethod
    def _coerce_result(returned: Any, executor: BaseExecutor) -> ExecutionResult:
        if isinstance(returned, ExecutionResult):
            return returned
        logger.debug(f"Executor {executor.name} returned {type(returned).__name__}; wrapping as success")
        return ExecutionResult(success=True, data=returned)

    # ==================== Post-processing ====================

    @staticmethod
    async def _collect_findings(plugins: Sequence[Any], steps: List[ActionResult], task: TaskSpec, kind: str) -> List[Finding]:
        findings: List[Finding] = []
        for plugin in plugins:
            try:
                produced = await plugin.analyze(steps, task)
            except Exception as e:
                # Plugin code: a broken analyzer never changes the verdict
                logger.warning(f"⚠️ {kind.capitalize()} {plugin.name} failed: {e}")
                continue
            findings.extend(produced or [])
        return findings

    async def _run_reporters(self, report: RunReport, registry: PluginRegistry) -> None:
        for reporter in registry.reporters():
            try:
                path = await reporter.generate(report, self.config.evidence_dir)
            except Exception as e:
                logger.error(f"⚠️ Reporter {reporter.name} failed: {e}")
                continue
            if path:
                logger.info(f"📄 {reporter.format.upper()} report: {path}")

    @staticmethod
    def _log_summary(report: RunReport) -> None:
        s = report.summary
        logger.info("")
        logger.info("=" * 70)
        logger.info("📊 EXECUTION SUMMARY")
        logger.info("=" * 70)
        logger.info(f"Total:   {s['total']}")
        logger.info(f"Passed:  {s['passed']} ✅")
        logger.info(f"Failed:  {s['failed']} ❌")
        logger.info(f"Skipped: {s['skipped']} ⏭️")
        logger.info(f"Duration: {report.duration_ms / 1000:.2f}s")
        if report.fatal_error:
            logger.error(f"Fatal:   {report.fatal_error}")
        logger.info("=" * 70)


_PHASE_ICONS = {
    Phase.PREREQ: "📋",
    Phase.STEP: "⚡",
    Phase.CLEANUP: "🧹",
}
