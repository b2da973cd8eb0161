# evidence_runner/reporters/junit_reporter.py
"""
JUnit XML Reporter for CI systems.

One <testsuite> per task, one <testcase> per executed action, plus a
"validation" testcase carrying the failed criteria.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from xml.etree import ElementTree as ET

from evidence_runner.plugins import BaseReporter
from evidence_runner.types import RunReport, TaskStatus

logger = logging.getLogger(__name__)


class JUnitReporter(BaseReporter):
    name = "junit-reporter"
    format = "junit"

    async def generate(self, report: RunReport, evidence_dir: str) -> Optional[str]:
        path = Path(evidence_dir) / "execution-report.junit.xml"
        xml = self.render(report)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(xml, encoding="utf-8")
        tmp.replace(path)
        return str(path)

    @staticmethod
    def render(report: RunReport) -> str:
        summary = report.summary
        root = ET.Element(
            "testsuites",
            name=report.run_id,
            tests=str(summary["total"]),
            failures=str(summary["failed"]),
            skipped=str(summary["skipped"]),
            time=f"{report.duration_ms / 1000:.3f}",
        )

        for task in report.tasks.values():
            suite = ET.SubElement(
                root, "testsuite",
                name=task.task_id,
                tests=str(len(task.steps) + 1),
                failures=str(sum(1 for s in task.steps if not s.success)),
                time=f"{task.duration_ms / 1000:.3f}",
            )

            if task.status == TaskStatus.SKIPPED:
                case = ET.SubElement(suite, "testcase", classname=task.task_id, name=task.title or task.task_id)
                ET.SubElement(case, "skipped", message="Task not reached")
                continue

            for step in task.steps:
                case = ET.SubElement(
                    suite, "testcase",
                    classname=f"{task.task_id}.{step.phase.value}",
                    name=step.action_id,
                    time=f"{step.duration_ms / 1000:.3f}",
                )
                if not step.success:
                    failure = ET.SubElement(case, "failure", message=(step.error or "failed")[:500], type=step.error_type or "Error")
                    failure.text = step.error or ""
                if step.evidence_file:
                    ET.SubElement(case, "system-out").text = f"evidence: {step.evidence_file}"

            validation_case = ET.SubElement(suite, "testcase", classname=task.task_id, name="validation")
            if task.status == TaskStatus.FAILED:
                failure = ET.SubElement(validation_case, "failure", message=(task.failure_reason or "Task failed")[:500])
                if task.validation:
                    failure.text = "\n".join(
                        f"{e.description}: {e.error or 'condition false'}" for e in task.validation.failed_criteria
                    )

        return ET.tostring(root, encoding="unicode", method="xml")
