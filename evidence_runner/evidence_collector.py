# evidence_runner/evidence_collector.py
"""
Evidence Collector

Layout:
    <evidence_dir>/<taskId>/STEP-<n>.json       one per executed action, n in execution order
    <evidence_dir>/<taskId>/validations.json    criterion-by-criterion evaluation
    <evidence_dir>/<taskId>/task-summary.json   verdict, findings, step index
    <evidence_dir>/execution-report.json        whole run (latest)
    <evidence_dir>/execution-report-<ts>.json   whole run (kept)

Action records and task summaries carry an `integrity` field: SHA-256 over
the canonical JSON (sorted keys, compact separators) of every other field.
Action records are created with exclusive-create and never rewritten;
evidence left by an earlier run is moved under archive/ before a task
starts writing.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import platform
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from evidence_runner import __version__
from evidence_runner.types import ActionResult, RunReport, TaskResult, ValidationResult, utc_now

logger = logging.getLogger(__name__)

ARCHIVE_DIR = "archive"
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_integrity(record: Dict[str, Any]) -> str:
    body = {k: v for k, v in record.items() if k != "integrity"}
    return "sha256:" + hashlib.sha256(canonical_json(body).encode("utf-8")).hexdigest()


def verify_evidence(path: Union[str, Path]) -> bool:
    """True when the file's integrity digest matches its content"""
    record = json.loads(Path(path).read_text(encoding="utf-8"))
    return isinstance(record, dict) and record.get("integrity") == compute_integrity(record)


def _timestamp_slug() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


class EvidenceCollector:
    """Writes per-action, per-task and per-run artifacts for one run"""

    def __init__(
        self,
        evidence_dir: Union[str, Path] = "evidence",
        run_id: Optional[str] = None,
        tool_name: str = "evidence-runner",
        tool_version: Optional[str] = None,
    ):
        self.evidence_dir = Path(evidence_dir)
        self.run_id = run_id
        self.tool_name = tool_name
        self.tool_version = tool_version or __version__
        self._sequence: Dict[str, int] = {}
        self._prepared: set = set()
        # task id -> directory name, and the reverse (case-folded) for this run
        self._dir_names: Dict[str, str] = {}
        self._claimed: Dict[str, str] = {ARCHIVE_DIR: ""}

    # ==================== Paths ====================

    @staticmethod
    def safe_name(task_id: str) -> str:
        return _UNSAFE_PATH_CHARS.sub("_", task_id).strip("._") or "task"

    def task_dir(self, task_id: str) -> Path:
        """
        Directory for a task. Ids that sanitize to the same name ("T 1" and
        "T_1"), or differ only in case, get a short digest suffix so no two
        tasks of one run ever share a directory.
        """
        name = self._dir_names.get(task_id)
        if name is None:
            name = self.safe_name(task_id)
            if self._claimed.get(name.lower(), task_id) != task_id:
                digest = hashlib.sha256(task_id.encode("utf-8")).hexdigest()[:8]
                name = f"{name}-{digest}"
                logger.warning(f"⚠️ Task id {task_id!r} collides with another task directory, using {name}")
            self._claimed[name.lower()] = task_id
            self._dir_names[task_id] = name
        return self.evidence_dir / name

    def prepare_task(self, task_id: str) -> Path:
        """Create the task directory, archiving evidence from an earlier run"""
        task_dir = self.task_dir(task_id)
        if task_id in self._prepared:
            return task_dir

        if task_dir.exists() and any(task_dir.iterdir()):
            archive = self.evidence_dir / ARCHIVE_DIR / _timestamp_slug() / task_dir.name
            archive.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(task_dir), str(archive))
            logger.info(f"🗄️ Archived previous evidence for {task_id} → {archive}")

        task_dir.mkdir(parents=True, exist_ok=True)
        self._prepared.add(task_id)
        self._sequence[task_id] = 0
        return task_dir

    # ==================== Records ====================

    def metadata(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "pid": os.getpid(),
            "platform": platform.platform(),
            "hostname": platform.node(),
            "pythonVersion": platform.python_version(),
            "tool": self.tool_name,
            "toolVersion": self.tool_version,
        }

    def record_action(self, action_result: ActionResult) -> Path:
        """Persist one executed action; sets action_result.evidence_file"""
        task_id = action_result.task_id
        task_dir = self.prepare_task(task_id)
        self._sequence[task_id] += 1
        sequence = self._sequence[task_id]

        path = task_dir / f"STEP-{sequence}.json"
        action_result.evidence_file = str(path)

        record: Dict[str, Any] = {
            "actionId": action_result.action_id,
            "taskId": task_id,
            "phase": action_result.phase.value,
            "sequence": sequence,
            "timestamp": utc_now(),
            "startedAt": action_result.started_at,
            "completedAt": action_result.completed_at,
            "action": action_result.action.descriptor(),
            "result": action_result.result.to_dict(),
            "errorType": action_result.error_type,
            "metadata": self.metadata(),
        }
        record["integrity"] = compute_integrity(record)

        # "x": an existing file means an id collision, never an overwrite
        with path.open("x", encoding="utf-8") as f:
            f.write(json.dumps(record, indent=2, ensure_ascii=False, default=str))

        logger.info(f"📝 Evidence saved: {path}")
        return path

    def write_validations(self, task_id: str, validation: ValidationResult) -> Path:
        path = self.prepare_task(task_id) / "validations.json"
        self._atomic_json_dump(path, {
            "taskId": task_id,
            "timestamp": utc_now(),
            **validation.to_dict(),
        })
        return path

    def write_task_summary(self, task_result: TaskResult) -> Path:
        path = self.prepare_task(task_result.task_id) / "task-summary.json"
        summary: Dict[str, Any] = {
            **task_result.to_dict(),
            "evidenceFiles": [s.evidence_file for s in task_result.steps if s.evidence_file],
            "generatedAt": utc_now(),
            "metadata": self.metadata(),
        }
        summary["integrity"] = compute_integrity(summary)
        self._atomic_json_dump(path, summary)
        logger.info(f"📄 Task summary saved: {path}")
        return path

    def write_report(self, report: RunReport) -> Path:
        """Latest report plus a timestamped copy that later runs never touch"""
        self.evidence_dir.mkdir(parents=True, exist_ok=True)
        data: Dict[str, Any] = {
            **report.to_dict(),
            "evidenceDir": str(self.evidence_dir),
            "metadata": self.metadata(),
        }
        data["integrity"] = compute_integrity(data)

        latest = self.evidence_dir / "execution-report.json"
        self._atomic_json_dump(latest, data)

        stamped = self.evidence_dir / f"execution-report-{_timestamp_slug()}.json"
        with stamped.open("x", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2, ensure_ascii=False, default=str))

        logger.info(f"📊 Execution report saved: {latest}")
        return latest

    # ==================== I/O ====================

    @staticmethod
    def _atomic_json_dump(path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        tmp.replace(path)
