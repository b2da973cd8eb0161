# evidence_runner/specification_loader.py
"""
Specification Loader

Loads a versioned JSON test specification, validates it against the JSON
Schema below plus the semantic rules a schema cannot express, substitutes
${VAR} placeholders and returns a frozen in-memory representation.

Any problem here raises SchemaValidationError; the run never starts.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from jsonschema import Draft7Validator

from evidence_runner.types import Phase, SchemaValidationError

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS = ("1.0.0", "2.0.0")

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

# ==================== JSON Schema ====================

_ACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["actionId", "type"],
    "properties": {
        "actionId": {"type": "string", "minLength": 1},
        "type": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "parameters": {"type": "object"},
        "timeout": {"type": "integer", "minimum": 1},
        "continueOnFailure": {"type": "boolean"},
    },
}

_CRITERION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "condition": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "field": {"type": "string", "minLength": 1},
        "operator": {"type": "string"},
        "validator": {"type": "string", "minLength": 1},
    },
    "anyOf": [
        {"required": ["condition"]},
        {"required": ["field", "operator"]},
        {"required": ["validator"]},
    ],
}

SPECIFICATION_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["schemaVersion", "tasks"],
    "properties": {
        "schemaVersion": {"type": "string", "enum": list(SUPPORTED_SCHEMA_VERSIONS)},
        "metadata": {"type": "object"},
        "globalConfiguration": {"type": "object"},
        "tasks": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "required": ["testExecution", "validationCriteria"],
                "properties": {
                    "title": {"type": "string"},
                    "testExecution": {
                        "type": "object",
                        "required": ["steps"],
                        "properties": {
                            "prerequisites": {"type": "array", "items": _ACTION_SCHEMA},
                            "steps": {"type": "array", "items": _ACTION_SCHEMA},
                            "cleanup": {"type": "array", "items": _ACTION_SCHEMA},
                        },
                    },
                    "validationCriteria": {
                        "oneOf": [
                            {"type": "array", "items": _CRITERION_SCHEMA},
                            {
                                "type": "object",
                                "properties": {
                                    "successConditions": {"type": "array", "items": _CRITERION_SCHEMA},
                                    "failureConditions": {"type": "array", "items": _CRITERION_SCHEMA},
                                },
                            },
                        ],
                    },
                },
            },
        },
    },
}

# ==================== Data Models ====================

@dataclass(frozen=True)
class ActionSpec:
    """One action (step) of a task"""
    action_id: str
    type: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    timeout_ms: Optional[int] = None
    continue_on_failure: bool = False

    def descriptor(self) -> Dict[str, Any]:
        return {
            "actionId": self.action_id,
            "type": self.type,
            "description": self.description,
            "parameters": self.parameters,
            "timeout": self.timeout_ms,
            "continueOnFailure": self.continue_on_failure,
        }


@dataclass(frozen=True)
class TaskSpec:
    """Ordered actions plus the criteria that decide the verdict"""
    task_id: str
    title: str
    steps: Tuple[ActionSpec, ...]
    validation_criteria: Tuple[Dict[str, Any], ...]
    prerequisites: Tuple[ActionSpec, ...] = ()
    cleanup: Tuple[ActionSpec, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict)

    def phases(self) -> List[Tuple[Phase, Tuple[ActionSpec, ...]]]:
        return [
            (Phase.PREREQ, self.prerequisites),
            (Phase.STEP, self.steps),
            (Phase.CLEANUP, self.cleanup),
        ]


@dataclass(frozen=True)
class TestSpecification:
    """Loaded specification. Immutable once returned by the loader."""
    schema_version: str
    tasks: Dict[str, TaskSpec]
    global_configuration: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    source_path: Optional[str] = None

    @property
    def title(self) -> str:
        return self.metadata.get("taskTitle") or self.metadata.get("title") or "Unknown"


# ==================== Loader ====================

class SpecificationLoader:
    """Parses and validates test specification documents"""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = environ if environ is not None else dict(os.environ)
        self._validator = Draft7Validator(SPECIFICATION_SCHEMA)

    def load(self, spec_path: Union[str, Path]) -> TestSpecification:
        path = Path(spec_path)
        try:
            raw_text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise SchemaValidationError(f"Cannot read specification {path}: {e}") from e

        try:
            document = json.loads(raw_text)
        except json.JSONDecodeError as e:
            raise SchemaValidationError(f"Specification {path} is not valid JSON: {e}") from e

        spec = self.parse(document, base_dir=path.resolve().parent)
        spec = replace(spec, source_path=str(path))

        logger.info(f"✅ Loaded specification: {spec.title} (schema {spec.schema_version})")
        logger.info(f"📋 Tasks: {', '.join(spec.tasks)}")
        return spec

    def parse(self, document: Any, base_dir: Optional[Path] = None) -> TestSpecification:
        """Validate an already-decoded document and build the frozen model"""
        errors = self.validate(document)
        if errors:
            raise SchemaValidationError(
                f"Specification failed validation with {len(errors)} error(s): {errors[0]}",
                errors=errors,
            )

        document = self._substitute_env_vars(copy.deepcopy(document), base_dir)

        global_config = dict(document.get("globalConfiguration") or {})
        if base_dir is not None:
            global_config.setdefault("workspaceRoot", str(base_dir))

        tasks: Dict[str, TaskSpec] = {}
        for task_id, raw_task in document["tasks"].items():
            tasks[task_id] = self._build_task(task_id, raw_task)

        return TestSpecification(
            schema_version=document["schemaVersion"],
            tasks=tasks,
            global_configuration=global_config,
            metadata=dict(document.get("metadata") or {}),
        )

    def validate(self, document: Any) -> List[str]:
        """Return human-readable problems; empty list means valid"""
        errors = []
        for err in sorted(self._validator.iter_errors(document), key=lambda e: [str(p) for p in e.absolute_path]):
            location = "/".join(str(p) for p in err.absolute_path) or "<root>"
            errors.append(f"{location}: {err.message}")

        if errors or not isinstance(document, dict):
            return errors

        # Semantic checks the schema cannot express
        for task_id, raw_task in document["tasks"].items():
            seen: Dict[str, str] = {}
            execution = raw_task["testExecution"]
            for phase_key in ("prerequisites", "steps", "cleanup"):
                for action in execution.get(phase_key) or []:
                    action_id = action["actionId"]
                    if action_id in seen:
                        errors.append(
                            f"tasks/{task_id}: duplicate actionId '{action_id}' "
                            f"(in {seen[action_id]} and {phase_key})"
                        )
                    seen[action_id] = phase_key
        return errors

    # ==================== Helpers ====================

    @staticmethod
    def _build_action(raw: Dict[str, Any]) -> ActionSpec:
        return ActionSpec(
            action_id=raw["actionId"],
            type=raw["type"],
            description=raw.get("description", ""),
            parameters=dict(raw.get("parameters") or {}),
            timeout_ms=raw.get("timeout"),
            continue_on_failure=bool(raw.get("continueOnFailure", False)),
        )

    def _build_task(self, task_id: str, raw: Dict[str, Any]) -> TaskSpec:
        execution = raw["testExecution"]
        return TaskSpec(
            task_id=task_id,
            title=raw.get("title", task_id),
            prerequisites=tuple(self._build_action(a) for a in execution.get("prerequisites") or []),
            steps=tuple(self._build_action(a) for a in execution["steps"]),
            cleanup=tuple(self._build_action(a) for a in execution.get("cleanup") or []),
            validation_criteria=tuple(normalize_criteria(raw["validationCriteria"])),
            raw=raw,
        )

    def _substitute_env_vars(self, document: Any, base_dir: Optional[Path]) -> Any:
        """Replace ${VAR} in every string; unknown variables are left untouched"""
        env = dict(self._environ)
        if base_dir is not None:
            env.setdefault("WORKSPACE_ROOT", str(base_dir))

        def substitute(value: Any) -> Any:
            if isinstance(value, str):
                return _ENV_PATTERN.sub(lambda m: env.get(m.group(1), m.group(0)), value)
            if isinstance(value, list):
                return [substitute(v) for v in value]
            if isinstance(value, dict):
                return {k: substitute(v) for k, v in value.items()}
            return value

        return substitute(document)


def normalize_criteria(raw: Union[List[Dict[str, Any]], Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Flatten both accepted criteria layouts into one list.

    failureConditions are kept with negate=True: the criterion passes only
    when the condition does NOT hold.
    """
    if isinstance(raw, list):
        return [dict(c) for c in raw]

    criteria = [dict(c) for c in raw.get("successConditions") or []]
    for c in raw.get("failureConditions") or []:
        criteria.append({**c, "negate": True})
    return criteria
