# evidence_runner/validators/json_schema_validator.py
"""
JSON Schema validator.

Criterion:
    {
        "validator": "json-schema",
        "field": "STEP.2.body",
        "schema": {...}            # or "schemaFile": "schemas/user.json"
        "description": "..."
    }
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict

from jsonschema import SchemaError
from jsonschema.validators import validator_for

from evidence_runner.plugins import BaseValidator
from evidence_runner.types import CriterionEvaluation, ValidationCriterionError
from evidence_runner.validation_engine import resolve_field

logger = logging.getLogger(__name__)


class JsonSchemaValidator(BaseValidator):
    name = "json-schema"

    async def validate(self, criterion: Dict[str, Any], context: Dict[str, Dict[str, Any]]) -> CriterionEvaluation:
        field = criterion.get("field")
        if not field:
            raise ValidationCriterionError("json-schema criterion requires 'field'")

        schema = self._load_schema(criterion)
        instance = resolve_field(str(field), context)

        try:
            cls = validator_for(schema)
            cls.check_schema(schema)
        except SchemaError as e:
            raise ValidationCriterionError(f"Invalid JSON schema: {e.message}") from e

        errors = sorted(cls(schema).iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path])
        messages = [f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}" for e in errors]

        return CriterionEvaluation(
            description=criterion.get("description") or f"{field} matches JSON schema",
            passed=not errors,
            condition=f"validator:{self.name} {field}",
            actual=messages[:10] if messages else None,
        )

    @staticmethod
    def _load_schema(criterion: Dict[str, Any]) -> Dict[str, Any]:
        if isinstance(criterion.get("schema"), dict):
            return criterion["schema"]
        schema_file = criterion.get("schemaFile")
        if not schema_file:
            raise ValidationCriterionError("json-schema criterion requires 'schema' or 'schemaFile'")
        try:
            return json.loads(Path(schema_file).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ValidationCriterionError(f"Cannot load schema {schema_file}: {e}") from e
