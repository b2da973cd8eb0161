# evidence_runner/executors/file_validation.py
"""
File Validation Executor

Checks existence, size bounds, substring/regex content and JSON
well-formedness of a path. NOT_EXISTS is the only validation type for which
a missing file is success.

Action Type: FILE_VALIDATION
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from evidence_runner.plugins import BaseExecutor
from evidence_runner.types import ExecutionResult, ExecutorExecutionError, utc_now

logger = logging.getLogger(__name__)

VALIDATION_TYPES = ("EXISTS", "NOT_EXISTS", "CONTENT_MATCH", "CONTENT_PATTERN", "JSON_VALID")


class FileValidationExecutor(BaseExecutor):
    name = "file-validation"
    version = "1.0.0"

    def action_types(self) -> List[str]:
        return ["FILE_VALIDATION"]

    async def execute(self, parameters: Dict[str, Any], global_config: Dict[str, Any]) -> ExecutionResult:
        self.validate_parameters(parameters, ["filePath", "validationType"])

        validation_type = str(parameters["validationType"]).upper()
        if validation_type not in VALIDATION_TYPES:
            raise ExecutorExecutionError(
                f"Unknown validationType '{validation_type}'. Expected one of: {', '.join(VALIDATION_TYPES)}"
            )
        encoding = parameters.get("encoding") or "utf-8"

        path = Path(str(parameters["filePath"]))
        if not path.is_absolute():
            path = Path(global_config.get("workspaceRoot") or ".") / path

        result: Dict[str, Any] = {
            "filePath": str(path),
            "validationType": validation_type,
            "exists": path.exists(),
            "timestamp": utc_now(),
        }
        logger.info(f"📄 {validation_type} {path}")

        if not result["exists"]:
            if validation_type == "NOT_EXISTS":
                return ExecutionResult(success=True, data=result)
            raise ExecutorExecutionError(f"File not found: {path}", data=result)

        if validation_type == "NOT_EXISTS":
            raise ExecutorExecutionError(f"File exists but was expected to be absent: {path}", data=result)

        stats = path.stat()
        result["size"] = stats.st_size
        result["modified"] = datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc).isoformat().replace("+00:00", "Z")
        result["isDirectory"] = path.is_dir()

        min_size = parameters.get("minSize")
        max_size = parameters.get("maxSize")
        if min_size is not None and stats.st_size < int(min_size):
            raise ExecutorExecutionError(
                f"File size {stats.st_size} bytes is less than minimum {min_size} bytes", data=result
            )
        if max_size is not None and stats.st_size > int(max_size):
            raise ExecutorExecutionError(
                f"File size {stats.st_size} bytes exceeds maximum {max_size} bytes", data=result
            )

        if validation_type in ("CONTENT_MATCH", "CONTENT_PATTERN", "JSON_VALID"):
            if result["isDirectory"]:
                raise ExecutorExecutionError("Cannot validate content of a directory", data=result)
            try:
                content = path.read_text(encoding=encoding)
            except (OSError, UnicodeDecodeError, LookupError) as e:
                raise ExecutorExecutionError(f"Cannot read {path}: {e}", data=result) from e
            result["contentLength"] = len(content)

            if validation_type == "CONTENT_MATCH":
                expected = parameters.get("expectedContent")
                if expected is None:
                    raise ExecutorExecutionError("CONTENT_MATCH requires expectedContent", data=result)
                result["contentMatches"] = str(expected) in content
                if not result["contentMatches"]:
                    raise ExecutorExecutionError("File content does not match expected string", data=result)

            elif validation_type == "CONTENT_PATTERN":
                pattern = parameters.get("contentPattern")
                if not pattern:
                    raise ExecutorExecutionError("CONTENT_PATTERN requires contentPattern", data=result)
                try:
                    regex = re.compile(pattern)
                except re.error as e:
                    raise ExecutorExecutionError(f"Invalid contentPattern: {e}", data=result) from e
                result["patternMatches"] = regex.search(content) is not None
                if not result["patternMatches"]:
                    raise ExecutorExecutionError(f"File content does not match pattern: {pattern}", data=result)

            else:
                try:
                    result["json"] = json.loads(content)
                    result["isValidJSON"] = True
                except json.JSONDecodeError as e:
                    result["isValidJSON"] = False
                    raise ExecutorExecutionError(f"Invalid JSON: {e}", data=result) from e

        return ExecutionResult(success=True, data=result)
