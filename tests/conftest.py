"""Shared fixtures for evidence-runner tests."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from evidence_runner.config import Settings
from evidence_runner.engine import EngineConfig, ExecutionEngine
from evidence_runner.plugin_registry import PluginRegistry
from evidence_runner.specification_loader import SpecificationLoader

FIXTURES_DIR = Path(__file__).parent / "fixtures"
ECHO_SERVER = FIXTURES_DIR / "mcp_echo_server.py"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")


def make_spec(tasks: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    return {"schemaVersion": "2.0.0", "metadata": {"title": "test run"}, "tasks": tasks, **extra}


def task(steps: List[Dict[str, Any]], criteria: Optional[List[Dict[str, Any]]] = None, **extra: Any) -> Dict[str, Any]:
    return {
        "title": extra.pop("title", "a task"),
        "testExecution": {"steps": steps, **extra},
        "validationCriteria": criteria if criteria is not None else [],
    }


def terminal(action_id: str, command: str, **params: Any) -> Dict[str, Any]:
    return {"actionId": action_id, "type": "TERMINAL_COMMAND", "parameters": {"command": command, **params}}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        mcp_startup_grace_s=0.0,
        mcp_request_timeout_s=5.0,
        process_grace_s=1.0,
        _env_file=None,
    )


@pytest.fixture
def registry() -> PluginRegistry:
    return PluginRegistry().load_all()


class EngineHarness:
    """Writes a spec to tmp, runs it through a real engine, exposes the evidence"""

    def __init__(self, tmp_path: Path, settings: Settings, registry: PluginRegistry):
        self.tmp = tmp_path
        self.evidence_dir = tmp_path / "evidence"
        self.settings = settings
        self.registry = registry

    def engine(self, **overrides: Any) -> ExecutionEngine:
        config = EngineConfig.from_settings(self.settings, evidence_dir=str(self.evidence_dir), **overrides)
        return ExecutionEngine(config=config, settings=self.settings, registry=self.registry)

    def write(self, document: Dict[str, Any], name: str = "spec.json") -> Path:
        path = self.tmp / name
        path.write_text(json.dumps(document), encoding="utf-8")
        return path

    def run(self, document: Dict[str, Any], **overrides: Any):
        import asyncio

        path = self.write(document)
        return asyncio.run(self.engine(**overrides).run(path))

    def step_files(self, task_id: str) -> List[Path]:
        return sorted((self.evidence_dir / task_id).glob("STEP-*.json"))

    def read(self, path: Path) -> Dict[str, Any]:
        return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def harness(tmp_path: Path, settings: Settings, registry: PluginRegistry) -> EngineHarness:
    return EngineHarness(tmp_path, settings, registry)


@pytest.fixture
def loader() -> SpecificationLoader:
    return SpecificationLoader(environ={"API_HOST": "localhost:8080"})
