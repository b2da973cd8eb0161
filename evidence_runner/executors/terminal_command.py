# evidence_runner/executors/terminal_command.py
"""
Terminal Command Executor

Runs a shell command, streaming stdout/stderr line by line to the console
while capturing both for the evidence record.

Action Type: TERMINAL_COMMAND

Parameters:
    command            shell command line (required)
    workingDirectory   relative paths resolve against workspaceRoot
    environment        overlay on top of os.environ and globalConfig.environment
    expectedExitCodes  default [0]
    shell              interpreter; default /bin/sh on POSIX, powershell on Windows
    background         spawn and return immediately (dev servers etc.)
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from evidence_runner.plugins import BaseExecutor
from evidence_runner.processes import ManagedProcess, ProcessGroup, iter_lines, new_session_kwargs
from evidence_runner.types import ExecutionResult, ExecutorExecutionError, utc_now

logger = logging.getLogger(__name__)


def shell_argv(shell: Union[str, List[str], None], command: str) -> List[str]:
    """Interpreter prefix + command for create_subprocess_exec"""
    if isinstance(shell, list):
        return [*shell, command]
    if not shell:
        shell = "powershell" if os.name == "nt" else "/bin/sh"

    name = Path(shell).name.lower()
    if name.startswith(("powershell", "pwsh")):
        return [shell, "-Command", command]
    if name in ("cmd", "cmd.exe"):
        return [shell, "/c", command]
    return [shell, "-c", command]


class TerminalCommandExecutor(BaseExecutor):
    name = "terminal-command"
    version = "1.0.0"

    def __init__(self) -> None:
        super().__init__()
        # Used only when no run context is bound (standalone use)
        self._own_processes = ProcessGroup()
        self._background: List[ManagedProcess] = []

    def action_types(self) -> List[str]:
        return ["TERMINAL_COMMAND"]

    async def execute(self, parameters: Dict[str, Any], global_config: Dict[str, Any]) -> ExecutionResult:
        self.validate_parameters(parameters, ["command"])

        command = str(parameters["command"])
        expected = [int(c) for c in parameters.get("expectedExitCodes") or [0]]
        cwd = self._working_directory(parameters.get("workingDirectory"), global_config)
        env = {
            **os.environ,
            **{k: str(v) for k, v in (global_config.get("environment") or {}).items()},
            **{k: str(v) for k, v in (parameters.get("environment") or {}).items()},
        }
        argv = shell_argv(parameters.get("shell"), command)

        if parameters.get("background"):
            return await self._execute_background(command, argv, cwd, env)

        logger.info(f"💻 $ {command}")
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **new_session_kwargs(),
            )
        except OSError as e:
            raise ExecutorExecutionError(
                f"Failed to start command: {e}",
                data={"command": command, "workingDirectory": cwd},
            ) from e

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        try:
            await asyncio.gather(
                self._stream(proc.stdout, stdout_lines, "│"),
                self._stream(proc.stderr, stderr_lines, "┆"),
            )
            exit_code = await proc.wait()
        finally:
            if proc.returncode is None:
                # Cancelled (action timeout): never leave the child behind
                await ManagedProcess(proc, command[:40], grace_s=self._grace_s()).terminate()

        data = {
            "command": command,
            "workingDirectory": cwd,
            "exitCode": exit_code,
            "stdout": "".join(stdout_lines),
            "stderr": "".join(stderr_lines),
            "expectedExitCodes": expected,
            "timestamp": utc_now(),
        }
        duration_ms = (loop.time() - started) * 1000

        if exit_code not in expected:
            raise ExecutorExecutionError(
                f"Command exited with code {exit_code}. Expected: {', '.join(str(c) for c in expected)}",
                data=data,
            )
        return ExecutionResult(success=True, data=data, duration_ms=duration_ms)

    async def _execute_background(
        self, command: str, argv: List[str], cwd: str, env: Dict[str, str]
    ) -> ExecutionResult:
        logger.info(f"🚀 Starting background process: {command}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **new_session_kwargs(),
            )
        except OSError as e:
            raise ExecutorExecutionError(
                f"Failed to start background command: {e}",
                data={"command": command, "workingDirectory": cwd, "background": True},
            ) from e

        managed = ManagedProcess(proc, command[:40], grace_s=self._grace_s())
        managed.drain_output()
        self._background.append(managed)
        group = self.context.processes if self.context is not None else self._own_processes
        group.add(managed)

        return ExecutionResult(
            success=True,
            data={
                "command": command,
                "workingDirectory": cwd,
                "background": True,
                "pid": managed.pid,
                "status": "started",
                "timestamp": utc_now(),
            },
        )

    async def cleanup(self) -> None:
        running = [p for p in self._background if p.running]
        if running:
            logger.info(f"🧹 Stopping {len(running)} background process(es)...")
        for process in running:
            await process.terminate()
        self._background = []
        await self._own_processes.close()

    # ==================== Helpers ====================

    @staticmethod
    async def _stream(stream: Optional[asyncio.StreamReader], sink: List[str], marker: str) -> None:
        if stream is None:
            return
        async for line in iter_lines(stream):
            text = line.decode("utf-8", errors="replace")
            sink.append(text)
            logger.info(f"  {marker} {text.rstrip()}")

    @staticmethod
    def _working_directory(requested: Optional[str], global_config: Dict[str, Any]) -> str:
        root = global_config.get("workspaceRoot") or os.getcwd()
        if not requested:
            return str(root)
        path = Path(requested)
        return str(path if path.is_absolute() else Path(root) / path)

    def _grace_s(self) -> float:
        if self.context is not None:
            return self.context.settings.process_grace_s
        return 3.0
