# evidence_runner/executors/mcp_browser.py
"""
MCP Browser Executor

Drives a browser-automation server (Chrome DevTools MCP by default) that
speaks JSON-RPC 2.0 over stdio. One subprocess per run, started lazily on
the first MCP_BROWSER_COMMAND and stopped in cleanup().

Handshake:
    spawn -> startup grace -> initialize (request) -> notifications/initialized

Each action becomes a `tools/call` request:
    {"action": "navigate_page", "url": "..."}
      -> tools/call {"name": "navigate_page", "arguments": {"url": "..."}}

Action Type: MCP_BROWSER_COMMAND
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from evidence_runner import __version__
from evidence_runner.jsonrpc import JsonRpcProcessPeer
from evidence_runner.plugins import BaseExecutor
from evidence_runner.types import ExecutionResult, ExecutorExecutionError, MCPProtocolError, utc_now

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"


class ProtocolState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    STARTING = "STARTING"
    INITIALIZED = "INITIALIZED"
    READY = "READY"


class McpBrowserExecutor(BaseExecutor):
    name = "mcp-browser"
    version = "1.0.0"

    def __init__(
        self,
        command: Optional[List[str]] = None,
        startup_grace_s: Optional[float] = None,
        request_timeout_s: Optional[float] = None,
    ) -> None:
        super().__init__()
        self._command = command
        self._startup_grace_s = startup_grace_s
        self._request_timeout_s = request_timeout_s

        self.state = ProtocolState.NOT_STARTED
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}
        self.peer: Optional[JsonRpcProcessPeer] = None
        self._connect_lock: Optional[asyncio.Lock] = None

    def action_types(self) -> List[str]:
        return ["MCP_BROWSER_COMMAND"]

    # ==================== Settings ====================

    def _setting(self, explicit: Any, attr: str, default: Any) -> Any:
        if explicit is not None:
            return explicit
        if self.context is not None:
            return getattr(self.context.settings, attr)
        return default

    @property
    def command(self) -> List[str]:
        return list(self._setting(self._command, "mcp_command", ["npx", "-y", "chrome-devtools-mcp@latest"]))

    @property
    def startup_grace_s(self) -> float:
        return float(self._setting(self._startup_grace_s, "mcp_startup_grace_s", 2.0))

    @property
    def request_timeout_s(self) -> float:
        return float(self._setting(self._request_timeout_s, "mcp_request_timeout_s", 30.0))

    # ==================== Execution ====================

    async def execute(self, parameters: Dict[str, Any], global_config: Dict[str, Any]) -> ExecutionResult:
        self.validate_parameters(parameters, ["action"])
        action = str(parameters["action"])
        arguments = {k: v for k, v in parameters.items() if k != "action"}

        await self.connect(global_config)
        assert self.peer is not None

        logger.info(f"🌐 MCP tools/call {action}")
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await self.peer.request("tools/call", {"name": action, "arguments": arguments})
        duration_ms = (loop.time() - started) * 1000

        data = {
            "action": action,
            "parameters": arguments,
            "result": result,
            "timestamp": utc_now(),
        }
        if isinstance(result, dict) and result.get("isError"):
            raise ExecutorExecutionError(f"MCP tool '{action}' reported an error: {_tool_text(result)}", data=data)
        return ExecutionResult(success=True, data=data, duration_ms=duration_ms)

    async def connect(self, global_config: Optional[Dict[str, Any]] = None) -> None:
        """Bring the peer to READY; no-op when it already is"""
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()

        async with self._connect_lock:
            if self.state == ProtocolState.READY and self.peer is not None and self.peer.running:
                return
            if self.peer is not None:
                logger.warning("⚠️ MCP server is gone; restarting")
                await self._reset()

            self.state = ProtocolState.STARTING
            cwd = (global_config or {}).get("workspaceRoot")
            self.peer = JsonRpcProcessPeer(
                self.command,
                name="mcp-browser",
                request_timeout_s=self.request_timeout_s,
                grace_s=self.context.settings.process_grace_s if self.context else 3.0,
                cwd=str(cwd) if cwd else None,
            )
            try:
                process = await self.peer.start()
                if self.context is not None:
                    self.context.processes.add(process)

                await asyncio.sleep(self.startup_grace_s)
                if not process.running:
                    stderr = "\n".join(process.stderr_tail)
                    raise MCPProtocolError(
                        f"MCP server exited during startup (code {process.returncode}): {stderr[-500:]}"
                    )

                init = await self.peer.request("initialize", {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "evidence-runner", "version": __version__},
                })
                init = init or {}
                self.server_info = init.get("serverInfo") or {}
                self.server_capabilities = init.get("capabilities") or {}
                self.state = ProtocolState.INITIALIZED

                await self.peer.notify("notifications/initialized")
                self.state = ProtocolState.READY
                logger.info(
                    f"✅ MCP server ready: {self.server_info.get('name', 'unknown')} "
                    f"{self.server_info.get('version', '')}".rstrip()
                )
            except BaseException:
                await self._reset()
                raise

    async def _reset(self) -> None:
        peer, self.peer = self.peer, None
        self.state = ProtocolState.NOT_STARTED
        if peer is not None:
            await peer.close()

    async def cleanup(self) -> None:
        if self.peer is not None:
            logger.info("🧹 Closing MCP server connection...")
        await self._reset()


def _tool_text(result: Dict[str, Any]) -> str:
    """First text block of an MCP tool result"""
    for block in result.get("content") or []:
        if isinstance(block, dict) and block.get("type") == "text":
            return str(block.get("text", ""))[:500]
    return "no details"
