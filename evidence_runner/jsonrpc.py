# evidence_runner/jsonrpc.py
"""
Line-delimited JSON-RPC 2.0 over a subprocess's stdio.

Three layers, each usable on its own:

- LineFramer        bytes in, complete newline-terminated frames out
- PendingRequests   id -> future correlation table with per-request deadlines
- JsonRpcProcessPeer  owns one subprocess and wires the two together

Guarantee of PendingRequests: every id is removed from the table exactly
once, either by its response or by its deadline. A response that arrives
after the deadline finds no entry and is discarded; ids are never reused.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from evidence_runner.processes import ManagedProcess, iter_lines, new_session_kwargs
from evidence_runner.types import MCPProtocolError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601

NotificationHandler = Callable[[str, Any], Union[None, Awaitable[None]]]


# ==================== Framing ====================

class LineFramer:
    """Accumulates raw chunks and yields complete delimiter-terminated frames"""

    def __init__(self, delimiter: bytes = b"\n", max_buffer_bytes: int = 16 * 1024 * 1024):
        self.delimiter = delimiter
        self.max_buffer_bytes = max_buffer_bytes
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[bytes]:
        self._buffer.extend(chunk)
        frames: List[bytes] = []
        while True:
            idx = self._buffer.find(self.delimiter)
            if idx == -1:
                break
            frames.append(bytes(self._buffer[:idx]))
            del self._buffer[: idx + len(self.delimiter)]

        if len(self._buffer) > self.max_buffer_bytes:
            size = len(self._buffer)
            self._buffer.clear()
            raise MCPProtocolError(f"Frame exceeds {self.max_buffer_bytes} bytes without delimiter ({size} buffered)")
        return frames

    def flush(self) -> bytes:
        """Return and clear an unterminated trailing frame"""
        rest = bytes(self._buffer)
        self._buffer.clear()
        return rest


def encode_message(message: Dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


# ==================== Correlation ====================

@dataclass
class _Pending:
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle
    timeout_s: float


class PendingRequests:
    """id -> future table; at most one resolution per id"""

    def __init__(self) -> None:
        self._last_id = 0
        self._entries: Dict[int, _Pending] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    def register(self, request_id: int, method: str, timeout_s: float) -> asyncio.Future:
        if request_id in self._entries:
            raise MCPProtocolError(f"Request id {request_id} is already pending")

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(timeout_s, self._expire, request_id)
        self._entries[request_id] = _Pending(method=method, future=future, timer=timer, timeout_s=timeout_s)

        # A caller that stops waiting (cancellation) releases its slot too
        future.add_done_callback(lambda f, rid=request_id: self._on_done(rid, f))
        return future

    def resolve(self, request_id: Any, result: Any) -> bool:
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def reject(self, request_id: Any, error: BaseException) -> bool:
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def reject_all(self, error_factory: Callable[[int, str], BaseException]) -> int:
        count = 0
        for request_id in list(self._entries):
            entry = self._entries.get(request_id)
            if entry is not None and self.reject(request_id, error_factory(request_id, entry.method)):
                count += 1
        return count

    def _take(self, request_id: Any) -> Optional[_Pending]:
        entry = self._entries.pop(request_id, None)
        if entry is not None:
            entry.timer.cancel()
        return entry

    def _expire(self, request_id: int) -> None:
        entry = self._entries.get(request_id)
        if entry is None:
            return
        self.reject(
            request_id,
            MCPProtocolError(f"Request {request_id} ({entry.method}) timeout after {entry.timeout_s:g}s"),
        )

    def _on_done(self, request_id: int, future: asyncio.Future) -> None:
        entry = self._entries.get(request_id)
        if future.cancelled() and entry is not None and entry.future is future:
            self._take(request_id)


# ==================== Subprocess peer ====================

class JsonRpcProcessPeer:
    """
    One subprocess speaking line-delimited JSON-RPC on stdin/stdout.

    Single writer: only the owner issues requests. Responses are
    demultiplexed by id; messages without an id are notifications and go to
    the registered handlers.
    """

    def __init__(
        self,
        command: List[str],
        name: str = "jsonrpc-peer",
        request_timeout_s: float = 30.0,
        grace_s: float = 3.0,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        if not command:
            raise ValueError("JSON-RPC peer command must not be empty")
        self.command = list(command)
        self.name = name
        self.request_timeout_s = request_timeout_s
        self.grace_s = grace_s
        self.env = env
        self.cwd = cwd

        self.pending = PendingRequests()
        self.framer = LineFramer()
        self.process: Optional[ManagedProcess] = None
        self.notifications: List[Dict[str, Any]] = []
        self._handlers: List[NotificationHandler] = []
        self._reader: Optional[asyncio.Task] = None
        self._stderr_reader: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.running and not self._closed

    def on_notification(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    async def start(self) -> ManagedProcess:
        if self.process is not None:
            return self.process

        logger.info(f"🌐 Starting {self.name}: {' '.join(self.command)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
                **new_session_kwargs(),
            )
        except OSError as e:
            raise MCPProtocolError(f"Failed to start {self.name}: {e}") from e

        self.process = ManagedProcess(proc, self.name, grace_s=self.grace_s)
        self._reader = asyncio.create_task(self._read_stdout())
        self._stderr_reader = asyncio.create_task(self._read_stderr())
        return self.process

    async def request(self, method: str, params: Any = None, timeout_s: Optional[float] = None) -> Any:
        if self._closed or self.process is None or not self.process.running:
            raise MCPProtocolError(f"{self.name}: connection closed")

        request_id = self.pending.next_id()
        future = self.pending.register(request_id, method, timeout_s or self.request_timeout_s)

        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await self._send(message)
        except MCPProtocolError as e:
            self.pending.reject(request_id, e)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            self.pending.reject(request_id, MCPProtocolError(f"{self.name}: write failed: {e}"))

        return await future

    async def notify(self, method: str, params: Any = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._send(message)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            raise MCPProtocolError(f"{self.name}: write failed: {e}") from e

    async def _send(self, message: Dict[str, Any]) -> None:
        if self.process is None or self.process.proc.stdin is None:
            raise MCPProtocolError(f"{self.name}: connection closed")
        logger.debug(f"➡️ {self.name}: {message}")
        stdin = self.process.proc.stdin
        stdin.write(encode_message(message))
        await stdin.drain()

    # ==================== Inbound ====================

    async def _read_stdout(self) -> None:
        assert self.process is not None and self.process.proc.stdout is not None
        stdout = self.process.proc.stdout
        try:
            while True:
                chunk = await stdout.read(65536)
                if not chunk:
                    break
                for frame in self.framer.feed(chunk):
                    await self.handle_frame(frame)
        except MCPProtocolError as e:
            logger.error(f"❌ {self.name}: {e}")
        finally:
            self.pending.reject_all(
                lambda rid, method: MCPProtocolError(f"{self.name}: connection closed before response to {method} (id {rid})")
            )

    async def _read_stderr(self) -> None:
        assert self.process is not None and self.process.proc.stderr is not None
        stderr = self.process.proc.stderr
        async for line in iter_lines(stderr):
            text = line.decode("utf-8", errors="replace").rstrip()
            self.process.stderr_tail.append(text)
            logger.debug(f"[{self.name} stderr] {text}")

    async def handle_frame(self, frame: bytes) -> None:
        text = frame.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            # Servers sometimes log banners to stdout; not protocol traffic
            logger.debug(f"{self.name}: ignoring non-JSON output: {text[:200]}")
            return

        messages = payload if isinstance(payload, list) else [payload]
        for message in messages:
            if isinstance(message, dict):
                await self.dispatch(message)

    async def dispatch(self, message: Dict[str, Any]) -> None:
        message_id = message.get("id")

        if message_id is not None and ("result" in message or "error" in message):
            if "error" in message and message["error"] is not None:
                err = message["error"] if isinstance(message["error"], dict) else {"message": str(message["error"])}
                matched = self.pending.reject(
                    message_id,
                    MCPProtocolError(
                        f"RPC error {err.get('code')}: {err.get('message', 'unknown error')}",
                        code=err.get("code"),
                        data=err.get("data"),
                    ),
                )
            else:
                matched = self.pending.resolve(message_id, message.get("result"))
            if not matched:
                logger.debug(f"{self.name}: discarding response for unknown or expired id {message_id}")
            return

        method = message.get("method")
        if method is None:
            logger.debug(f"{self.name}: ignoring malformed message {message}")
            return

        if message_id is not None:
            # Server-to-client request; this client exposes no methods
            await self._send({
                "jsonrpc": JSONRPC_VERSION,
                "id": message_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
            })
            return

        self.notifications.append(message)
        for handler in self._handlers:
            outcome = handler(method, message.get("params"))
            if asyncio.iscoroutine(outcome):
                await outcome

    # ==================== Shutdown ====================

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        rejected = self.pending.reject_all(
            lambda rid, method: MCPProtocolError(f"{self.name}: connection closed ({method}, id {rid})")
        )
        if rejected:
            logger.warning(f"⚠️ {self.name}: rejected {rejected} pending request(s) on close")

        if self.process is not None:
            stdin = self.process.proc.stdin
            if stdin is not None and not stdin.is_closing():
                stdin.close()
            await self.process.terminate()

        for task in (self._reader, self._stderr_reader):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._reader, self._stderr_reader) if t is not None),
            return_exceptions=True,
        )
