# evidence_runner/processes.py
"""
Managed external processes.

A ManagedProcess wraps an asyncio subprocess that the runner owns but never
awaits for completion (dev servers, the MCP peer). ProcessGroup ties a set of
them to the lifetime of one run: leaving the `async with` block terminates
every process still alive (SIGTERM to the process group, grace window, SIGKILL).
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from typing import AsyncIterator, Deque, List, Optional

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 65536
MAX_LINE_BYTES = 8 * 1024 * 1024


async def iter_lines(
    stream: asyncio.StreamReader,
    chunk_size: int = READ_CHUNK_BYTES,
    max_line_bytes: int = MAX_LINE_BYTES,
) -> AsyncIterator[bytes]:
    """
    Yield newline-terminated lines from a pipe, reading fixed-size chunks.

    Unlike StreamReader.readline() there is no 64 KiB line limit. A line that
    grows past max_line_bytes is yielded in pieces; a trailing line without a
    newline is yielded at EOF.
    """
    buffer = bytearray()
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            break
        buffer.extend(chunk)
        while True:
            idx = buffer.find(b"\n")
            if idx == -1:
                break
            yield bytes(buffer[: idx + 1])
            del buffer[: idx + 1]
        if len(buffer) > max_line_bytes:
            yield bytes(buffer)
            buffer.clear()
    if buffer:
        yield bytes(buffer)


def new_session_kwargs() -> dict:
    """Process group isolation so terminate() reaches grandchildren (shell → server)"""
    if os.name == "nt":
        import subprocess
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0x00000200)}
    return {"start_new_session": True}


class ManagedProcess:
    """Long-running child process with guaranteed termination"""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        name: str,
        grace_s: float = 3.0,
        capture_lines: int = 200,
    ):
        self.proc = proc
        self.name = name
        self.grace_s = grace_s
        self.stdout_tail: Deque[str] = deque(maxlen=capture_lines)
        self.stderr_tail: Deque[str] = deque(maxlen=capture_lines)
        self._drainers: List[asyncio.Task] = []

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode

    @property
    def running(self) -> bool:
        return self.proc.returncode is None

    def drain_output(self) -> None:
        """Keep reading stdout/stderr so a chatty process never blocks on a full pipe"""
        for stream, tail in ((self.proc.stdout, self.stdout_tail), (self.proc.stderr, self.stderr_tail)):
            if stream is not None:
                self._drainers.append(asyncio.create_task(self._drain(stream, tail)))

    async def _drain(self, stream: asyncio.StreamReader, tail: Deque[str]) -> None:
        async for line in iter_lines(stream):
            text = line.decode("utf-8", errors="replace").rstrip("\n")
            tail.append(text)
            logger.debug(f"[{self.name}:{self.pid}] {text}")

    def _signal(self, sig: int) -> None:
        if os.name == "nt":
            if sig == signal.SIGTERM:
                self.proc.terminate()
            else:
                self.proc.kill()
            return
        try:
            os.killpg(os.getpgid(self.proc.pid), sig)
        except (ProcessLookupError, PermissionError):
            # Not a group leader or already reaped; fall back to the child itself
            self.proc.send_signal(sig)

    async def terminate(self) -> Optional[int]:
        """SIGTERM, wait up to grace_s, then SIGKILL. Returns the exit code."""
        if self.running:
            logger.info(f"🛑 Stopping {self.name} (pid {self.pid})")
            try:
                self._signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self.proc.wait(), timeout=self.grace_s)
            except asyncio.TimeoutError:
                logger.warning(f"⏱️ {self.name} (pid {self.pid}) ignored SIGTERM, killing")
                try:
                    self._signal(signal.SIGKILL)
                except ProcessLookupError:
                    pass
                await self.proc.wait()

        for task in self._drainers:
            if not task.done():
                task.cancel()
        if self._drainers:
            await asyncio.gather(*self._drainers, return_exceptions=True)
        self._drainers = []
        return self.proc.returncode


class ProcessGroup:
    """All managed processes of one run"""

    def __init__(self) -> None:
        self._processes: List[ManagedProcess] = []

    def __len__(self) -> int:
        return len(self._processes)

    def __iter__(self):
        return iter(list(self._processes))

    def add(self, process: ManagedProcess) -> ManagedProcess:
        self._processes.append(process)
        return process

    async def close(self) -> None:
        """Terminate everything, most recently started first"""
        if not self._processes:
            return
        logger.info(f"🧹 Stopping {len(self._processes)} managed process(es)...")
        while self._processes:
            process = self._processes.pop()
            try:
                await process.terminate()
            except OSError as e:
                logger.warning(f"⚠️ Failed to stop {process.name} (pid {process.pid}): {e}")

    async def __aenter__(self) -> "ProcessGroup":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
