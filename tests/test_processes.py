# tests/test_processes.py
import asyncio
import sys

from evidence_runner.processes import ManagedProcess, iter_lines

LONG_LINE = 70000


def _collect(chunks, **kwargs):
    async def scenario():
        reader = asyncio.StreamReader()
        for chunk in chunks:
            reader.feed_data(chunk)
        reader.feed_eof()
        return [line async for line in iter_lines(reader, **kwargs)]

    return asyncio.run(scenario())


def test_iter_lines_splits_across_chunks():
    assert _collect([b"one\ntw", b"o\nthr", b"ee"], chunk_size=4) == [b"one\n", b"two\n", b"three"]


def test_iter_lines_has_no_line_length_limit():
    lines = _collect([b"x" * LONG_LINE + b"\nend\n"])
    assert [len(line) for line in lines] == [LONG_LINE + 1, 4]


def test_iter_lines_splits_oversized_line():
    lines = _collect([b"y" * 100 + b"\n"], chunk_size=16, max_line_bytes=40)
    assert b"".join(lines) == b"y" * 100 + b"\n"
    assert all(len(line) <= 40 + 16 for line in lines)


def test_drainer_survives_long_line():
    async def scenario():
        proc = await asyncio.create_subprocess_exec(
            sys.executable, "-c", f"import sys; sys.stdout.write('z' * {LONG_LINE} + '\\nafter\\n')",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        process = ManagedProcess(proc, "long-line", grace_s=1.0)
        process.drain_output()
        await proc.wait()
        for _ in range(200):
            if "after" in process.stdout_tail:
                break
            await asyncio.sleep(0.01)
        await process.terminate()
        return list(process.stdout_tail)

    tail = asyncio.run(scenario())
    assert tail == ["z" * LONG_LINE, "after"]
