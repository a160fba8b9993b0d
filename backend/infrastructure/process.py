"""
Async supervision of one external tool invocation: spawn, drain both pipes,
optional liveness watchdog, and a hard kill when the awaiting task is cancelled.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096

_ERROR_MARKER = re.compile(r"\b(error|fatal)\b", re.IGNORECASE)

OutputCallback = Callable[[bytes], None]


@dataclass
class ProcessHandle:
    argv: List[str]
    cwd: Optional[Path]
    started_at: float = 0.0
    last_activity_at: float = 0.0
    returncode: Optional[int] = None
    hung: bool = False
    stdout: bytearray = field(default_factory=bytearray)
    stderr: bytearray = field(default_factory=bytearray)

    @property
    def binary(self) -> str:
        return self.argv[0]

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")


async def run_process(
    argv: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    idle_timeout: Optional[float] = None,
    on_stdout: Optional[OutputCallback] = None,
    on_stderr: Optional[OutputCallback] = None,
) -> ProcessHandle:
    """
    Run ``argv`` to completion and return its handle.

    With ``idle_timeout`` set, the process is killed once no output has arrived
    on either pipe for that many seconds and the handle comes back with
    ``hung=True``. Spawn errors (``FileNotFoundError``, ``PermissionError``)
    propagate to the caller.
    """
    loop = asyncio.get_running_loop()
    handle = ProcessHandle(argv=[str(a) for a in argv], cwd=cwd)
    logger.info("Spawning %s (cwd=%s)", " ".join(handle.argv), cwd or ".")

    proc = await asyncio.create_subprocess_exec(
        *handle.argv,
        cwd=str(cwd) if cwd else None,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    handle.started_at = handle.last_activity_at = loop.time()

    async def drain(stream: asyncio.StreamReader, sink: bytearray, callback: Optional[OutputCallback]) -> None:
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                return
            handle.last_activity_at = loop.time()
            sink.extend(chunk)
            if callback is not None:
                callback(chunk)

    async def watchdog() -> None:
        while True:
            remaining = handle.last_activity_at + idle_timeout - loop.time()
            if remaining <= 0:
                logger.error(
                    "Watchdog: no output from %s for %.1fs, killing pid %s",
                    handle.binary, idle_timeout, proc.pid,
                )
                handle.hung = True
                _kill(proc)
                return
            await asyncio.sleep(remaining)

    readers = [
        asyncio.create_task(drain(proc.stdout, handle.stdout, on_stdout)),
        asyncio.create_task(drain(proc.stderr, handle.stderr, on_stderr)),
    ]
    timer = asyncio.create_task(watchdog()) if idle_timeout else None
    try:
        await asyncio.gather(*readers)
        handle.returncode = await proc.wait()
    finally:
        if timer is not None:
            timer.cancel()
        if proc.returncode is None:
            logger.warning("Terminating %s (pid %s)", handle.binary, proc.pid)
            _kill(proc)
            for reader in readers:
                reader.cancel()
            # reap so no zombie outlives the call
            await asyncio.shield(proc.wait())
            handle.returncode = proc.returncode
    return handle


def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def failure_reason(stderr: str, returncode: Optional[int]) -> str:
    """
    Pick the most useful line from a tool's diagnostic stream: the last line
    flagged as an error or fatal, else the last line, else the exit code.
    """
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    flagged = [line for line in lines if _ERROR_MARKER.search(line)]
    if flagged:
        return flagged[-1]
    if lines:
        return lines[-1]
    return f"Exit code {returncode}"
