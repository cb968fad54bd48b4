"""Process supervision shared by the sandbox and the compute worker.

A ManagedProcess spawns ``bash -c <command>`` in its own process group, pumps
stdout/stderr in chunks to an optional sink while accumulating both, and
enforces a hard deadline. On expiry the whole process tree gets SIGKILL.

``wait()`` can also return early when a ``release`` event is set, leaving the
process running; the compute worker uses this to hand a detected dev server
over to its supervisor instead of waiting for an exit that never comes.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import signal
from collections.abc import Callable
from dataclasses import dataclass

import psutil
import structlog

from devrelay.utils import preview
from devrelay.utils.clock import elapsed_ms, monotonic

logger = structlog.get_logger().bind(component="tools.process")

READ_CHUNK_BYTES = 4096
TIMEOUT_EXIT_CODE = 124
# After SIGKILL, how long reader tasks get to drain before being cancelled
_DRAIN_GRACE_SECONDS = 2.0

OutputSink = Callable[[str, str], None]
"""Called as ``sink(stream_name, text)`` for every chunk; must not block."""


@dataclass
class ProcessOutcome:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool = False
    detached: bool = False
    truncated: bool = False
    duration_ms: float = 0.0
    pid: int | None = None


def shell_argv(command: str) -> list[str]:
    shell = shutil.which("bash") or "/bin/sh"
    return [shell, "-c", command]


def kill_tree(pid: int) -> int:
    """SIGKILL ``pid``, its descendants and its process group. Returns processes signalled."""
    killed = 0
    try:
        parent = psutil.Process(pid)
        victims = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        victims = []
    for proc in victims:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            proc.kill()
            killed += 1
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, signal.SIGKILL)
    return killed


class _Buffer:
    """Accumulates decoded output up to ``limit`` characters."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.parts: list[str] = []
        self.size = 0
        self.truncated = False

    def add(self, text: str) -> None:
        if self.size >= self.limit:
            self.truncated = True
            return
        room = self.limit - self.size
        if len(text) > room:
            text = text[:room]
            self.truncated = True
        self.parts.append(text)
        self.size += len(text)

    def text(self) -> str:
        joined = "".join(self.parts)
        return joined + "\n... [truncated]" if self.truncated else joined


class ManagedProcess:
    """One supervised child process."""

    def __init__(
        self,
        command: str,
        cwd: str | os.PathLike[str] | None = None,
        env: dict[str, str] | None = None,
        on_output: OutputSink | None = None,
        max_output_chars: int = 200_000,
    ) -> None:
        self.command = command
        self.cwd = cwd
        self.env = env
        self._sinks: list[OutputSink] = [on_output] if on_output else []
        self._stdout = _Buffer(max_output_chars)
        self._stderr = _Buffer(max_output_chars)
        self._proc: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task] = []
        self._started = 0.0

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def stdout(self) -> str:
        return self._stdout.text()

    @property
    def stderr(self) -> str:
        return self._stderr.text()

    def add_sink(self, sink: OutputSink) -> None:
        self._sinks.append(sink)

    async def start(self) -> ManagedProcess:
        self._started = monotonic()
        self._proc = await asyncio.create_subprocess_exec(
            *shell_argv(self.command),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=self.env,
            start_new_session=True,
        )
        self._readers = [
            asyncio.create_task(self._pump(self._proc.stdout, "stdout", self._stdout)),
            asyncio.create_task(self._pump(self._proc.stderr, "stderr", self._stderr)),
        ]
        logger.debug("process_started", pid=self._proc.pid, command_preview=preview(self.command))
        return self

    async def _pump(self, stream: asyncio.StreamReader | None, name: str, buffer: _Buffer) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace")
            buffer.add(text)
            for sink in self._sinks:
                try:
                    sink(name, text)
                except Exception as exc:
                    # A broken sink must not stall output collection
                    logger.warning("output_sink_failed", stream=name, error=str(exc))

    async def wait(self, timeout: float, release: asyncio.Event | None = None) -> ProcessOutcome:
        """Wait for exit, deadline, or ``release`` — whichever comes first."""
        if self._proc is None:
            raise RuntimeError("process not started")

        exited = asyncio.create_task(self._wait_exit())
        waiters: set[asyncio.Task] = {exited}
        released: asyncio.Task | None = None
        if release is not None:
            released = asyncio.create_task(release.wait())
            waiters.add(released)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if released is not None and not released.done():
                released.cancel()

        if exited in done:
            return self._outcome()

        if released is not None and released in done:
            exited.cancel()
            logger.info("process_detached", pid=self.pid, command_preview=preview(self.command))
            return self._outcome(detached=True)

        exited.cancel()
        await self.kill()
        logger.warning("process_timeout", pid=self.pid, timeout_s=timeout, command_preview=preview(self.command))
        return self._outcome(timed_out=True)

    async def _wait_exit(self) -> None:
        assert self._proc is not None
        await self._proc.wait()
        # Output pipes can outlive the shell if a grandchild inherited them
        await asyncio.wait(self._readers, timeout=_DRAIN_GRACE_SECONDS)

    async def kill(self) -> None:
        """Force-kill the whole tree and reap it."""
        if self._proc is None:
            return
        if self._proc.returncode is None:
            kill_tree(self._proc.pid)
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()
            await self._proc.wait()
        if self._readers:
            _, pending = await asyncio.wait(self._readers, timeout=_DRAIN_GRACE_SECONDS)
            for task in pending:
                task.cancel()

    def _outcome(self, timed_out: bool = False, detached: bool = False) -> ProcessOutcome:
        if timed_out:
            exit_code: int | None = TIMEOUT_EXIT_CODE
        elif detached:
            exit_code = None
        else:
            exit_code = self.returncode
        return ProcessOutcome(
            stdout=self.stdout,
            stderr=self.stderr,
            exit_code=exit_code,
            timed_out=timed_out,
            detached=detached,
            truncated=self._stdout.truncated or self._stderr.truncated,
            duration_ms=elapsed_ms(self._started),
            pid=self.pid,
        )


async def run_process(
    command: str,
    cwd: str | os.PathLike[str] | None = None,
    env: dict[str, str] | None = None,
    timeout: float = 120.0,
    on_output: OutputSink | None = None,
    max_output_chars: int = 200_000,
) -> ProcessOutcome:
    """Run ``command`` to completion (or deadline) and return its outcome."""
    proc = ManagedProcess(command, cwd=cwd, env=env, on_output=on_output, max_output_chars=max_output_chars)
    await proc.start()
    try:
        return await proc.wait(timeout)
    except asyncio.CancelledError:
        await proc.kill()
        raise
