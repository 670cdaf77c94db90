"""Process handle — thin async wrapper over a tunnel backend subprocess.

Exposes the backend's stdout/stderr as a single line-oriented stream so
adapters can scan it for their readiness signal, plus wait/kill and a
graceful terminate-then-kill shutdown.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import AsyncIterator

from dashtunnel.core.subprocess_tracker import track, untrack

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExitResult:
    returncode: int | None

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessHandle:
    """A spawned backend process."""

    def __init__(self, proc: asyncio.subprocess.Process, argv: list[str]) -> None:
        self._proc = proc
        self._argv = argv
        track(proc.pid)

    @classmethod
    async def spawn(
        cls, argv: list[str], env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        """Start *argv* with piped stdout/stderr.

        Raises OSError when the executable cannot be started.
        """
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        logger.debug("Spawned %s (pid %d)", argv[0], proc.pid)
        return cls(proc, argv)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def name(self) -> str:
        return self._argv[0]

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def is_alive(self) -> bool:
        return self._proc.returncode is None

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._proc.stderr

    async def lines(self) -> AsyncIterator[str]:
        """Yield decoded lines from stdout and stderr as they arrive.

        Ends once both streams reach EOF.
        """
        queue: asyncio.Queue[str | None] = asyncio.Queue()

        async def _pump(stream: asyncio.StreamReader) -> None:
            try:
                while True:
                    line = await stream.readline()
                    if not line:
                        break
                    await queue.put(line.decode("utf-8", errors="replace").rstrip())
            finally:
                queue.put_nowait(None)

        streams = [s for s in (self._proc.stdout, self._proc.stderr) if s is not None]
        pumps = [asyncio.create_task(_pump(s)) for s in streams]
        remaining = len(pumps)
        try:
            while remaining:
                item = await queue.get()
                if item is None:
                    remaining -= 1
                    continue
                yield item
        finally:
            for p in pumps:
                p.cancel()

    async def wait(self) -> ExitResult:
        code = await self._proc.wait()
        untrack(self._proc.pid)
        return ExitResult(code)

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """Send *sig* to the process; no-op if it already exited."""
        if self._proc.returncode is not None:
            return
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            pass

    async def terminate(self, timeout: float = 5.0) -> ExitResult:
        """SIGTERM, then SIGKILL if the process outlives *timeout*."""
        if self._proc.returncode is None:
            self.kill(signal.SIGTERM)
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("%s did not exit after SIGTERM, killing", self.name)
                self.kill(signal.SIGKILL)
                await self._proc.wait()
            logger.info("Stopped %s process", self.name)
        untrack(self._proc.pid)
        return ExitResult(self._proc.returncode)
