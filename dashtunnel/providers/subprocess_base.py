"""Subprocess-backed tunnel providers.

A CLI backend is spawned with the local port as an argument and its
combined output is scanned line by line for the public URL. Output keeps
being drained after the handshake so the backend never blocks on a full
pipe.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shutil
from datetime import datetime, timezone

from dashtunnel.core.errors import ConfigurationError, ProviderError, ProviderTimeoutError
from dashtunnel.core.models import HealthStatus, InstanceStatus, ProviderOptions
from dashtunnel.providers.health import DEFAULT_PROBE_TIMEOUT, probe_url
from dashtunnel.providers.process import ProcessHandle

logger = logging.getLogger(__name__)

_VERSION_CHECK_TIMEOUT = 10.0


class SubprocessTunnelInstance:
    """A tunnel kept alive by a backend subprocess."""

    def __init__(
        self,
        provider: str,
        handle: ProcessHandle,
        url: str,
        drain: asyncio.Task | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        stop_timeout: float = 5.0,
    ) -> None:
        self._provider = provider
        self._handle = handle
        self._url = url
        self._drain = drain
        self._probe_timeout = probe_timeout
        self._stop_timeout = stop_timeout
        self._status = InstanceStatus.ACTIVE
        self._created_at = datetime.now(timezone.utc)

    @property
    def url(self) -> str:
        return self._url

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def status(self) -> InstanceStatus:
        if self._status is InstanceStatus.ACTIVE and not self._handle.is_alive:
            return InstanceStatus.ERROR
        return self._status

    async def close(self) -> None:
        """Terminate the backend. A second call is a no-op."""
        if self._status is InstanceStatus.CLOSING:
            return
        self._status = InstanceStatus.CLOSING
        if self._drain and not self._drain.done():
            self._drain.cancel()
        await self._handle.terminate(timeout=self._stop_timeout)

    async def get_health(self) -> HealthStatus:
        status = self.status
        if status is InstanceStatus.ERROR:
            return HealthStatus(
                healthy=False,
                error=f"{self._handle.name} exited with code {self._handle.returncode}",
            )
        if status is not InstanceStatus.ACTIVE:
            return HealthStatus(healthy=False, error=f"Tunnel is {status.value}")
        try:
            return await probe_url(self._url, timeout=self._probe_timeout)
        except Exception as e:
            return HealthStatus(healthy=False, error=str(e) or type(e).__name__)


class SubprocessTunnelProvider:
    """Base for providers driven by a CLI that prints its public URL.

    Subclasses set ``name``, ``binary``, ``code_prefix``, ``url_pattern``
    and implement :meth:`build_args`.
    """

    name = "subprocess"
    binary = ""
    code_prefix = "PROVIDER"
    install_hint = ""
    url_pattern: re.Pattern = re.compile(r"(https://\S+)")

    def __init__(
        self,
        *,
        binary_path: str | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        self._binary_path = binary_path
        self._probe_timeout = probe_timeout

    def _which(self) -> str | None:
        return self._binary_path or shutil.which(self.binary)

    def is_available(self) -> bool:
        return self._which() is not None

    async def validate_config(self) -> None:
        """Check the binary exists and answers ``--version``."""
        path = self._which()
        if not path:
            raise ConfigurationError(
                self.name,
                f"{self.code_prefix}_NOT_FOUND",
                f"{self.binary} not found in PATH. Install: {self.install_hint}",
            )
        try:
            proc = await asyncio.create_subprocess_exec(
                path, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ConfigurationError(
                self.name, f"{self.code_prefix}_NOT_FOUND", f"Cannot execute {path}: {e}",
            ) from e
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_VERSION_CHECK_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ConfigurationError(
                self.name, f"{self.code_prefix}_BROKEN", f"{self.binary} --version timed out",
            )
        if proc.returncode != 0:
            raise ConfigurationError(
                self.name,
                f"{self.code_prefix}_BROKEN",
                f"{self.binary} --version exited with code {proc.returncode}",
            )
        logger.debug("%s: %s", self.binary, stdout.decode("utf-8", errors="replace").strip())

    def build_args(self, path: str, port: int, options: ProviderOptions) -> list[str]:
        raise NotImplementedError

    def build_env(self) -> dict[str, str] | None:
        return None

    def extract_url(self, line: str) -> str | None:
        match = self.url_pattern.search(line)
        return match.group(1) if match else None

    async def create_tunnel(self, port: int, options: ProviderOptions) -> SubprocessTunnelInstance:
        """Spawn the backend and wait for it to announce its public URL.

        Raises ProviderTimeoutError after ``options.timeout`` seconds and
        ProviderError when the backend cannot start or exits early. In
        both cases the process is gone before this returns.
        """
        path = self._which()
        if not path:
            raise ConfigurationError(
                self.name, f"{self.code_prefix}_NOT_FOUND", f"{self.binary} not found in PATH",
            )

        argv = self.build_args(path, port, options)
        try:
            handle = await ProcessHandle.spawn(argv, env=self.build_env())
        except OSError as e:
            raise ProviderError(
                self.name, f"{self.code_prefix}_START_ERROR", f"Failed to start {self.binary}: {e}",
            ) from e

        url_future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        drain = asyncio.create_task(self._read_output(handle, url_future))
        started = False
        try:
            url = await asyncio.wait_for(asyncio.shield(url_future), timeout=options.timeout)
            started = True
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(
                self.name,
                f"{self.code_prefix}_TIMEOUT",
                f"Timed out after {options.timeout:.0f}s waiting for {self.binary} tunnel URL",
            )
        finally:
            if not started:
                drain.cancel()
                await handle.terminate()

        logger.info("%s tunnel URL: %s", self.name, url)
        return SubprocessTunnelInstance(
            self.name, handle, url, drain=drain, probe_timeout=self._probe_timeout,
        )

    async def _read_output(self, handle: ProcessHandle, url_future: asyncio.Future[str]) -> None:
        errors: list[str] = []
        async for line in handle.lines():
            if not line:
                continue
            logger.debug("%s: %s", self.binary, line)
            if url_future.done():
                continue
            url = self.extract_url(line)
            if url:
                url_future.set_result(url)
            elif "err" in line.lower():
                errors.append(line)

        if url_future.done():
            return
        result = await handle.wait()
        detail = " | ".join(errors[-3:])
        url_future.set_exception(ProviderError(
            self.name,
            "PROVIDER_EXITED",
            f"{self.binary} exited before announcing a URL (code {result.returncode})"
            + (f": {detail}" if detail else ""),
        ))
