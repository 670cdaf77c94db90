"""ngrok provider backed by the pyngrok SDK.

pyngrok manages the agent process itself and hands back a tunnel object,
so no output scraping happens here. Its calls block, so they run in a
worker thread bounded by the startup timeout.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import os
from datetime import datetime, timezone

from pyngrok import conf, ngrok
from pyngrok.conf import PyngrokConfig
from pyngrok.exception import PyngrokError

from dashtunnel.core.errors import ConfigurationError, ProviderError, ProviderTimeoutError
from dashtunnel.core.models import HealthStatus, InstanceStatus, ProviderOptions
from dashtunnel.providers.health import DEFAULT_PROBE_TIMEOUT, probe_url

logger = logging.getLogger(__name__)


class NgrokSdkTunnelInstance:
    """A tunnel owned by the pyngrok-managed agent."""

    def __init__(
        self,
        url: str,
        pyngrok_config: PyngrokConfig,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        stop_timeout: float = 5.0,
    ) -> None:
        self._url = url
        self._config = pyngrok_config
        self._probe_timeout = probe_timeout
        self._stop_timeout = stop_timeout
        self._status = InstanceStatus.ACTIVE
        self._closed = False
        self._created_at = datetime.now(timezone.utc)

    @property
    def url(self) -> str:
        return self._url

    @property
    def provider(self) -> str:
        return NgrokProvider.name

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def status(self) -> InstanceStatus:
        return self._status

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._status = InstanceStatus.CLOSING
        try:
            await asyncio.wait_for(
                asyncio.to_thread(ngrok.disconnect, self._url, pyngrok_config=self._config),
                timeout=self._stop_timeout,
            )
            logger.info("Disconnected ngrok tunnel %s", self._url)
        except (PyngrokError, OSError, asyncio.TimeoutError) as e:
            self._status = InstanceStatus.ERROR
            logger.warning("Failed to disconnect ngrok tunnel: %s", e)

    async def get_health(self) -> HealthStatus:
        if self._status is not InstanceStatus.ACTIVE:
            return HealthStatus(healthy=False, error=f"Tunnel is {self._status.value}")
        try:
            return await probe_url(self._url, timeout=self._probe_timeout)
        except Exception as e:
            return HealthStatus(healthy=False, error=str(e) or type(e).__name__)


class NgrokProvider:
    """Managed ngrok tunnels through pyngrok. Requires an auth token."""

    name = "ngrok"

    def __init__(
        self,
        *,
        auth_token: str | None = None,
        region: str | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        self._auth_token = auth_token
        self._region = region
        self._probe_timeout = probe_timeout
        self._pyngrok_config: PyngrokConfig | None = None

    def _resolve_token(self) -> str | None:
        return (
            self._auth_token
            or os.environ.get("NGROK_AUTHTOKEN")
            or conf.get_default().auth_token
        )

    def is_available(self) -> bool:
        return bool(self._resolve_token())

    async def validate_config(self) -> None:
        if not self._resolve_token():
            raise ConfigurationError(
                self.name,
                "NGROK_AUTH_REQUIRED",
                "ngrok requires an auth token. Set NGROK_AUTHTOKEN or pass auth_token",
            )

    def _get_config(self) -> PyngrokConfig:
        if self._pyngrok_config is None:
            self._pyngrok_config = PyngrokConfig(
                auth_token=self._resolve_token(), region=self._region,
            )
        return self._pyngrok_config

    @staticmethod
    def _connect(port: int, headers: list[str], pyngrok_config: PyngrokConfig):
        options: dict = {}
        if headers:
            options["request_header"] = {"add": headers}
        return ngrok.connect(str(port), "http", pyngrok_config=pyngrok_config, **options)

    async def create_tunnel(self, port: int, options: ProviderOptions) -> NgrokSdkTunnelInstance:
        pyngrok_config = self._get_config()
        headers = [f"X-Tunnel-{key}: {value}" for key, value in sorted(options.metadata.items())]

        connect_task = asyncio.create_task(
            asyncio.to_thread(self._connect, port, headers, pyngrok_config)
        )
        try:
            tunnel = await asyncio.wait_for(asyncio.shield(connect_task), timeout=options.timeout)
        except asyncio.TimeoutError:
            # The worker thread cannot be interrupted; drop its tunnel when it lands.
            connect_task.add_done_callback(
                functools.partial(self._discard_late_tunnel, pyngrok_config)
            )
            raise ProviderTimeoutError(
                self.name,
                "NGROK_TIMEOUT",
                f"Timed out after {options.timeout:.0f}s waiting for ngrok tunnel",
            )
        except (PyngrokError, OSError) as e:
            raise ProviderError(self.name, "NGROK_START_ERROR", f"Failed to start ngrok: {e}") from e

        url = tunnel.public_url or ""
        if not url.startswith("https://"):
            try:
                await asyncio.to_thread(ngrok.disconnect, url, pyngrok_config=pyngrok_config)
            except (PyngrokError, OSError) as e:
                logger.warning("Failed to disconnect ngrok tunnel: %s", e)
            raise ProviderError(self.name, "NGROK_NO_URL", f"ngrok returned no HTTPS URL ({url!r})")

        logger.info("ngrok tunnel URL: %s", url)
        return NgrokSdkTunnelInstance(url, pyngrok_config, probe_timeout=self._probe_timeout)

    def _discard_late_tunnel(self, pyngrok_config: PyngrokConfig, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        url = task.result().public_url
        logger.info("Discarding ngrok tunnel that connected after timeout: %s", url)
        asyncio.ensure_future(
            asyncio.to_thread(ngrok.disconnect, url, pyngrok_config=pyngrok_config)
        )
