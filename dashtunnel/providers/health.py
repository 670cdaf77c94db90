"""HTTP liveness probe against a tunnel's public URL."""
from __future__ import annotations

import asyncio
import logging

import aiohttp

from dashtunnel.core.models import HealthStatus

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 10.0


async def probe_url(url: str, timeout: float = DEFAULT_PROBE_TIMEOUT) -> HealthStatus:
    """GET *url* and report whether the tunnel is routing traffic.

    Any response below 500 means the edge reached the local server.
    Never raises.
    """
    loop = asyncio.get_running_loop()
    start = loop.time()
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(
                url,
                timeout=aiohttp.ClientTimeout(total=timeout),
                allow_redirects=False,
            ) as resp:
                latency = loop.time() - start
                if resp.status >= 500:
                    return HealthStatus(
                        healthy=False, latency=latency, error=f"HTTP {resp.status}",
                    )
                return HealthStatus(healthy=True, latency=latency)
    except asyncio.TimeoutError:
        return HealthStatus(healthy=False, error=f"Probe timed out after {timeout:.0f}s")
    except (aiohttp.ClientError, OSError, ValueError) as e:
        logger.debug("Health probe for %s failed: %s", url, e)
        return HealthStatus(healthy=False, error=str(e) or type(e).__name__)
