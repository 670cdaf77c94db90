"""Cloudflared quick tunnel provider."""
from __future__ import annotations

import logging
import re

from dashtunnel.core.models import ProviderOptions
from dashtunnel.providers.health import DEFAULT_PROBE_TIMEOUT
from dashtunnel.providers.subprocess_base import SubprocessTunnelProvider

logger = logging.getLogger(__name__)


class CloudflaredProvider(SubprocessTunnelProvider):
    """``cloudflared tunnel --url http://localhost:PORT``.

    The trycloudflare.com URL is printed on stderr once the quick tunnel
    is registered with the edge.
    """

    name = "cloudflare"
    binary = "cloudflared"
    code_prefix = "CLOUDFLARED"
    install_hint = "brew install cloudflared"
    url_pattern = re.compile(r"(https://[a-zA-Z0-9-]+\.trycloudflare\.com)")

    def __init__(
        self,
        *,
        region: str | None = None,
        binary_path: str | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        super().__init__(binary_path=binary_path, probe_timeout=probe_timeout)
        self._region = region

    def build_args(self, path: str, port: int, options: ProviderOptions) -> list[str]:
        args = [path, "tunnel", "--no-autoupdate", "--url", f"http://localhost:{port}"]
        if self._region:
            args += ["--region", self._region]
        if options.metadata:
            # Quick tunnels have no flag for injecting request headers.
            logger.debug("cloudflared: ignoring metadata headers %s", sorted(options.metadata))
        return args
