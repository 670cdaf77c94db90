"""ngrok agent CLI provider (JSON log scraping)."""
from __future__ import annotations

import json
import os
import re

from dashtunnel.core.models import ProviderOptions
from dashtunnel.providers.health import DEFAULT_PROBE_TIMEOUT
from dashtunnel.providers.subprocess_base import SubprocessTunnelProvider


class NgrokCliProvider(SubprocessTunnelProvider):
    """``ngrok http PORT --log stdout --log-format json``.

    The agent logs one JSON object per line; the ``url`` field of the
    "started tunnel" record is the public address. Plain-text lines fall
    back to a regex match.
    """

    name = "ngrok-cli"
    binary = "ngrok"
    code_prefix = "NGROK"
    install_hint = "https://ngrok.com/download"
    url_pattern = re.compile(r"(https://[a-zA-Z0-9-]+\.ngrok(?:-free)?\.(?:app|dev|io))")

    def __init__(
        self,
        *,
        auth_token: str | None = None,
        region: str | None = None,
        binary_path: str | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        super().__init__(binary_path=binary_path, probe_timeout=probe_timeout)
        self._auth_token = auth_token
        self._region = region

    def build_args(self, path: str, port: int, options: ProviderOptions) -> list[str]:
        args = [path, "http", str(port), "--log", "stdout", "--log-format", "json"]
        if self._region:
            args += ["--region", self._region]
        for key, value in sorted(options.metadata.items()):
            args += ["--request-header-add", f"X-Tunnel-{key}: {value}"]
        return args

    def build_env(self) -> dict[str, str] | None:
        # Token goes through the environment so it never shows up in ps.
        if not self._auth_token:
            return None
        return {**os.environ, "NGROK_AUTHTOKEN": self._auth_token}

    def extract_url(self, line: str) -> str | None:
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            return super().extract_url(line)
        if isinstance(record, dict):
            url = record.get("url")
            if isinstance(url, str) and url.startswith("https://"):
                return url
        return None
