from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from dashtunnel.core.models import TunnelOptions
from dashtunnel.providers.cloudflared import CloudflaredProvider
from dashtunnel.providers.ngrok_cli import NgrokCliProvider
from dashtunnel.providers.ngrok_sdk import NgrokProvider

DEFAULT_PROVIDERS = ("cloudflare", "ngrok", "ngrok-cli")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass
class TunnelSettings:
    port: int = 7777
    host: str = "127.0.0.1"
    provider: str = "auto"
    providers: list[str] = field(default_factory=lambda: list(DEFAULT_PROVIDERS))
    password: str | None = field(default=None, repr=False)
    ttl: float | None = None
    max_viewers: int = 10
    autostart: bool = False
    startup_timeout: float = 30.0
    health_interval: float = 60.0
    cleanup_interval: float = 3600.0
    visitor_max_age: float = 86400.0
    active_timeout: float = 300.0
    rate_limit_attempts: int = 5
    rate_limit_window: float = 60.0
    cloudflared_region: str | None = None
    ngrok_authtoken: str | None = field(default=None, repr=False)
    ngrok_region: str | None = None
    log_file: str = "/tmp/dashtunnel.log"

    @classmethod
    def from_env(cls) -> TunnelSettings:
        load_dotenv()
        names = os.environ.get("DASHTUNNEL_PROVIDERS", "")
        providers = [n.strip().lower() for n in names.split(",") if n.strip()]
        return cls(
            port=_env_int("DASHTUNNEL_PORT", 7777),
            host=os.environ.get("DASHTUNNEL_HOST", "127.0.0.1"),
            provider=os.environ.get("DASHTUNNEL_PROVIDER", "auto") or "auto",
            providers=providers or list(DEFAULT_PROVIDERS),
            password=os.environ.get("DASHTUNNEL_PASSWORD") or None,
            ttl=_env_float("DASHTUNNEL_TTL", None),
            max_viewers=_env_int("DASHTUNNEL_MAX_VIEWERS", 10),
            autostart=_env_bool("DASHTUNNEL_AUTOSTART"),
            startup_timeout=_env_float("DASHTUNNEL_STARTUP_TIMEOUT", 30.0),
            health_interval=_env_float("DASHTUNNEL_HEALTH_INTERVAL", 60.0),
            cleanup_interval=_env_float("DASHTUNNEL_CLEANUP_INTERVAL", 3600.0),
            visitor_max_age=_env_float("DASHTUNNEL_VISITOR_MAX_AGE", 86400.0),
            active_timeout=_env_float("DASHTUNNEL_ACTIVE_TIMEOUT", 300.0),
            rate_limit_attempts=_env_int("DASHTUNNEL_RATE_LIMIT_ATTEMPTS", 5),
            rate_limit_window=_env_float("DASHTUNNEL_RATE_LIMIT_WINDOW", 60.0),
            cloudflared_region=os.environ.get("DASHTUNNEL_CLOUDFLARED_REGION") or None,
            ngrok_authtoken=os.environ.get("NGROK_AUTHTOKEN") or None,
            ngrok_region=os.environ.get("DASHTUNNEL_NGROK_REGION") or None,
            log_file=os.environ.get("DASHTUNNEL_LOG_FILE", "/tmp/dashtunnel.log"),
        )

    def default_options(self) -> TunnelOptions:
        """Options used when a tunnel is started on boot."""
        return TunnelOptions(
            provider=self.provider,
            password=self.password,
            max_viewers=self.max_viewers,
            ttl=self.ttl,
        )

    def build_providers(self) -> list:
        """Instantiate providers in configured order. Unknown names raise ValueError."""
        factories = {
            "cloudflare": lambda: CloudflaredProvider(region=self.cloudflared_region),
            "ngrok": lambda: NgrokProvider(auth_token=self.ngrok_authtoken, region=self.ngrok_region),
            "ngrok-cli": lambda: NgrokCliProvider(
                auth_token=self.ngrok_authtoken, region=self.ngrok_region,
            ),
        }
        unknown = [name for name in self.providers if name not in factories]
        if unknown:
            raise ValueError(f"Unknown tunnel provider(s) in DASHTUNNEL_PROVIDERS: {', '.join(unknown)}")
        return [factories[name]() for name in self.providers]
