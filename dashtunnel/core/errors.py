"""Tunnel error taxonomy.

Per-provider failures (``ConfigurationError``, ``ProviderError``,
``ProviderTimeoutError``) are caught by the manager and trigger failover.
Only ``AllProvidersFailedError`` reaches the caller of ``start_tunnel``.
"""
from __future__ import annotations

_GENERIC_HINTS = [
    "Check your internet connection",
    "Verify the tunnel provider is properly installed",
    "Try restarting the tunnel",
]

_TROUBLESHOOTING: dict[str, list[str]] = {
    "NO_PROVIDERS": [
        "Install cloudflared: brew install cloudflared",
        "Or configure ngrok: export NGROK_AUTHTOKEN=<token>",
        "Check that the provider binaries are in your PATH",
    ],
    "CLOUDFLARED_NOT_FOUND": [
        "Install cloudflared: brew install cloudflared",
        "Make sure cloudflared is in your PATH",
        'Run "cloudflared --version" to verify the installation',
    ],
    "CLOUDFLARED_TIMEOUT": [
        "Check your internet connection",
        "cloudflared needs outbound HTTPS access through your firewall",
        "Try running: cloudflared tunnel --url http://localhost:<port>",
    ],
    "NGROK_NOT_FOUND": [
        "Download ngrok from https://ngrok.com/download",
        'Run "ngrok --version" to verify the installation',
    ],
    "NGROK_AUTH_REQUIRED": [
        "Get a token at https://dashboard.ngrok.com/get-started/your-authtoken",
        "Set it with: export NGROK_AUTHTOKEN=<token>",
    ],
    "NGROK_TIMEOUT": [
        "Check your internet connection",
        "Verify your ngrok auth token is valid",
        "Check whether you reached your ngrok account limits",
    ],
    "PROVIDER_FAILURES": [
        "Check your internet connection",
        "Verify that your firewall allows outbound connections",
        "Try creating a tunnel manually to test the provider configuration",
    ],
}


def troubleshooting(code: str) -> list[str]:
    """Return user-facing hints for an error code."""
    return list(_TROUBLESHOOTING.get(code, _GENERIC_HINTS))


class TunnelError(Exception):
    """Base class for all tunnel errors."""

    code = "TUNNEL_ERROR"


class ConfigurationError(TunnelError):
    """A provider cannot run in this environment."""

    def __init__(self, provider: str, code: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.code = code


class ProviderError(TunnelError):
    """A provider attempted to create a tunnel and failed."""

    def __init__(self, provider: str, code: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.code = code


class ProviderTimeoutError(ProviderError):
    """A provider did not announce a public URL within its startup timeout."""


class AllProvidersFailedError(TunnelError):
    """No candidate provider produced a tunnel."""

    code = "PROVIDER_FAILURES"

    def __init__(self, failures: list[tuple[str, str]], requested: str = "auto") -> None:
        self.failures = list(failures)
        self.requested = requested
        if not self.failures:
            self.code = "NO_PROVIDERS"
            message = "No tunnel providers are registered"
        else:
            summary = "; ".join(f"{name}: {reason}" for name, reason in self.failures)
            message = f"All tunnel providers failed ({summary})"
        super().__init__(message)

    def user_message(self) -> str:
        """Multi-line explanation suitable for showing to a user."""
        if self.requested != "auto":
            lines = [f"Could not start a tunnel with provider '{self.requested}'."]
        else:
            lines = ["Could not start a tunnel with any provider."]
        for name, reason in self.failures:
            lines.append(f"  - {name}: {reason}")
        lines.append("")
        lines.append("Troubleshooting:")
        lines.extend(f"  * {hint}" for hint in troubleshooting(self.code))
        return "\n".join(lines)


class AccessDenied(TunnelError):
    """Generic rejection; never reveals which check failed."""

    code = "ACCESS_DENIED"

    def __init__(self) -> None:
        super().__init__("Access denied")


class RateLimitExceeded(AccessDenied):
    code = "RATE_LIMITED"

    def __init__(self, retry_after: float = 0.0) -> None:
        super().__init__()
        self.retry_after = retry_after


class AuthenticationFailed(AccessDenied):
    code = "AUTH_FAILED"


class ReadOnlyViolation(TunnelError):
    """A mutating request arrived over a read-only tunnel."""

    code = "READ_ONLY"

    def __init__(self, method: str, path: str) -> None:
        super().__init__(f"Read-only access: {method} {path} is not allowed")
        self.method = method
        self.path = path
