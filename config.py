"""
config.py — process-wide settings for the Shopify gateway.

Settings come from environment variables (optionally seeded from a .env
file by the entry point). The resulting ShopifyConfig is frozen and handed
to every component explicitly.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

DEFAULT_SCOPES = "read_products"
DEFAULT_API_VERSION = "2020-01"
DEFAULT_PORT = 3000
DEFAULT_TIMEOUT = 10.0  # seconds, per outbound call
DEFAULT_STATE_COOKIE_MAX_AGE = 600  # 10 minutes


@dataclass(frozen=True)
class ShopifyConfig:
    api_key: str
    api_secret: str
    forwarding_address: str
    scopes: str = DEFAULT_SCOPES
    api_version: str = DEFAULT_API_VERSION
    port: int = DEFAULT_PORT
    timeout: float = DEFAULT_TIMEOUT
    state_cookie_max_age: int = DEFAULT_STATE_COOKIE_MAX_AGE
    static_dir: Path = Path(__file__).parent / "static"

    @property
    def redirect_uri(self) -> str:
        return f"{self.forwarding_address}/shopify/callback"

    @property
    def secure_cookies(self) -> bool:
        return self.forwarding_address.startswith("https://")


def _require(environ: Mapping[str, str], name: str) -> str:
    value = environ.get(name, "").strip()
    if not value:
        raise SystemExit(f"Missing required environment variable: {name}")
    return value


def _number(environ: Mapping[str, str], name: str, default, cast):
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise SystemExit(f"Invalid value for {name}: {raw!r} (expected {cast.__name__})")


def load_config(environ: Mapping[str, str] | None = None) -> ShopifyConfig:
    """Build the gateway config from the environment."""
    if environ is None:
        environ = os.environ

    static_dir = environ.get("STATIC_DIR", "").strip()
    return ShopifyConfig(
        api_key=_require(environ, "SHOPIFY_API_KEY"),
        api_secret=_require(environ, "SHOPIFY_API_SECRET"),
        forwarding_address=_require(environ, "HOST").rstrip("/"),
        scopes=environ.get("SHOPIFY_SCOPES", "").strip() or DEFAULT_SCOPES,
        api_version=environ.get("SHOPIFY_API_VERSION", "").strip() or DEFAULT_API_VERSION,
        port=_number(environ, "PORT", DEFAULT_PORT, int),
        timeout=_number(environ, "UPSTREAM_TIMEOUT", DEFAULT_TIMEOUT, float),
        state_cookie_max_age=_number(
            environ, "STATE_COOKIE_MAX_AGE", DEFAULT_STATE_COOKIE_MAX_AGE, int,
        ),
        static_dir=Path(static_dir) if static_dir else ShopifyConfig.static_dir,
    )
