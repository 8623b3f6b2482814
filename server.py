#!/usr/bin/env python3
"""
Shopify gateway — Shopify app install handshake + script forwarding proxy.

Runs as a Starlette app under uvicorn. Routes:

  GET  /                      — liveness text
  GET  /shopify?shop=...      — start the install handshake
  GET  /shopify/callback      — finish it and return the shop profile
  ANY  /reverse-proxy?url=... — relay a remote resource with CORS headers
  GET  /proxy/...             — static files

Configuration comes from the environment (and .env); see config.py.
"""

import argparse
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import httpx
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles
from starlette.types import ASGIApp, Receive, Scope, Send

from config import ShopifyConfig, load_config
from forward_proxy import PROXY_METHODS, ForwardProxy
from shopify_oauth import ShopifyOAuth

logger = logging.getLogger("shopify-gateway")

INDEX_TEXT = (
    "Your server is up. Add shop parameter to url to start a install on a shop. "
    "eg /shopify?shop=xxx.myshopify.com"
)


async def _index(request: Request) -> Response:
    return PlainTextResponse(INDEX_TEXT)


class RequestLogMiddleware:
    """Log method and path of every HTTP request."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            logger.info("recv: %s %s", scope.get("method", "?"), scope.get("path", "?"))
        await self.app(scope, receive, send)


def create_app(
    config: ShopifyConfig,
    http_client: httpx.AsyncClient | None = None,
) -> Starlette:
    """Assemble the gateway.

    A caller-supplied client is left open on shutdown; one created here is
    closed by the lifespan.
    """
    owns_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=config.timeout)

    oauth = ShopifyOAuth(config, http_client)
    proxy = ForwardProxy(http_client)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        try:
            yield
        finally:
            if owns_client:
                await http_client.aclose()

    routes = [
        Route("/", _index, methods=["GET"]),
        Route("/shopify", oauth.handle_install, methods=["GET"]),
        Route("/shopify/callback", oauth.handle_callback, methods=["GET"]),
        Route("/reverse-proxy", proxy.handle, methods=PROXY_METHODS),
        Mount("/proxy", app=StaticFiles(directory=config.static_dir, check_dir=False),
              name="static"),
    ]
    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(RequestLogMiddleware),
            Middleware(GZipMiddleware, minimum_size=500),
        ],
        lifespan=lifespan,
    )
    app.state.http_client = http_client
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    from dotenv import load_dotenv
    import uvicorn

    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON-lines to ~/.shopify-gateway/audit.log
    audit_log_path = Path.home() / ".shopify-gateway" / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("shopify-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

    config = load_config()

    parser = argparse.ArgumentParser(description="Shopify gateway")
    parser.add_argument("--port", type=int, default=config.port)
    parser.add_argument("--host", default="0.0.0.0")
    args = parser.parse_args()

    app = create_app(config)
    logger.info(f"shopify-gateway: listening on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*")


if __name__ == "__main__":
    main()
