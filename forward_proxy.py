"""
forward_proxy.py — stateless relay behind /reverse-proxy?url=<target>.

The upstream body and status are passed through; upstream headers are not,
apart from a small allow-list. Every response gets the same content type,
CORS and cache headers so the result can be loaded as a script from any
origin.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping

import httpx
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from errors import ProxyTargetUnreachable

logger = logging.getLogger("shopify-proxy")

# Compared lower-case.
ALLOWED_UPSTREAM_HEADERS = frozenset({"access-control-allow-methods"})

CACHE_MAX_AGE = 86400  # 1 day
FIXED_HEADERS = {
    "Content-Type": "application/javascript",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "*",
    "Cache-Control": f"public, max-age={CACHE_MAX_AGE}",
}

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@dataclass
class ForwardResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def rewrite_headers(upstream: Mapping[str, str]) -> dict[str, str]:
    """Apply the relay's header policy to an upstream header set."""
    fixed = {name.lower() for name in FIXED_HEADERS}
    headers = {
        name: value for name, value in upstream.items()
        if name.lower() in ALLOWED_UPSTREAM_HEADERS
        and name.lower() not in fixed
    }
    headers.update(FIXED_HEADERS)
    return headers


async def forward(
    client: httpx.AsyncClient,
    method: str,
    url: str | None,
    body: bytes = b"",
) -> ForwardResponse:
    """Send one request to ``url`` and return the rewritten response.

    Raises ProxyTargetUnreachable for anything that keeps us from reading
    the target: no URL, a bad URL or scheme, connection errors, timeouts.
    """
    if not url:
        raise ProxyTargetUnreachable("missing url parameter")

    logger.info("forward: %s %s", method, url)
    try:
        upstream = await client.request(
            method, url, content=body or None, follow_redirects=True,
        )
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
        raise ProxyTargetUnreachable(f"{method} {url}: {e!r}") from e

    return ForwardResponse(
        status_code=upstream.status_code,
        headers=rewrite_headers(upstream.headers),
        body=upstream.content,
    )


class ForwardProxy:
    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    async def handle(self, request: Request) -> Response:
        body = await request.body()
        try:
            result = await forward(
                self.http_client,
                request.method,
                request.query_params.get("url"),
                body,
            )
        except ProxyTargetUnreachable as e:
            logger.warning("forward failed: %s", e.detail)
            return PlainTextResponse(e.message, status_code=e.status_code)

        return Response(result.body, status_code=result.status_code, headers=result.headers)
