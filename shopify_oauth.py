"""
shopify_oauth.py — Shopify install handshake for the gateway.

Flow:
  /shopify?shop=<domain>     — issue a state token, set it as a cookie and
                               redirect to the shop's authorize page.
  /shopify/callback?...      — state check → HMAC check → code exchange →
                               shop.json fetch, returned verbatim.

Security notes:
  - The state cookie is the only handshake store; nothing is kept server-side.
  - State and HMAC comparisons go through hmac.compare_digest.
  - Access tokens live for one callback and are never logged or returned.
  - Upstream failures reach the caller as a generic 500; detail goes to the log.
"""

import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping
from urllib.parse import urlencode

import httpx
from starlette.requests import Request
from starlette.responses import PlainTextResponse, RedirectResponse, Response

from config import ShopifyConfig
from errors import (
    MissingParameter,
    ServiceError,
    SignatureInvalid,
    StateMismatch,
    UpstreamRequestFailed,
)

logger = logging.getLogger("shopify-oauth")
audit_logger = logging.getLogger("shopify-audit")

STATE_COOKIE = "state"
SIGNATURE_FIELDS = frozenset({"hmac", "signature"})
MISSING_SHOP_MESSAGE = (
    "Missing shop parameter. Please add "
    "?shop=your-development-shop.myshopify.com to your request"
)


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# State tokens
# ---------------------------------------------------------------------------

def generate_state() -> str:
    """Return a fresh anti-forgery token (256 bits, URL and cookie safe)."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# HMAC verification
# ---------------------------------------------------------------------------

def _param_items(params: Any) -> Iterable[tuple[str, Any]]:
    # Starlette's QueryParams keeps repeated keys; plain mappings may carry
    # lists for them.
    if hasattr(params, "multi_items"):
        return params.multi_items()
    return params.items()


def canonical_message(params: Mapping[str, Any]) -> str:
    """Rebuild the string Shopify signed for a callback.

    Signature fields are dropped, the remaining keys are sorted and joined
    as ``key=value`` pairs with ``&``. Values are used as received, without
    re-escaping. Repeated keys use Shopify's array form: ``ids=["1", "2"]``.
    """
    grouped: dict[str, list[str]] = {}
    for key, value in _param_items(params):
        if key in SIGNATURE_FIELDS:
            continue
        values = grouped.setdefault(key, [])
        if isinstance(value, (list, tuple)):
            values.extend(str(v) for v in value)
        else:
            values.append(str(value))

    parts = []
    for key in sorted(grouped):
        values = grouped[key]
        if len(values) == 1:
            parts.append(f"{key}={values[0]}")
        else:
            rendered = ", ".join(json.dumps(v) for v in values)
            parts.append(f"{key}=[{rendered}]")
    return "&".join(parts)


def compute_hmac(message: str, secret: str | bytes) -> str:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    return hmac.new(secret, message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_hmac(params: Mapping[str, Any], secret: str | bytes) -> bool:
    """Check the callback's ``hmac`` against the shared secret.

    Never raises: a missing, malformed or wrong-length digest is simply a
    failed verification.
    """
    provided = params.get("hmac")
    if not provided or not isinstance(provided, str):
        return False
    expected = compute_hmac(canonical_message(params), secret)
    try:
        return hmac.compare_digest(
            expected.encode("ascii"), provided.encode("utf-8"),
        )
    except (TypeError, ValueError):
        return False


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RedirectInstruction:
    url: str
    state: str


class ShopifyOAuth:
    """Shopify install handshake.

    begin() → redirect to the shop's authorize page (no network).
    complete() → state, required params, HMAC, code exchange, shop fetch.
    Each failure is terminal for the request; nothing is retried.
    """

    def __init__(self, config: ShopifyConfig, http_client: httpx.AsyncClient):
        self.config = config
        self.http_client = http_client

    def begin(self, shop: str | None) -> RedirectInstruction:
        if not shop:
            raise MissingParameter("no shop in install request",
                                   message=MISSING_SHOP_MESSAGE)

        state = generate_state()
        query = urlencode({
            "client_id": self.config.api_key,
            "scope": self.config.scopes,
            "state": state,
            "redirect_uri": self.config.redirect_uri,
        })
        return RedirectInstruction(
            url=f"https://{shop}/admin/oauth/authorize?{query}",
            state=state,
        )

    async def complete(self, params: Mapping[str, Any], state_cookie: str | None) -> bytes:
        """Run the callback state machine and return the shop.json body."""
        shop = params.get("shop")

        state = params.get("state")
        if (not isinstance(state, str) or not state or not state_cookie
                or not hmac.compare_digest(state.encode("utf-8"), state_cookie.encode("utf-8"))):
            _audit("state_rejected", shop=shop, cookie_present=bool(state_cookie))
            raise StateMismatch(f"state mismatch for shop={shop!r}")

        code = params.get("code")
        if not (shop and params.get("hmac") and code):
            raise MissingParameter("callback lacks shop, hmac or code")

        if not verify_hmac(params, self.config.api_secret):
            _audit("hmac_rejected", shop=shop)
            raise SignatureInvalid(f"bad hmac for shop={shop!r}")

        access_token = await self._exchange_code(shop, code)
        _audit("token_exchanged", shop=shop)

        body = await self._fetch_shop(shop, access_token)
        _audit("shop_fetched", shop=shop, bytes=len(body))
        return body

    async def _exchange_code(self, shop: str, code: str) -> str:
        url = f"https://{shop}/admin/oauth/access_token"
        logger.info("fetching: %s", url)
        try:
            response = await self.http_client.post(url, json={
                "client_id": self.config.api_key,
                "client_secret": self.config.api_secret,
                "code": code,
            })
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.warning("code exchange failed for %s: %r", shop, e)
            raise UpstreamRequestFailed(f"code exchange failed: {e!r}") from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            logger.warning("code exchange for %s returned no access_token", shop)
            raise UpstreamRequestFailed("no access_token in exchange response")
        return access_token

    async def _fetch_shop(self, shop: str, access_token: str) -> bytes:
        url = f"https://{shop}/admin/api/{self.config.api_version}/shop.json"
        logger.info("fetching: %s", url)
        try:
            response = await self.http_client.get(
                url, headers={"X-Shopify-Access-Token": access_token},
            )
            response.raise_for_status()
            response.json()  # must parse; the raw body is what we relay
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.warning("shop fetch failed for %s: %r", shop, e)
            raise UpstreamRequestFailed(f"shop fetch failed: {e!r}") from e
        return response.content

    # --- Route handlers ---

    async def handle_install(self, request: Request) -> Response:
        try:
            instruction = self.begin(request.query_params.get("shop"))
        except MissingParameter as e:
            return PlainTextResponse(e.message, status_code=e.status_code)

        _audit("install_started", shop=request.query_params.get("shop"))
        response = RedirectResponse(instruction.url, status_code=302)
        response.set_cookie(
            STATE_COOKIE,
            instruction.state,
            max_age=self.config.state_cookie_max_age,
            httponly=True,
            samesite="lax",
            secure=self.config.secure_cookies,
        )
        return response

    async def handle_callback(self, request: Request) -> Response:
        try:
            body = await self.complete(
                request.query_params, request.cookies.get(STATE_COOKIE),
            )
            response = Response(body, media_type="application/json")
        except StateMismatch as e:
            # A forged callback must not wipe a handshake still in progress.
            logger.info("callback rejected (%d): %s", e.status_code, e.detail)
            return PlainTextResponse(e.message, status_code=e.status_code)
        except ServiceError as e:
            logger.info("callback rejected (%d): %s", e.status_code, e.detail)
            response = PlainTextResponse(e.message, status_code=e.status_code)

        # Past the state check the token is spent from the browser's side.
        response.delete_cookie(
            STATE_COOKIE,
            httponly=True,
            samesite="lax",
            secure=self.config.secure_cookies,
        )
        return response
