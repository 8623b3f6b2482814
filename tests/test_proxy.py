"""Tests for forward_proxy.py."""
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from errors import ProxyTargetUnreachable
from forward_proxy import FIXED_HEADERS, forward, rewrite_headers


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# rewrite_headers
# ---------------------------------------------------------------------------

class TestRewriteHeaders:
    def test_fixed_headers_always_set(self):
        headers = rewrite_headers({})
        assert headers == {
            "Content-Type": "application/javascript",
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Headers": "*",
            "Cache-Control": "public, max-age=86400",
        }

    def test_allow_methods_copied_case_insensitively(self):
        headers = rewrite_headers({"ACCESS-Control-Allow-Methods": "GET, POST"})
        assert headers["ACCESS-Control-Allow-Methods"] == "GET, POST"

    def test_other_upstream_headers_dropped(self):
        headers = rewrite_headers({
            "Set-Cookie": "a=b",
            "X-Powered-By": "Express",
            "Server": "nginx",
            "Content-Type": "text/plain",
            "Cache-Control": "no-store",
        })
        assert headers == FIXED_HEADERS

    def test_no_powered_by(self):
        headers = rewrite_headers({"x-powered-by": "Express"})
        assert not any(name.lower() == "x-powered-by" for name in headers)


# ---------------------------------------------------------------------------
# forward
# ---------------------------------------------------------------------------

class TestForward:
    @pytest.mark.asyncio
    async def test_relays_script(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200, content=b"console.log(1)",
                headers={"Content-Type": "text/plain", "X-Powered-By": "Express"},
            )

        result = await forward(_client(handler), "GET", "https://example.com/data.js")

        assert result.status_code == 200
        assert result.body == b"console.log(1)"
        assert result.headers == FIXED_HEADERS
        assert str(seen[0].url) == "https://example.com/data.js"

    @pytest.mark.asyncio
    async def test_method_and_body_forwarded(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, content=b"ok")

        result = await forward(_client(handler), "POST", "https://example.com/api", b'{"a":1}')

        assert result.status_code == 201
        assert seen[0].method == "POST"
        assert seen[0].content == b'{"a":1}'

    @pytest.mark.asyncio
    async def test_upstream_error_status_relayed(self):
        def handler(request):
            return httpx.Response(404, content=b"missing")

        result = await forward(_client(handler), "GET", "https://example.com/gone.js")
        assert result.status_code == 404
        assert result.body == b"missing"
        assert result.headers["Content-Type"] == "application/javascript"

    @pytest.mark.asyncio
    async def test_follows_redirects(self):
        def handler(request):
            if request.url.path == "/old.js":
                return httpx.Response(302, headers={"Location": "https://example.com/new.js"})
            return httpx.Response(200, content=b"new()")

        result = await forward(_client(handler), "GET", "https://example.com/old.js")
        assert result.body == b"new()"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", [None, ""])
    async def test_missing_url(self, url):
        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(ProxyTargetUnreachable):
            await forward(_client(handler), "GET", url)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        httpx.UnsupportedProtocol("ftp"),
        ValueError("bad target"),
    ])
    async def test_transport_failures(self, error):
        def handler(request):
            raise error

        with pytest.raises(ProxyTargetUnreachable) as exc_info:
            await forward(_client(handler), "GET", "https://example.com/x")
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Could not get resource"

    @pytest.mark.asyncio
    async def test_malformed_idna_host(self):
        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(ProxyTargetUnreachable) as exc_info:
            await forward(_client(handler), "GET", "http://xn--a/x.js")
        assert exc_info.value.message == "Could not get resource"
