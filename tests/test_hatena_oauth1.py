"""Tests for hatena_oauth1.py."""
import sys
from pathlib import Path
from urllib.parse import parse_qs, unquote

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from hatena_oauth1 import (
    HatenaOAuth1Client,
    base_url,
    build_auth_header,
    build_authorize_url,
    build_base_string,
    hmac_sha1,
    normalize_params,
    percent_encode,
    signing_key,
)
from oauth_errors import HatenaOAuthError


def _parse_auth_header(value: str) -> dict[str, str]:
    assert value.startswith("OAuth ")
    pairs = {}
    for part in value[len("OAuth "):].split(", "):
        k, v = part.split("=", 1)
        pairs[unquote(k)] = unquote(v.strip('"'))
    return pairs


def _client(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("host", "https://hatena.test")
    return HatenaOAuth1Client(
        "ck", "cs", http=http, clock=lambda: 1_700_000_000, nonce=lambda: "n0nce", **kwargs,
    )


# ---------------------------------------------------------------------------
# Signing primitives
# ---------------------------------------------------------------------------

class TestPercentEncode:
    def test_unreserved_untouched(self):
        assert percent_encode("AZaz09-._~") == "AZaz09-._~"

    def test_reserved_encoded(self):
        assert percent_encode("a b&c=d/e+f") == "a%20b%26c%3Dd%2Fe%2Bf"

    def test_utf8(self):
        assert percent_encode("ブログ") == "%E3%83%96%E3%83%AD%E3%82%B0"


class TestBaseString:
    def test_reference_request_token_base_string(self):
        params = {
            "oauth_callback": "https://cb",
            "oauth_consumer_key": "ck",
            "oauth_nonce": "n",
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_timestamp": "1",
            "oauth_version": "1.0",
        }
        assert build_base_string("POST", "https://example.test/oauth/initiate", params) == (
            "POST&https%3A%2F%2Fexample.test%2Foauth%2Finitiate&"
            "oauth_callback%3Dhttps%253A%252F%252Fcb%26oauth_consumer_key%3Dck%26"
            "oauth_nonce%3Dn%26oauth_signature_method%3DHMAC-SHA1%26"
            "oauth_timestamp%3D1%26oauth_version%3D1.0"
        )

    def test_rfc5849_signature(self):
        params = {
            "file": "vacation.jpg",
            "size": "original",
            "oauth_consumer_key": "dpf43f3p2l4k3l03",
            "oauth_nonce": "kllo9940pd9333jh",
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_timestamp": "1191242096",
            "oauth_token": "nnch734d00sl2jdk",
            "oauth_version": "1.0",
        }
        base = build_base_string("GET", "http://photos.example.net/photos", params)
        key = signing_key("kd94hf93k423kf44", "pfkkdhi9sl3r4s00")
        assert hmac_sha1(key, base) == "tR3+Ty81lMeYAr/Fid0kMTYa/WM="

    def test_params_sorted_by_encoded_key(self):
        assert normalize_params({"b": "2", "a": "1", "a b": "3"}) == "a=1&a%20b=3&b=2"

    def test_base_url_drops_query_and_lowercases_host(self):
        assert base_url("HTTPS://Blog.Hatena.NE.JP/u/b/atom/entry?page=2") == "https://blog.hatena.ne.jp/u/b/atom/entry"

    def test_base_url_drops_default_port(self):
        assert base_url("https://example.test:443/a") == "https://example.test/a"
        assert base_url("HTTP://Example.Test:80/a") == "http://example.test/a"
        assert base_url("http://example.test:8080/a") == "http://example.test:8080/a"
        assert base_url("https://example.test:80/a") == "https://example.test:80/a"

    def test_signing_key_without_token_secret(self):
        assert signing_key("c&s") == "c%26s&"


class TestAuthHeader:
    def test_only_oauth_params_sorted_and_quoted(self):
        header = build_auth_header({"oauth_nonce": "n", "scope": "x", "oauth_signature": "a+b="})
        assert header == 'OAuth oauth_nonce="n", oauth_signature="a%2Bb%3D"'

    def test_authorize_url(self):
        url = build_authorize_url("T1", "S1")
        assert url == "https://www.hatena.ne.jp/oauth/authorize?oauth_token=T1&state=S1"


# ---------------------------------------------------------------------------
# Request token / access token
# ---------------------------------------------------------------------------

class TestGetRequestToken:
    @pytest.mark.asyncio
    async def test_signed_initiate(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, text="oauth_token=RT&oauth_token_secret=RS&oauth_callback_confirmed=true")

        client = _client(handler, scope="read_public")
        token = await client.get_request_token("https://mcp.example.com/hatena/oauth/callback")
        assert (token.request_token, token.request_token_secret) == ("RT", "RS")

        request = seen["request"]
        assert request.method == "POST"
        assert str(request.url) == "https://hatena.test/oauth/initiate"
        assert parse_qs(request.content.decode()) == {"scope": ["read_public"]}

        auth = _parse_auth_header(request.headers["authorization"])
        assert auth["oauth_callback"] == "https://mcp.example.com/hatena/oauth/callback"
        assert auth["oauth_consumer_key"] == "ck"
        assert auth["oauth_timestamp"] == "1700000000"
        assert "scope" not in auth

        # Signature covers the form body.
        unsigned = {k: v for k, v in auth.items() if k != "oauth_signature"}
        base = build_base_string("POST", "https://hatena.test/oauth/initiate", {**unsigned, "scope": "read_public"})
        assert auth["oauth_signature"] == hmac_sha1(signing_key("cs"), base)

    @pytest.mark.asyncio
    async def test_rejected(self):
        client = _client(lambda request: httpx.Response(401, text="oauth_problem=signature_invalid"))
        with pytest.raises(HatenaOAuthError) as exc_info:
            await client.get_request_token("https://cb")
        assert exc_info.value.status == 401
        assert "signature_invalid" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        client = _client(lambda request: httpx.Response(200, text="oauth_token=RT"))
        with pytest.raises(HatenaOAuthError, match="Invalid request token response"):
            await client.get_request_token("https://cb")


class TestExchangeAccessToken:
    @pytest.mark.asyncio
    async def test_exchange(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = _parse_auth_header(request.headers["authorization"])
            return httpx.Response(
                200, text="oauth_token=AT&oauth_token_secret=AS&url_name=alice&display_name=Alice",
            )

        access = await _client(handler).exchange_access_token("RT", "RS", "V1")
        assert (access.access_token, access.access_secret, access.hatena_id) == ("AT", "AS", "alice")
        assert seen["auth"]["oauth_token"] == "RT"
        assert seen["auth"]["oauth_verifier"] == "V1"
        assert "oauth_callback" not in seen["auth"]

    @pytest.mark.asyncio
    async def test_signed_with_request_token_secret(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = _parse_auth_header(request.headers["authorization"])
            return httpx.Response(200, text="oauth_token=AT&oauth_token_secret=AS")

        await _client(handler).exchange_access_token("RT", "RS", "V1")
        unsigned = {k: v for k, v in seen["auth"].items() if k != "oauth_signature"}
        base = build_base_string("POST", "https://hatena.test/oauth/token", unsigned)
        assert seen["auth"]["oauth_signature"] == hmac_sha1(signing_key("cs", "RS"), base)

    @pytest.mark.asyncio
    async def test_rejected_verifier(self):
        client = _client(lambda request: httpx.Response(400, text="oauth_problem=token_rejected"))
        with pytest.raises(HatenaOAuthError, match="access token failed"):
            await client.exchange_access_token("RT", "RS", "bad")


class TestSignedRequest:
    @pytest.mark.asyncio
    async def test_query_params_are_signed(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = _parse_auth_header(request.headers["authorization"])
            return httpx.Response(200, text="<feed/>")

        url = "https://blog.hatena.ne.jp/alice/b/atom/entry?max-results=5"
        await _client(handler).signed_request("GET", url, token="AT", token_secret="AS")
        unsigned = {k: v for k, v in seen["auth"].items() if k != "oauth_signature"}
        base = build_base_string("GET", url, {**unsigned, "max-results": "5"})
        assert seen["auth"]["oauth_signature"] == hmac_sha1(signing_key("cs", "AS"), base)

    @pytest.mark.asyncio
    async def test_raw_body_not_signed(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.content
            seen["type"] = request.headers["content-type"]
            return httpx.Response(201, text="<entry/>")

        resp = await _client(handler).signed_request(
            "POST", "https://blog.hatena.ne.jp/alice/b/atom/entry",
            token="AT", token_secret="AS",
            content=b"<entry/>", headers={"Content-Type": "application/xml"},
        )
        assert resp.status_code == 201
        assert seen["body"] == b"<entry/>"
        assert seen["type"] == "application/xml"

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(HatenaOAuthError, match="Hatena request failed") as exc:
            await _client(handler).get_request_token("https://mcp.example.com/cb")
        assert exc.value.status is None
        assert isinstance(exc.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_timeout_wrapped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(HatenaOAuthError, match="Hatena request failed"):
            await _client(handler).exchange_access_token("T1", "TS1", "V")
