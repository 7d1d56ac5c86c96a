"""
hatena_oauth1.py: OAuth 1.0a client for Hatena (RFC 5849, HMAC-SHA1).

Hatena still speaks OAuth 1.0a, so every call to it is signed by hand:

  base string  = METHOD & enc(base_url) & enc(normalized params)
  signing key  = enc(consumer_secret) & enc(token_secret or "")
  signature    = base64(HMAC-SHA1(signing key, base string))

The three-legged flow is get_request_token() → user visits
build_authorize_url() → exchange_access_token(). Content API calls reuse
signed_request() with the long-lived access token.
"""

import base64
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Mapping
from urllib.parse import parse_qsl, quote, urlencode, urlsplit

import httpx

from audit_log import redact
from oauth_errors import HatenaOAuthError

logger = logging.getLogger("hatena-oauth1")

HATENA_HOST = "https://www.hatena.com"
HATENA_AUTHORIZE_URL = "https://www.hatena.ne.jp/oauth/authorize"
DEFAULT_SCOPE = "read_public,write_public,read_private,write_private"
SIGNATURE_METHOD = "HMAC-SHA1"


# ---------------------------------------------------------------------------
# Signing primitives
# ---------------------------------------------------------------------------

def percent_encode(value: str) -> str:
    """RFC 3986 encoding: only ALPHA / DIGIT / "-" / "." / "_" / "~" stay bare."""
    return quote(value, safe="~")


def base_url(url: str) -> str:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if parts.port is not None and (scheme, parts.port) not in (("http", 80), ("https", 443)):
        host = f"{host}:{parts.port}"
    return f"{scheme}://{host}{parts.path or '/'}"


def normalize_params(params: Mapping[str, str]) -> str:
    encoded = sorted((percent_encode(k), percent_encode(v)) for k, v in params.items())
    return "&".join(f"{k}={v}" for k, v in encoded)


def build_base_string(method: str, url: str, params: Mapping[str, str]) -> str:
    return "&".join([
        method.upper(),
        percent_encode(base_url(url)),
        percent_encode(normalize_params(params)),
    ])


def signing_key(consumer_secret: str, token_secret: str | None = None) -> str:
    return f"{percent_encode(consumer_secret)}&{percent_encode(token_secret or '')}"


def hmac_sha1(key: str, data: str) -> str:
    digest = hmac.new(key.encode(), data.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def build_auth_header(params: Mapping[str, str]) -> str:
    pairs = sorted(
        (percent_encode(k), percent_encode(v)) for k, v in params.items() if k.startswith("oauth_")
    )
    return "OAuth " + ", ".join(f'{k}="{v}"' for k, v in pairs)


def build_authorize_url(request_token: str, state: str) -> str:
    return f"{HATENA_AUTHORIZE_URL}?{urlencode({'oauth_token': request_token, 'state': state})}"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

@dataclass
class RequestToken:
    request_token: str
    request_token_secret: str


@dataclass
class AccessToken:
    access_token: str
    access_secret: str
    hatena_id: str | None = None


class HatenaOAuth1Client:
    """Signs and sends requests to Hatena on behalf of one consumer."""

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        http: httpx.AsyncClient | None = None,
        host: str = HATENA_HOST,
        scope: str = DEFAULT_SCOPE,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
        nonce: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.host = host.rstrip("/")
        self.scope = scope
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._clock = clock
        self._nonce = nonce

    async def aclose(self) -> None:
        await self._http.aclose()

    def oauth_params(
        self,
        token: str | None = None,
        callback: str | None = None,
        verifier: str | None = None,
    ) -> dict[str, str]:
        params = {
            "oauth_consumer_key": self.consumer_key,
            "oauth_nonce": self._nonce(),
            "oauth_signature_method": SIGNATURE_METHOD,
            "oauth_timestamp": str(int(self._clock())),
            "oauth_version": "1.0",
        }
        if token:
            params["oauth_token"] = token
        if callback:
            params["oauth_callback"] = callback
        if verifier:
            params["oauth_verifier"] = verifier
        return params

    def sign(
        self,
        method: str,
        url: str,
        token: str | None = None,
        token_secret: str | None = None,
        callback: str | None = None,
        verifier: str | None = None,
        extra_params: Mapping[str, str] | None = None,
    ) -> str:
        """Return the Authorization header value for one request."""
        params = self.oauth_params(token=token, callback=callback, verifier=verifier)
        params.update(parse_qsl(urlsplit(url).query, keep_blank_values=True))
        params.update(extra_params or {})
        base = build_base_string(method, url, params)
        params["oauth_signature"] = hmac_sha1(signing_key(self.consumer_secret, token_secret), base)
        return build_auth_header(params)

    async def signed_request(
        self,
        method: str,
        url: str,
        token: str | None = None,
        token_secret: str | None = None,
        callback: str | None = None,
        verifier: str | None = None,
        form: Mapping[str, str] | None = None,
        content: str | bytes | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Send a signed request. Form fields are signed, raw bodies are not."""
        auth = self.sign(
            method, url,
            token=token, token_secret=token_secret,
            callback=callback, verifier=verifier,
            extra_params=form,
        )
        request_headers = dict(headers or {})
        request_headers["Authorization"] = auth
        logger.debug("signed %s %s token=%s", method.upper(), base_url(url), redact(token))
        try:
            if form is not None:
                return await self._http.request(method.upper(), url, data=dict(form), headers=request_headers)
            return await self._http.request(method.upper(), url, content=content, headers=request_headers)
        except httpx.HTTPError as e:
            raise HatenaOAuthError(f"Hatena request failed: {e}") from e

    async def get_request_token(self, callback_url: str) -> RequestToken:
        form = {"scope": self.scope} if self.scope else None
        resp = await self.signed_request(
            "POST", f"{self.host}/oauth/initiate", callback=callback_url, form=form,
        )
        if not resp.is_success:
            raise HatenaOAuthError(
                f"Hatena request token failed: {resp.status_code} {resp.text}",
                status=resp.status_code, body=resp.text,
            )
        params = dict(parse_qsl(resp.text))
        token, secret = params.get("oauth_token"), params.get("oauth_token_secret")
        if not token or not secret:
            raise HatenaOAuthError("Invalid request token response", status=resp.status_code, body=resp.text)
        return RequestToken(request_token=token, request_token_secret=secret)

    async def exchange_access_token(
        self, request_token: str, request_token_secret: str, verifier: str,
    ) -> AccessToken:
        resp = await self.signed_request(
            "POST", f"{self.host}/oauth/token",
            token=request_token, token_secret=request_token_secret, verifier=verifier,
        )
        if not resp.is_success:
            raise HatenaOAuthError(
                f"Hatena access token failed: {resp.status_code} {resp.text}",
                status=resp.status_code, body=resp.text,
            )
        params = dict(parse_qsl(resp.text))
        token, secret = params.get("oauth_token"), params.get("oauth_token_secret")
        if not token or not secret:
            raise HatenaOAuthError("Invalid access token response", status=resp.status_code, body=resp.text)
        return AccessToken(access_token=token, access_secret=secret, hatena_id=params.get("url_name"))
