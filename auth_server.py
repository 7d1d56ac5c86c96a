"""
auth_server.py: OAuth 2.0 authorization server routes for Hatena Blog MCP.

  GET  /oauth/authorize          issue a one-time code, 302 back to the client
  POST /oauth/token              redeem the code for an RS256 access token
  GET  /oauth/jwks               published verification keys
  POST /oauth/setup              register a client (guarded by SETUP_SECRET)
  GET  /.well-known/...          discovery documents
  GET  /hatena/oauth/callback    finish linking a Hatena account

There is no login or consent step: every authorization request mints a
fresh user id, and the user is identified from then on by the ``sub`` of
the access token. The Hatena credential is attached to that id later
through the OAuth 1.0a bridge.
"""

import base64
import binascii
import hashlib
import hmac
import html as html_mod
import json
import logging
import re
import time
import uuid
from typing import Any, Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from starlette.requests import Request
from starlette.responses import (
    HTMLResponse,
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
)

from audit_log import audit, redact
from bearer_auth import MCP_PATH, PROTECTED_RESOURCE_METADATA_PATH, request_origin
from hatena_bridge import CorrelationMissingError, HatenaBridge
from jwt_tokens import ACCESS_TOKEN_TTL, TokenIssuer, token_audience
from oauth_errors import ErrorKind, HatenaOAuthError, OAuthError
from oauth_stores import (
    AUTH_CODE_TTL,
    AuthorizationCode,
    AuthorizationCodeStore,
    ClientRegistry,
    OAuthClient,
)

logger = logging.getLogger("hatena-oauth")

AUTHORIZATION_SERVER_METADATA_PATH = "/.well-known/oauth-authorization-server"
PKCE_METHODS = ("S256", "plain")
VERIFIER_PATTERN = re.compile(r"[A-Za-z0-9._~-]{43,128}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(verifier: str, challenge: str, method: str | None) -> bool:
    """Check a code_verifier against the stored challenge (RFC 7636)."""
    if not VERIFIER_PATTERN.fullmatch(verifier):
        return False
    derived = s256_challenge(verifier) if method == "S256" else verifier
    return hmac.compare_digest(derived.encode(), challenge.encode())


def add_query_params(url: str, **params: str | None) -> str:
    """Set ``params`` on ``url``, keeping whatever query it already has."""
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update({k: v for k, v in params.items() if v is not None})
    return urlunsplit(parts._replace(query=urlencode(query)))


def parse_basic_auth(header: str | None) -> tuple[str | None, str | None]:
    """Client credentials from ``Authorization: Basic``; (None, None) if absent or garbled."""
    if not header or not header.startswith("Basic "):
        return None, None
    try:
        decoded = base64.b64decode(header[len("Basic "):], validate=True).decode()
    except (binascii.Error, UnicodeDecodeError):
        return None, None
    client_id, _, secret = decoded.partition(":")
    return client_id or None, secret or None


def _token_error(e: OAuthError) -> JSONResponse:
    return JSONResponse(e.to_dict(), status_code=e.status, headers={"Cache-Control": "no-store"})


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

class HatenaAuthServer:
    """Route handlers for the authorization server and the Hatena callback.

    ``issuer`` pins the token issuer; when unset the request origin is used,
    so the same deployment works behind any host name.
    """

    def __init__(
        self,
        clients: ClientRegistry,
        codes: AuthorizationCodeStore,
        tokens: TokenIssuer,
        bridge: HatenaBridge,
        setup_secret: str | None = None,
        issuer: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.clients = clients
        self.codes = codes
        self.tokens = tokens
        self.bridge = bridge
        self.setup_secret = setup_secret
        self.issuer = issuer.rstrip("/") if issuer else None
        self._clock = clock

    def issuer_for(self, origin: str) -> str:
        return self.issuer or origin

    def route_table(self) -> list[tuple[str, list[str], Callable[[Request], Any]]]:
        return [
            ("/oauth/authorize", ["GET"], self.handle_authorize),
            ("/oauth/token", ["POST"], self.handle_token),
            ("/oauth/jwks", ["GET"], self.handle_jwks),
            ("/oauth/setup", ["POST"], self.handle_setup),
            (AUTHORIZATION_SERVER_METADATA_PATH, ["GET"], self.handle_authorization_server_metadata),
            (PROTECTED_RESOURCE_METADATA_PATH, ["GET"], self.handle_protected_resource_metadata),
            (PROTECTED_RESOURCE_METADATA_PATH + "/{resource:path}", ["GET"],
             self.handle_protected_resource_metadata),
            ("/hatena/oauth/callback", ["GET"], self.handle_hatena_callback),
        ]

    # --- /oauth/authorize ---

    async def handle_authorize(self, request: Request) -> Response:
        q = request.query_params
        client_id = q.get("client_id")
        redirect_uri = q.get("redirect_uri")
        state = q.get("state")
        challenge = q.get("code_challenge") or None
        method = q.get("code_challenge_method") or None

        if not client_id or not redirect_uri or q.get("response_type") != "code":
            return PlainTextResponse("Invalid authorization request", status_code=400)
        if method is not None and method not in PKCE_METHODS:
            return PlainTextResponse("Unsupported code_challenge_method", status_code=400)

        client = await self.clients.get(client_id)
        if client is None or redirect_uri not in client.redirect_uris:
            audit("authorize_rejected", client_id=client_id)
            return PlainTextResponse("Invalid client or redirect_uri", status_code=400)

        now = self._clock()
        record = AuthorizationCode(
            code=str(uuid.uuid4()),
            user_id=str(uuid.uuid4()),
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=q.get("scope", ""),
            resource=q.get("resource") or None,
            code_challenge=challenge,
            code_challenge_method=(method or "plain") if challenge else None,
            expires_at=now + AUTH_CODE_TTL,
            created_at=now,
        )
        await self.codes.issue(record)
        audit("code_issued", client_id=client_id, user_id=record.user_id, pkce=bool(challenge))

        return RedirectResponse(add_query_params(redirect_uri, code=record.code, state=state), status_code=302)

    # --- /oauth/token ---

    async def handle_token(self, request: Request) -> Response:
        form = await request.form()
        try:
            body = await self._exchange_code(request, {k: str(v) for k, v in form.items()})
        except OAuthError as e:
            if e.kind is ErrorKind.SERVER_ERROR:
                logger.error("token endpoint: %s", e)
            return _token_error(e)
        return JSONResponse(body, headers={"Cache-Control": "no-store"})

    async def _exchange_code(self, request: Request, form: dict[str, str]) -> dict[str, Any]:
        basic_id, basic_secret = parse_basic_auth(request.headers.get("authorization"))
        client_id = form.get("client_id") or basic_id
        client_secret = form.get("client_secret") or basic_secret
        code = form.get("code")
        redirect_uri = form.get("redirect_uri")
        resource = form.get("resource") or None

        if form.get("grant_type") != "authorization_code":
            raise OAuthError(ErrorKind.UNSUPPORTED_GRANT_TYPE)
        if not code or not redirect_uri or not client_id or not client_secret:
            raise OAuthError(ErrorKind.INVALID_REQUEST)
        if not await self.clients.verify_secret(client_id, client_secret):
            audit("token_rejected", client_id=client_id, reason="invalid_client")
            raise OAuthError(ErrorKind.INVALID_CLIENT)

        # Checked before redemption so a misconfigured server does not burn codes.
        if not self.tokens.has_signing_key():
            raise OAuthError(ErrorKind.SERVER_ERROR, "Signing key not configured")

        record = await self.codes.consume(code)
        if record is None:
            audit("token_rejected", client_id=client_id, code=redact(code), reason="unknown_code")
            raise OAuthError(ErrorKind.INVALID_GRANT)
        if record.redirect_uri != redirect_uri or record.client_id != client_id:
            audit("token_rejected", client_id=client_id, reason="code_mismatch")
            raise OAuthError(ErrorKind.INVALID_GRANT)

        if resource and record.resource and resource != record.resource:
            raise OAuthError(ErrorKind.INVALID_TARGET, "resource mismatch")
        resolved_resource = record.resource or resource

        if record.code_challenge:
            verifier = form.get("code_verifier")
            if not verifier:
                raise OAuthError(ErrorKind.INVALID_GRANT, "code_verifier required")
            if not verify_pkce(verifier, record.code_challenge, record.code_challenge_method or "plain"):
                audit("token_rejected", client_id=client_id, reason="pkce")
                raise OAuthError(ErrorKind.INVALID_GRANT, "PKCE verification failed")

        issuer = self.issuer_for(request_origin(request))
        access_token = self.tokens.sign(
            user_id=record.user_id,
            client_id=record.client_id,
            scope=record.scope,
            issuer=issuer,
            audience=token_audience(issuer, resolved_resource),
            ttl_seconds=ACCESS_TOKEN_TTL,
        )
        audit("token_issued", client_id=client_id, user_id=record.user_id)
        return {"access_token": access_token, "token_type": "Bearer", "expires_in": ACCESS_TOKEN_TTL}

    # --- /oauth/jwks ---

    async def handle_jwks(self, request: Request) -> Response:
        try:
            return JSONResponse(self.tokens.publish_key_set())
        except OAuthError as e:
            return JSONResponse({"error": "JWT public key not configured"}, status_code=e.status)

    # --- /oauth/setup ---

    async def handle_setup(self, request: Request) -> Response:
        if not self.setup_secret:
            return JSONResponse({"error": "server_not_configured"}, status_code=500)

        header = request.headers.get("authorization", "")
        presented = header[len("Bearer "):] if header.startswith("Bearer ") else ""
        if not hmac.compare_digest(presented.encode(), self.setup_secret.encode()):
            audit("setup_rejected", client=request.client.host if request.client else None)
            return JSONResponse({"error": "unauthorized"}, status_code=401)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid request"}, status_code=400)

        client_id = body.get("client_id")
        client_secret = body.get("client_secret")
        redirect_uris = body.get("redirect_uris")
        if (
            not isinstance(client_id, str) or not client_id
            or not isinstance(client_secret, str) or not client_secret
            or not isinstance(redirect_uris, list)
            or not all(isinstance(u, str) for u in redirect_uris)
        ):
            return JSONResponse({"error": "Invalid request"}, status_code=400)

        await self.clients.register(OAuthClient(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uris=redirect_uris,
            created_at=self._clock(),
        ))
        audit("client_registered", client_id=client_id, redirect_uris=redirect_uris)
        return JSONResponse({"message": "Client registered successfully"})

    # --- discovery ---

    async def handle_authorization_server_metadata(self, request: Request) -> Response:
        origin = request_origin(request)
        return JSONResponse({
            "issuer": self.issuer_for(origin),
            "authorization_endpoint": f"{origin}/oauth/authorize",
            "token_endpoint": f"{origin}/oauth/token",
            "jwks_uri": f"{origin}/oauth/jwks",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
            "code_challenge_methods_supported": ["S256"],
        })

    async def handle_protected_resource_metadata(self, request: Request) -> Response:
        origin = request_origin(request)
        suffix = request.path_params.get("resource")
        resource = f"{origin}/{suffix}" if suffix else f"{origin}{MCP_PATH}"
        return JSONResponse({
            "resource": resource,
            "authorization_servers": [self.issuer_for(origin)],
            "bearer_methods_supported": ["header"],
        })

    # --- /hatena/oauth/callback ---

    async def handle_hatena_callback(self, request: Request) -> Response:
        q = request.query_params
        oauth_token = q.get("oauth_token")
        verifier = q.get("oauth_verifier")
        if not oauth_token or not verifier:
            return PlainTextResponse("Missing oauth params", status_code=400)

        try:
            user = await self.bridge.complete(q.get("state") or None, oauth_token, verifier)
        except CorrelationMissingError:
            return PlainTextResponse("Invalid or expired state", status_code=400)
        except HatenaOAuthError:
            return PlainTextResponse("Failed to complete authorization", status_code=500)

        hatena_id = user.hatena.hatena_id if user.hatena else None
        return HTMLResponse(_connected_page(hatena_id))


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

def _connected_page(hatena_id: str | None) -> str:
    who = f" as <strong>{html_mod.escape(hatena_id)}</strong>" if hatena_id else ""
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Hatena Blog MCP: Connected</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #f4f4f9; color: #333;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }}
        .card {{ background: #fff; border-radius: 8px; padding: 2rem;
            max-width: 400px; width: 90%; text-align: center;
            box-shadow: 0 4px 6px rgba(0, 0, 0, 0.1); }}
        h2 {{ color: #00a4de; margin: 0 0 1rem 0; }}
    </style>
</head>
<body>
    <div class="card">
        <h2>Hatena blog connected</h2>
        <p>Signed in{who}. You can close this tab and return to your assistant.</p>
    </div>
</body>
</html>"""
