"""
bearer_auth.py: Bearer token verification for the protected MCP endpoint.

BearerVerifier checks an ``Authorization: Bearer <jwt>`` header against the
keys published by the KeyProvider. Every verification failure (signature,
issuer, audience, expiry) is reported with the same error so callers cannot
tell which check tripped.

BearerAuthMiddleware is the ASGI guard in front of ``/mcp``. On success it
puts the Identity on ``request.state.identity`` for the tool handlers; on
failure it answers 401 with a WWW-Authenticate challenge that points at the
protected-resource metadata.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

import jwt
from starlette.requests import HTTPConnection
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from audit_log import audit
from jwt_tokens import JWT_ALGORITHM, KeyProvider, load_jwk
from oauth_errors import ErrorKind, OAuthError

logger = logging.getLogger("hatena-bearer")

PROTECTED_RESOURCE_METADATA_PATH = "/.well-known/oauth-protected-resource"
MCP_PATH = "/mcp"


@dataclass
class Identity:
    user_id: str
    claims: dict[str, Any]


def request_origin(conn: HTTPConnection) -> str:
    """scheme://host[:port] of the incoming request."""
    return f"{conn.url.scheme}://{conn.url.netloc}"


class BearerVerifier:
    def __init__(self, keys: KeyProvider, leeway: int = 0):
        self.keys = keys
        self.leeway = leeway

    def _select_key(self, token: str) -> dict[str, Any]:
        published = self.keys.published_keys()
        if not published:
            raise OAuthError(ErrorKind.SERVER_ERROR, "JWT public key not configured")
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except jwt.InvalidTokenError:
            raise OAuthError(ErrorKind.INVALID_OR_EXPIRED_TOKEN, "Invalid or expired token") from None
        for candidate in published:
            if kid and candidate.get("kid") == kid:
                return candidate
        return published[0]

    def verify(
        self,
        authorization: str | None,
        *,
        issuer: str,
        expected_audiences: list[str] | tuple[str, ...] = (),
    ) -> Identity:
        if not authorization or not authorization.startswith("Bearer "):
            raise OAuthError(ErrorKind.MISSING_TOKEN, "Missing bearer token")
        token = authorization[len("Bearer "):].strip()
        if not token:
            raise OAuthError(ErrorKind.MISSING_TOKEN, "Missing bearer token")

        public_jwk = self._select_key(token)
        try:
            public_key = load_jwk(public_jwk)
        except jwt.PyJWKError:
            logger.error("configured JWT public key cannot be imported")
            raise OAuthError(ErrorKind.SERVER_ERROR, "JWT public key not usable") from None

        # The issuer is always an acceptable audience.
        audiences = list(dict.fromkeys([*expected_audiences, issuer]))
        try:
            claims = jwt.decode(
                token,
                public_key,
                algorithms=[JWT_ALGORITHM],
                issuer=issuer,
                audience=audiences,
                leeway=self.leeway,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.InvalidTokenError as e:
            audit("token_rejected", reason=type(e).__name__)
            raise OAuthError(ErrorKind.INVALID_OR_EXPIRED_TOKEN, "Invalid or expired token") from None

        sub = claims.get("sub")
        if not sub:
            audit("token_rejected", reason="no_subject")
            raise OAuthError(ErrorKind.NO_SUBJECT, "Token has no subject")
        return Identity(user_id=sub, claims=claims)


# ---------------------------------------------------------------------------
# ASGI guard
# ---------------------------------------------------------------------------

def _challenge(origin: str, description: str) -> str:
    metadata_url = f"{origin}{PROTECTED_RESOURCE_METADATA_PATH}{MCP_PATH}"
    return (
        f'Bearer resource_metadata="{metadata_url}", '
        f'error="invalid_token", error_description="{description}"'
    )


class BearerAuthMiddleware:
    """Requires a valid bearer token on every request under ``/mcp``.

    ``issuer_for`` maps the request origin to the expected issuer, so a
    configured issuer and the origin-derived default behave the same way
    here as on the token endpoint.
    """

    def __init__(
        self,
        app: ASGIApp,
        verifier: BearerVerifier,
        issuer_for: Callable[[str], str] = lambda origin: origin,
        protected_path: str = MCP_PATH,
    ):
        self.app = app
        self.verifier = verifier
        self.issuer_for = issuer_for
        self.protected_path = protected_path

    def _is_protected(self, path: str) -> bool:
        return path == self.protected_path or path.startswith(self.protected_path + "/")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._is_protected(scope.get("path", "")):
            await self.app(scope, receive, send)
            return

        conn = HTTPConnection(scope)
        origin = request_origin(conn)
        try:
            identity = self.verifier.verify(
                conn.headers.get("authorization"),
                issuer=self.issuer_for(origin),
                expected_audiences=[f"{origin}{self.protected_path}", origin],
            )
        except OAuthError as e:
            headers = {}
            if e.status == 401:
                headers["WWW-Authenticate"] = _challenge(origin, e.description or e.kind.code)
            response = JSONResponse(e.to_dict(), status_code=e.status, headers=headers)
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})["identity"] = identity
        await self.app(scope, receive, send)
