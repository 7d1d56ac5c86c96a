#!/usr/bin/env python3
"""
Hatena Blog MCP: post to Hatena Blog from an MCP client.

Runs as a streamable-http MCP server that is also its own OAuth 2.0
authorization server. MCP clients (ChatGPT, Claude) obtain an RS256
bearer token from /oauth/token and call /mcp with it. Inside a session
the user links a Hatena account once through start_hatena_oauth; the
resulting OAuth 1.0a credential is kept per user and used by the blog
tools.
"""

import asyncio
import argparse
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from audit_log import AUDIT_LOGGER_NAME, audit, redact
from auth_server import HatenaAuthServer
from bearer_auth import BearerAuthMiddleware, BearerVerifier, request_origin
from config import Settings, load_settings
from hatena_blog import HatenaBlogClient
from hatena_bridge import CALLBACK_PATH, HatenaBridge
from hatena_oauth1 import HatenaOAuth1Client
from jwt_tokens import TokenIssuer
from kv_store import KeyValueStore, MemoryKeyValueStore
from oauth_stores import (
    AccountNotLinkedError,
    AuthorizationCodeStore,
    BlogInfo,
    ClientRegistry,
    CorrelationStateStore,
    HatenaCredential,
    UserCredentialStore,
)

logger = logging.getLogger("hatena-mcp")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

@dataclass
class Services:
    settings: Settings
    kv: KeyValueStore
    clients: ClientRegistry
    users: UserCredentialStore
    oauth1: HatenaOAuth1Client
    bridge: HatenaBridge
    blog: HatenaBlogClient
    auth: HatenaAuthServer
    verifier: BearerVerifier


def build_services(
    settings: Settings,
    kv: KeyValueStore | None = None,
    http: httpx.AsyncClient | None = None,
) -> Services:
    kv = kv or MemoryKeyValueStore()
    keys = settings.key_provider()
    clients = ClientRegistry(kv)
    users = UserCredentialStore(kv)
    oauth1 = HatenaOAuth1Client(
        settings.hatena_consumer_key,
        settings.hatena_consumer_secret,
        http=http,
        scope=settings.hatena_scope,
        timeout=settings.http_timeout,
    )
    bridge = HatenaBridge(oauth1, CorrelationStateStore(kv), users)
    auth = HatenaAuthServer(
        clients,
        AuthorizationCodeStore(kv),
        TokenIssuer(keys),
        bridge,
        setup_secret=settings.setup_secret,
        issuer=settings.issuer,
    )
    return Services(
        settings=settings,
        kv=kv,
        clients=clients,
        users=users,
        oauth1=oauth1,
        bridge=bridge,
        blog=HatenaBlogClient(oauth1),
        auth=auth,
        verifier=BearerVerifier(keys),
    )


async def register_bootstrap_clients(services: Services) -> None:
    for client in services.settings.bootstrap_clients:
        await services.clients.register(client)
        logger.info("hatena-mcp: registered client %s (%d redirect uris)",
                    client.client_id, len(client.redirect_uris))


SETTINGS = load_settings()
_services = build_services(SETTINGS)


# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------

_INSTRUCTIONS = (
    "Hatena Blog MCP: read and write Hatena Blog entries.\n"
    "\n"
    "First link a Hatena account:\n"
    "  start_hatena_oauth   - Returns an authorize URL. Open it and approve.\n"
    "\n"
    "Then, with a blog id (e.g. example.hatenablog.com):\n"
    "  list_entries         - List entries, newest first.\n"
    "  create_entry         - Publish a new entry (or a draft).\n"
    "  update_entry         - Replace an entry's title/content/draft flag.\n"
    "  save_blog / list_saved_blogs - Remember blog ids for later.\n"
    "  reset_hatena_session - Forget the linked account.\n"
)

mcp = FastMCP(
    "hatena-blog-mcp",
    instructions=_INSTRUCTIONS,
    stateless_http=True,
    # Deployed behind a proxy, so the Host header is the public domain.
    transport_security=TransportSecuritySettings(
        enable_dns_rebinding_protection=False,
    ),
)


def _register_routes(auth: HatenaAuthServer) -> None:
    for path, methods, handler in auth.route_table():
        mcp.custom_route(path, methods=methods)(handler)


_register_routes(_services.auth)


@mcp.custom_route("/", methods=["GET"])
async def _home(request: Request) -> Response:
    origin = request_origin(request)
    return HTMLResponse(
        "<!DOCTYPE html><html><head><title>Hatena Blog MCP</title></head><body>"
        "<h1>Hatena Blog MCP</h1>"
        f"<p>MCP endpoint: <code>{origin}/mcp</code></p>"
        "</body></html>"
    )


def _current_user(ctx: Context) -> str:
    request = ctx.request_context.request
    identity = getattr(request.state, "identity", None) if request is not None else None
    if identity is None:
        raise PermissionError("Not authenticated")
    return identity.user_id


async def _require_credential(user_id: str) -> HatenaCredential:
    state = await _services.users.get(user_id)
    if state is None or state.hatena is None or not state.hatena.hatena_id:
        raise AccountNotLinkedError("Hatena account not linked")
    return state.hatena


@mcp.tool()
async def start_hatena_oauth(ctx: Context) -> str:
    """Begin linking a Hatena account.

    Returns JSON with ``authorize_url`` (open it in a browser and approve)
    and ``state``. After approval Hatena redirects back to this server and
    the account is linked.
    """
    user_id = _current_user(ctx)
    callback_url = request_origin(ctx.request_context.request) + CALLBACK_PATH
    started = await _services.bridge.start(user_id, callback_url)
    return json.dumps({"authorize_url": started.authorize_url, "state": started.state})


@mcp.tool()
async def list_entries(
    blog_id: str, ctx: Context, limit: int | None = None, offset: int | None = None,
) -> str:
    """List entries of a Hatena blog.

    Args:
        blog_id: Blog domain, e.g. example.hatenablog.com
        limit: Max entries to return
        offset: Number of entries to skip
    """
    credential = await _require_credential(_current_user(ctx))
    data = await _services.blog.list_entries(credential, blog_id, limit=limit, offset=offset)
    return json.dumps(data)


@mcp.tool()
async def create_entry(
    blog_id: str, title: str, content: str, ctx: Context, draft: bool | None = None,
) -> str:
    """Create a new entry.

    Args:
        blog_id: Blog domain, e.g. example.hatenablog.com
        title: Entry title
        content: Entry body
        draft: Save as a draft instead of publishing
    """
    user_id = _current_user(ctx)
    credential = await _require_credential(user_id)
    result = await _services.blog.create_entry(credential, blog_id, title, content, draft=draft)
    audit("entry_created", user_id=user_id, blog_id=blog_id)
    return json.dumps(result)


@mcp.tool()
async def update_entry(
    blog_id: str,
    entry_id: str,
    ctx: Context,
    title: str | None = None,
    content: str | None = None,
    draft: bool | None = None,
) -> str:
    """Update an existing entry. The entry is replaced as a whole.

    Args:
        blog_id: Blog domain, e.g. example.hatenablog.com
        entry_id: Entry id (last path segment of the entry's edit URL)
        title: New title
        content: New body
        draft: Keep or turn the entry into a draft
    """
    user_id = _current_user(ctx)
    credential = await _require_credential(user_id)
    result = await _services.blog.update_entry(
        credential, blog_id, entry_id, title=title, content=content, draft=draft,
    )
    audit("entry_updated", user_id=user_id, blog_id=blog_id, entry_id=entry_id)
    return json.dumps(result)


@mcp.tool()
async def save_blog(blog_id: str, ctx: Context, title: str | None = None, url: str | None = None) -> str:
    """Remember a blog id (with optional title and URL) for later use."""
    user_id = _current_user(ctx)
    await _require_credential(user_id)
    state = await _services.users.save_blog(user_id, BlogInfo(blog_id=blog_id, title=title, url=url))
    blogs = state.hatena.blogs or []
    return json.dumps({"saved": blog_id, "blogs": [b.model_dump() for b in blogs]})


@mcp.tool()
async def list_saved_blogs(ctx: Context) -> str:
    """List the blogs saved with save_blog."""
    credential = await _require_credential(_current_user(ctx))
    return json.dumps({"blogs": [b.model_dump() for b in credential.blogs or []]})


@mcp.tool()
async def reset_hatena_session(ctx: Context) -> str:
    """Forget the linked Hatena account so it can be linked again cleanly."""
    user_id = _current_user(ctx)
    await _services.users.clear_hatena(user_id)
    audit("bridge_reset", user_id=user_id)
    return "Hatena session cleared. Run start_hatena_oauth again."


# ---------------------------------------------------------------------------
# ASGI app
# ---------------------------------------------------------------------------

class _AccessLogMiddleware:
    def __init__(self, inner: ASGIApp):
        self.inner = inner

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            hdrs = dict(scope.get("headers", []))
            auth = hdrs.get(b"authorization", b"").decode(errors="replace")
            ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
            logger.info("recv: %s %s auth=%s ua=%s", scope.get("method", "?"), scope.get("path", "?"),
                        redact(auth, keep=12), ua[:60])
        await self.inner(scope, receive, send)


def create_app(services: Services | None = None) -> ASGIApp:
    """streamable-http app with every /mcp request behind the bearer guard."""
    services = services or _services
    app = BearerAuthMiddleware(
        mcp.streamable_http_app(),
        services.verifier,
        issuer_for=services.auth.issuer_for,
    )
    return _AccessLogMiddleware(app)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON-lines to ~/.hatena-mcp/audit.log
    _audit_log_path = Path.home() / ".hatena-mcp" / "audit.log"
    _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(_audit_log_path)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="Hatena Blog MCP server")
    parser.add_argument("--port", type=int, default=8787)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    import uvicorn

    if not SETTINGS.hatena_consumer_key or not SETTINGS.hatena_consumer_secret:
        logger.warning("hatena-mcp: HATENA_CONSUMER_KEY/SECRET not set; account linking will fail")
    if not SETTINGS.jwt_private_key:
        logger.warning("hatena-mcp: JWT_PRIVATE_KEY not set; /oauth/token will answer server_error")

    app = create_app()
    logger.info(f"hatena-mcp: starting HTTP server on {args.host}:{args.port}")
    config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info",
                            proxy_headers=True, forwarded_allow_ips="*")
    server = uvicorn.Server(config)

    async def _serve() -> None:
        await register_bootstrap_clients(_services)
        try:
            await server.serve()
        finally:
            await _services.oauth1.aclose()

    asyncio.run(_serve())
