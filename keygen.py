#!/usr/bin/env python3
"""
keygen.py: Generate the secrets a deployment needs.

Prints an RS256 signing key pair as JWK JSON, a random OAuth client id and
secret, and the body for the one-time POST /oauth/setup call.

    python keygen.py --issuer https://hatena-mcp.example.com > .env.new
"""

import argparse
import json
import secrets
import sys
import uuid

from jwt_tokens import generate_signing_key

DEFAULT_REDIRECT_URIS = [
    "https://chatgpt.com/oauth-callback-url",
    "https://claude.ai/api/mcp/auth_callback",
    "https://claude.com/api/mcp/auth_callback",
]


def render(issuer: str, redirect_uris: list[str]) -> str:
    key = generate_signing_key()
    client_id = str(uuid.uuid4())
    client_secret = secrets.token_urlsafe(32)
    setup_body = {
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_uris": redirect_uris,
    }
    lines = [
        "# === Environment ===",
        f"JWT_PUBLIC_KEY={json.dumps(key.public_jwk, separators=(',', ':'))}",
        f"JWT_PRIVATE_KEY={json.dumps(key.private_jwk, separators=(',', ':'))}",
        f"OAUTH_CLIENT_ID={client_id}",
        f"OAUTH_CLIENT_SECRET={client_secret}",
        f"OAUTH_REDIRECT_URIS={','.join(redirect_uris)}",
        f"OAUTH_ISSUER={issuer}",
        "",
        "# === Client registration ===",
        "# Either keep OAUTH_CLIENT_* above (registered at startup), or register",
        "# once against a running server:",
        f"#   POST {issuer}/oauth/setup",
        "#   Authorization: Bearer $SETUP_SECRET",
        *("#   " + line for line in json.dumps(setup_body, indent=2).splitlines()),
    ]
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate JWT keys and OAuth client credentials")
    parser.add_argument("--issuer", default="https://your-domain.example.com",
                        help="Public origin of the server")
    parser.add_argument("--redirect-uri", action="append", dest="redirect_uris",
                        help="Allowed redirect URI (repeatable; defaults to ChatGPT and Claude)")
    args = parser.parse_args(argv)

    print(render(args.issuer.rstrip("/"), args.redirect_uris or DEFAULT_REDIRECT_URIS))
    return 0


if __name__ == "__main__":
    sys.exit(main())
