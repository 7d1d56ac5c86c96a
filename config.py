"""
config.py: Startup configuration from environment variables.

  HATENA_CONSUMER_KEY / HATENA_CONSUMER_SECRET   Hatena OAuth consumer
  HATENA_SCOPE                                   scopes requested at initiate
  HATENA_HTTP_TIMEOUT                            outbound timeout (seconds)
  OAUTH_ISSUER                                   issuer URL (default: request origin)
  JWT_PRIVATE_KEY / JWT_PUBLIC_KEY               active signing key, JWK JSON
  JWT_RETIRED_PUBLIC_KEYS                        JSON list of JWKs still accepted
  SETUP_SECRET                                   bearer secret for POST /oauth/setup
  OAUTH_CLIENT_ID / OAUTH_CLIENT_SECRET /
  OAUTH_REDIRECT_URIS                            optional client registered at boot
  HATENA_CLIENTS_FILE                            optional YAML file of clients

Bad values abort startup with SystemExit.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from hatena_oauth1 import DEFAULT_SCOPE
from jwt_tokens import StaticKeyProvider
from oauth_stores import OAuthClient


@dataclass
class Settings:
    hatena_consumer_key: str = ""
    hatena_consumer_secret: str = ""
    hatena_scope: str = DEFAULT_SCOPE
    http_timeout: float = 10.0
    issuer: str | None = None
    jwt_private_key: dict[str, Any] | None = None
    jwt_public_key: dict[str, Any] | None = None
    jwt_retired_public_keys: list[dict[str, Any]] = field(default_factory=list)
    setup_secret: str | None = None
    bootstrap_clients: list[OAuthClient] = field(default_factory=list)

    def key_provider(self) -> StaticKeyProvider:
        return StaticKeyProvider(
            private_jwk=self.jwt_private_key,
            public_jwk=self.jwt_public_key,
            retired_public_jwks=list(self.jwt_retired_public_keys),
        )


def _json_env(env: Mapping[str, str], name: str) -> Any:
    raw = env.get(name)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise SystemExit(f"Invalid JSON in {name}: {e}")


def _split_uris(raw: str) -> list[str]:
    return [u.strip() for u in raw.split(",") if u.strip()]


def load_clients_file(path: Path) -> list[OAuthClient]:
    """Load pre-registered clients from YAML.

    clients:
      chatgpt:
        client_id: ...
        client_secret: ...
        redirect_uris: [https://chatgpt.com/oauth-callback-url]
    """
    if not path.exists():
        raise SystemExit(f"Client config not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "clients" not in raw:
        raise SystemExit(f"Invalid clients file: expected top-level 'clients' key in {path}")

    clients = []
    for name, cfg in (raw["clients"] or {}).items():
        if not isinstance(cfg, dict) or not cfg.get("client_id") or not cfg.get("client_secret"):
            raise SystemExit(f"Invalid client '{name}' in {path}: client_id and client_secret are required")
        uris = cfg.get("redirect_uris", [])
        if isinstance(uris, str):
            uris = _split_uris(uris)
        if not isinstance(uris, list) or not all(isinstance(u, str) for u in uris):
            raise SystemExit(f"Invalid client '{name}' in {path}: redirect_uris must be a list of strings")
        clients.append(OAuthClient(
            client_id=str(cfg["client_id"]),
            client_secret=str(cfg["client_secret"]),
            redirect_uris=uris,
        ))
    return clients


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env

    retired = _json_env(env, "JWT_RETIRED_PUBLIC_KEYS") or []
    if not isinstance(retired, list):
        raise SystemExit("JWT_RETIRED_PUBLIC_KEYS must be a JSON list of JWKs")

    try:
        timeout = float(env.get("HATENA_HTTP_TIMEOUT", "10"))
    except ValueError:
        raise SystemExit("HATENA_HTTP_TIMEOUT must be a number of seconds")

    clients: list[OAuthClient] = []
    if env.get("OAUTH_CLIENT_ID") and env.get("OAUTH_CLIENT_SECRET"):
        clients.append(OAuthClient(
            client_id=env["OAUTH_CLIENT_ID"],
            client_secret=env["OAUTH_CLIENT_SECRET"],
            redirect_uris=_split_uris(env.get("OAUTH_REDIRECT_URIS", "")),
        ))
    if env.get("HATENA_CLIENTS_FILE"):
        clients.extend(load_clients_file(Path(env["HATENA_CLIENTS_FILE"])))

    return Settings(
        hatena_consumer_key=env.get("HATENA_CONSUMER_KEY", ""),
        hatena_consumer_secret=env.get("HATENA_CONSUMER_SECRET", ""),
        hatena_scope=env.get("HATENA_SCOPE", DEFAULT_SCOPE),
        http_timeout=timeout,
        issuer=(env.get("OAUTH_ISSUER") or "").rstrip("/") or None,
        jwt_private_key=_json_env(env, "JWT_PRIVATE_KEY"),
        jwt_public_key=_json_env(env, "JWT_PUBLIC_KEY"),
        jwt_retired_public_keys=retired,
        setup_secret=env.get("SETUP_SECRET") or None,
        bootstrap_clients=clients,
    )
