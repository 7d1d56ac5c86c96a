"""
jwt_tokens.py: RS256 access tokens and the published key set.

Signing keys are handled as JSON Web Keys. A KeyProvider is injected into
the issuer and the verifier instead of both reading process-wide
configuration, which keeps key rotation explicit: the provider signs with
one active key and may keep publishing retired public keys until every
token signed with them has expired.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from oauth_errors import ErrorKind, OAuthError

logger = logging.getLogger("hatena-jwt")

JWT_ALGORITHM = "RS256"
ACCESS_TOKEN_TTL = 3600  # seconds
RSA_KEY_SIZE = 2048

_PUBLIC_JWK_MEMBERS = ("kty", "n", "e", "kid", "alg", "use")


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

@dataclass
class SigningKey:
    kid: str
    private_jwk: dict[str, Any]
    public_jwk: dict[str, Any]


def public_jwk_from(jwk_dict: dict[str, Any]) -> dict[str, Any]:
    """Drop private RSA members so only the verification half is published."""
    return {k: jwk_dict[k] for k in _PUBLIC_JWK_MEMBERS if k in jwk_dict}


def generate_signing_key() -> SigningKey:
    """Create an RSA-2048 keypair tagged for RS256 signing."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    kid = str(uuid.uuid4())
    meta = {"kid": kid, "alg": JWT_ALGORITHM, "use": "sig"}
    private_jwk = {**RSAAlgorithm.to_jwk(private_key, as_dict=True), **meta}
    public_jwk = {**RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True), **meta}
    return SigningKey(kid=kid, private_jwk=private_jwk, public_jwk=public_jwk)


def load_jwk(jwk_dict: dict[str, Any]) -> Any:
    """Import a JWK dict as a key object usable by PyJWT."""
    return jwt.PyJWK(jwk_dict, algorithm=JWT_ALGORITHM).key


class KeyProvider(Protocol):
    def current_private_key(self) -> dict[str, Any] | None: ...

    def current_public_key(self) -> dict[str, Any] | None: ...

    def published_keys(self) -> list[dict[str, Any]]: ...


@dataclass
class StaticKeyProvider:
    """Keys fixed at startup (from the environment or a test fixture)."""

    private_jwk: dict[str, Any] | None = None
    public_jwk: dict[str, Any] | None = None
    retired_public_jwks: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_signing_key(cls, key: SigningKey) -> "StaticKeyProvider":
        return cls(private_jwk=key.private_jwk, public_jwk=key.public_jwk)

    def current_private_key(self) -> dict[str, Any] | None:
        return self.private_jwk

    def current_public_key(self) -> dict[str, Any] | None:
        return public_jwk_from(self.public_jwk) if self.public_jwk else None

    def published_keys(self) -> list[dict[str, Any]]:
        keys = []
        current = self.current_public_key()
        if current:
            keys.append(current)
        keys.extend(public_jwk_from(k) for k in self.retired_public_jwks)
        return keys


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------

class TokenIssuer:
    def __init__(self, keys: KeyProvider, clock: Callable[[], float] = time.time):
        self.keys = keys
        self._clock = clock

    def has_signing_key(self) -> bool:
        return self.keys.current_private_key() is not None

    def sign(
        self,
        *,
        user_id: str,
        client_id: str,
        scope: str,
        issuer: str,
        audience: str | list[str],
        ttl_seconds: int = ACCESS_TOKEN_TTL,
        private_jwk: dict[str, Any] | None = None,
    ) -> str:
        private_jwk = private_jwk or self.keys.current_private_key()
        if not private_jwk:
            raise OAuthError(ErrorKind.SERVER_ERROR, "Signing key not configured")

        now = int(self._clock())
        payload = {
            "sub": user_id,
            "client_id": client_id,
            "scope": scope,
            "iss": issuer,
            "aud": audience,
            "iat": now,
            "exp": now + ttl_seconds,
        }
        headers = {"kid": private_jwk["kid"]} if private_jwk.get("kid") else None
        return jwt.encode(payload, load_jwk(private_jwk), algorithm=JWT_ALGORITHM, headers=headers)

    def publish_key_set(self) -> dict[str, list[dict[str, Any]]]:
        keys = self.keys.published_keys()
        if not keys:
            raise OAuthError(ErrorKind.SERVER_ERROR, "JWT public key not configured")
        return {"keys": keys}


def token_audience(issuer: str, resource: str | None) -> str | list[str]:
    """Audience for a newly issued token.

    With a resource indicator the token is bound to the resource and to the
    issuer itself; without one it is bound to the issuer only.
    """
    if resource and resource != issuer:
        return [resource, issuer]
    return issuer
