"""
oauth_stores.py: Typed stores layered on a KeyValueStore.

  ClientRegistry          registered OAuth2 clients (no expiry)
  AuthorizationCodeStore  one-time authorization codes (TTL from expires_at)
  CorrelationStateStore   OAuth1 request-token correlation records (600 s)
  UserCredentialStore     delegated Hatena credentials per user

Records are pydantic models and are written to the store as plain dicts,
so any backend that can hold JSON-shaped values works.
"""

import hmac
import logging
import time
from typing import Callable, Literal

from pydantic import BaseModel, Field

from kv_store import KeyValueStore

logger = logging.getLogger("hatena-stores")

AUTH_CODE_TTL = 600  # seconds
CORRELATION_TTL = 600  # seconds


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class OAuthClient(BaseModel):
    client_id: str
    client_secret: str
    redirect_uris: list[str] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)


class AuthorizationCode(BaseModel):
    code: str
    user_id: str
    client_id: str
    redirect_uri: str
    scope: str = ""
    resource: str | None = None
    code_challenge: str | None = None
    code_challenge_method: Literal["S256", "plain"] | None = None
    expires_at: float
    created_at: float = Field(default_factory=time.time)


class CorrelationState(BaseModel):
    user_id: str
    request_token: str
    request_token_secret: str
    # The local state value the record was also written under, if any.
    state: str | None = None
    created_at: float = Field(default_factory=time.time)


class BlogInfo(BaseModel):
    blog_id: str
    title: str | None = None
    url: str | None = None


class HatenaCredential(BaseModel):
    access_token: str
    access_secret: str
    hatena_id: str | None = None
    blogs: list[BlogInfo] | None = None


class UserState(BaseModel):
    hatena: HatenaCredential | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class AccountNotLinkedError(Exception):
    pass


# ---------------------------------------------------------------------------
# ClientRegistry
# ---------------------------------------------------------------------------

class ClientRegistry:
    def __init__(self, kv: KeyValueStore):
        self._kv = kv

    @staticmethod
    def _key(client_id: str) -> str:
        return f"client:{client_id}"

    async def register(self, client: OAuthClient) -> None:
        """Store ``client``, replacing any client registered under the same id."""
        await self._kv.put(self._key(client.client_id), client.model_dump(mode="json"))

    async def get(self, client_id: str) -> OAuthClient | None:
        raw = await self._kv.get(self._key(client_id))
        return OAuthClient.model_validate(raw) if raw else None

    async def verify_secret(self, client_id: str, secret: str) -> bool:
        client = await self.get(client_id)
        if client is None:
            return False
        return hmac.compare_digest(client.client_secret.encode(), secret.encode())

    async def verify_redirect_uri(self, client_id: str, uri: str) -> bool:
        client = await self.get(client_id)
        return client is not None and uri in client.redirect_uris


# ---------------------------------------------------------------------------
# AuthorizationCodeStore
# ---------------------------------------------------------------------------

class AuthorizationCodeStore:
    def __init__(self, kv: KeyValueStore, clock: Callable[[], float] = time.time):
        self._kv = kv
        self._clock = clock

    @staticmethod
    def _key(code: str) -> str:
        return f"code:{code}"

    async def issue(self, record: AuthorizationCode) -> None:
        ttl = max(0.0, record.expires_at - self._clock())
        await self._kv.put(self._key(record.code), record.model_dump(mode="json"), ttl=ttl)

    async def consume(self, code: str) -> AuthorizationCode | None:
        """Return the code record exactly once, or None.

        The record is removed before the expiry check so an expired code is
        also cleaned up. Expiry is checked here as well as by the store,
        since the store's eviction clock may lag.
        """
        raw = await self._kv.take(self._key(code))
        if not raw:
            return None
        record = AuthorizationCode.model_validate(raw)
        if record.expires_at <= self._clock():
            logger.info("authorization code expired before redemption")
            return None
        return record


# ---------------------------------------------------------------------------
# CorrelationStateStore
# ---------------------------------------------------------------------------

class CorrelationStateStore:
    def __init__(self, kv: KeyValueStore, ttl: int = CORRELATION_TTL):
        self._kv = kv
        self._ttl = ttl

    @staticmethod
    def _key(key: str) -> str:
        return f"oauth_state:{key}"

    async def put(self, key: str, record: CorrelationState) -> None:
        await self._kv.put(self._key(key), record.model_dump(mode="json"), ttl=self._ttl)

    async def take(self, key: str) -> CorrelationState | None:
        raw = await self._kv.take(self._key(key))
        return CorrelationState.model_validate(raw) if raw else None

    async def delete(self, key: str) -> None:
        """Best-effort removal; a failure here must not fail the caller."""
        try:
            await self._kv.delete(self._key(key))
        except Exception:
            logger.warning("failed to delete correlation alias", exc_info=True)


# ---------------------------------------------------------------------------
# UserCredentialStore
# ---------------------------------------------------------------------------

class UserCredentialStore:
    def __init__(self, kv: KeyValueStore, clock: Callable[[], float] = time.time):
        self._kv = kv
        self._clock = clock

    @staticmethod
    def _key(user_id: str) -> str:
        return f"user:{user_id}"

    async def get(self, user_id: str) -> UserState | None:
        raw = await self._kv.get(self._key(user_id))
        return UserState.model_validate(raw) if raw else None

    async def _current(self, user_id: str) -> UserState:
        current = await self.get(user_id)
        if current is None:
            now = self._clock()
            current = UserState(created_at=now, updated_at=now)
        return current

    async def _save(self, user_id: str, state: UserState) -> UserState:
        state.updated_at = self._clock()
        await self._kv.put(self._key(user_id), state.model_dump(mode="json"))
        return state

    async def update_hatena(self, user_id: str, credential: HatenaCredential) -> UserState:
        """Store a freshly exchanged credential.

        The saved blog list survives unless ``credential.blogs`` is set.
        """
        current = await self._current(user_id)
        blogs = credential.blogs
        if blogs is None and current.hatena is not None:
            blogs = current.hatena.blogs
        current.hatena = credential.model_copy(update={"blogs": blogs})
        return await self._save(user_id, current)

    async def save_blog(self, user_id: str, info: BlogInfo) -> UserState:
        current = await self._current(user_id)
        if current.hatena is None:
            raise AccountNotLinkedError("Hatena account not linked")
        blogs = list(current.hatena.blogs or [])
        for i, blog in enumerate(blogs):
            if blog.blog_id == info.blog_id:
                blogs[i] = blog.model_copy(update=info.model_dump(exclude_none=True))
                break
        else:
            blogs.append(info)
        current.hatena = current.hatena.model_copy(update={"blogs": blogs})
        return await self._save(user_id, current)

    async def clear_hatena(self, user_id: str) -> UserState:
        current = await self._current(user_id)
        current.hatena = None
        return await self._save(user_id, current)
