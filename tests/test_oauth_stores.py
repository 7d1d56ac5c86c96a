"""Tests for oauth_stores.py."""
import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from kv_store import MemoryKeyValueStore
from oauth_stores import (
    AccountNotLinkedError,
    AuthorizationCode,
    AuthorizationCodeStore,
    BlogInfo,
    ClientRegistry,
    CorrelationState,
    CorrelationStateStore,
    HatenaCredential,
    OAuthClient,
    UserCredentialStore,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return MemoryKeyValueStore(clock=clock)


def _code(clock, code="c1", expires_in=600, **overrides):
    fields = dict(
        code=code,
        user_id="u1",
        client_id="client",
        redirect_uri="https://app.example/cb",
        expires_at=clock() + expires_in,
    )
    fields.update(overrides)
    return AuthorizationCode(**fields)


def _credential(token="at", secret="as", hatena_id="alice", blogs=None):
    return HatenaCredential(access_token=token, access_secret=secret, hatena_id=hatena_id, blogs=blogs)


# ---------------------------------------------------------------------------
# ClientRegistry
# ---------------------------------------------------------------------------

class TestClientRegistry:
    @pytest.mark.asyncio
    async def test_register_and_get(self, kv):
        registry = ClientRegistry(kv)
        await registry.register(OAuthClient(client_id="c", client_secret="s", redirect_uris=["https://a/cb"]))
        client = await registry.get("c")
        assert client.client_id == "c"
        assert client.redirect_uris == ["https://a/cb"]

    @pytest.mark.asyncio
    async def test_unknown_client(self, kv):
        registry = ClientRegistry(kv)
        assert await registry.get("missing") is None
        assert await registry.verify_secret("missing", "s") is False

    @pytest.mark.asyncio
    async def test_verify_secret(self, kv):
        registry = ClientRegistry(kv)
        await registry.register(OAuthClient(client_id="c", client_secret="s3cret"))
        assert await registry.verify_secret("c", "s3cret") is True
        assert await registry.verify_secret("c", "wrong") is False

    @pytest.mark.asyncio
    async def test_reregister_replaces(self, kv):
        registry = ClientRegistry(kv)
        await registry.register(OAuthClient(client_id="c", client_secret="old"))
        await registry.register(OAuthClient(client_id="c", client_secret="new"))
        assert await registry.verify_secret("c", "new") is True
        assert await registry.verify_secret("c", "old") is False

    @pytest.mark.asyncio
    async def test_redirect_uri_exact_match(self, kv):
        registry = ClientRegistry(kv)
        await registry.register(OAuthClient(client_id="c", client_secret="s", redirect_uris=["https://a/cb"]))
        assert await registry.verify_redirect_uri("c", "https://a/cb") is True
        assert await registry.verify_redirect_uri("c", "https://a/cb/") is False


# ---------------------------------------------------------------------------
# AuthorizationCodeStore
# ---------------------------------------------------------------------------

class TestAuthorizationCodeStore:
    @pytest.mark.asyncio
    async def test_consume_once(self, kv, clock):
        store = AuthorizationCodeStore(kv, clock=clock)
        await store.issue(_code(clock))
        first = await store.consume("c1")
        assert first is not None and first.user_id == "u1"
        assert await store.consume("c1") is None

    @pytest.mark.asyncio
    async def test_concurrent_consume_single_winner(self, kv, clock):
        store = AuthorizationCodeStore(kv, clock=clock)
        await store.issue(_code(clock))
        results = await asyncio.gather(*[store.consume("c1") for _ in range(10)])
        assert sum(r is not None for r in results) == 1

    @pytest.mark.asyncio
    async def test_unknown_code(self, kv, clock):
        store = AuthorizationCodeStore(kv, clock=clock)
        assert await store.consume("never-issued") is None

    @pytest.mark.asyncio
    async def test_expired_code_not_returned(self, kv, clock):
        store = AuthorizationCodeStore(kv, clock=clock)
        await store.issue(_code(clock, expires_in=600))
        clock.now += 601
        assert await store.consume("c1") is None

    @pytest.mark.asyncio
    async def test_expired_record_rejected_even_if_store_returns_it(self, clock):
        """The store's own expiry is not trusted alone."""
        record = _code(clock, expires_in=-1)
        kv = AsyncMock()
        kv.take.return_value = record.model_dump(mode="json")
        store = AuthorizationCodeStore(kv, clock=clock)
        assert await store.consume("c1") is None
        kv.take.assert_awaited_once_with("code:c1")

    @pytest.mark.asyncio
    async def test_pkce_fields_round_trip(self, kv, clock):
        store = AuthorizationCodeStore(kv, clock=clock)
        await store.issue(_code(clock, code_challenge="abc", code_challenge_method="S256", resource="https://r"))
        record = await store.consume("c1")
        assert record.code_challenge == "abc"
        assert record.code_challenge_method == "S256"
        assert record.resource == "https://r"


# ---------------------------------------------------------------------------
# CorrelationStateStore
# ---------------------------------------------------------------------------

class TestCorrelationStateStore:
    def _record(self):
        return CorrelationState(user_id="u1", request_token="T1", request_token_secret="TS", state="S1")

    @pytest.mark.asyncio
    async def test_take_consumes(self, kv):
        store = CorrelationStateStore(kv)
        await store.put("S1", self._record())
        assert (await store.take("S1")).request_token == "T1"
        assert await store.take("S1") is None

    @pytest.mark.asyncio
    async def test_aliases_are_independent(self, kv):
        store = CorrelationStateStore(kv)
        await store.put("S1", self._record())
        await store.put("T1", self._record())
        await store.take("S1")
        assert await store.take("T1") is not None

    @pytest.mark.asyncio
    async def test_expires_after_ttl(self, kv, clock):
        store = CorrelationStateStore(kv, ttl=600)
        await store.put("S1", self._record())
        clock.now += 600
        assert await store.take("S1") is None

    @pytest.mark.asyncio
    async def test_delete_swallows_backend_errors(self):
        kv = AsyncMock()
        kv.delete.side_effect = RuntimeError("backend down")
        store = CorrelationStateStore(kv)
        await store.delete("S1")


# ---------------------------------------------------------------------------
# UserCredentialStore
# ---------------------------------------------------------------------------

class TestUserCredentialStore:
    @pytest.mark.asyncio
    async def test_unknown_user(self, kv, clock):
        users = UserCredentialStore(kv, clock=clock)
        assert await users.get("nobody") is None

    @pytest.mark.asyncio
    async def test_update_creates_envelope(self, kv, clock):
        users = UserCredentialStore(kv, clock=clock)
        state = await users.update_hatena("u1", _credential())
        assert state.hatena.hatena_id == "alice"
        assert state.created_at == clock.now
        assert (await users.get("u1")).hatena.access_token == "at"

    @pytest.mark.asyncio
    async def test_update_keeps_saved_blogs(self, kv, clock):
        users = UserCredentialStore(kv, clock=clock)
        await users.update_hatena("u1", _credential())
        await users.save_blog("u1", BlogInfo(blog_id="alice.hatenablog.com"))
        state = await users.update_hatena("u1", _credential(token="at2"))
        assert state.hatena.access_token == "at2"
        assert [b.blog_id for b in state.hatena.blogs] == ["alice.hatenablog.com"]

    @pytest.mark.asyncio
    async def test_update_with_blogs_replaces(self, kv, clock):
        users = UserCredentialStore(kv, clock=clock)
        await users.update_hatena("u1", _credential(blogs=[BlogInfo(blog_id="old")]))
        state = await users.update_hatena("u1", _credential(blogs=[BlogInfo(blog_id="new")]))
        assert [b.blog_id for b in state.hatena.blogs] == ["new"]

    @pytest.mark.asyncio
    async def test_save_blog_requires_link(self, kv, clock):
        users = UserCredentialStore(kv, clock=clock)
        with pytest.raises(AccountNotLinkedError, match="not linked"):
            await users.save_blog("u1", BlogInfo(blog_id="b"))

    @pytest.mark.asyncio
    async def test_save_blog_upserts_by_id(self, kv, clock):
        users = UserCredentialStore(kv, clock=clock)
        await users.update_hatena("u1", _credential())
        await users.save_blog("u1", BlogInfo(blog_id="b", title="Old", url="https://b"))
        await users.save_blog("u1", BlogInfo(blog_id="other"))
        state = await users.save_blog("u1", BlogInfo(blog_id="b", title="New"))
        blogs = {b.blog_id: b for b in state.hatena.blogs}
        assert len(blogs) == 2
        assert blogs["b"].title == "New"
        assert blogs["b"].url == "https://b"

    @pytest.mark.asyncio
    async def test_clear_keeps_envelope(self, kv, clock):
        users = UserCredentialStore(kv, clock=clock)
        created = (await users.update_hatena("u1", _credential())).created_at
        clock.now += 5
        state = await users.clear_hatena("u1")
        assert state.hatena is None
        assert state.created_at == created
        assert state.updated_at == clock.now
