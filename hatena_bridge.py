"""
hatena_bridge.py: Links a local user to a Hatena account over OAuth 1.0a.

Flow per user:

  idle
    → start(): request token issued, correlation stored under two keys
       (our ``state`` and Hatena's request token, since Hatena may drop
       ``state`` on the way back)
    → complete(): correlation taken, sibling alias deleted
    → verifier exchanged, credential persisted → linked

A callback without a live correlation record is rejected. A rejected
exchange leaves the stored credential untouched, and the consumed
correlation means the user has to start over.
"""

import logging
import uuid
from dataclasses import dataclass

from audit_log import audit, redact
from hatena_oauth1 import HatenaOAuth1Client, build_authorize_url
from oauth_errors import HatenaOAuthError
from oauth_stores import (
    CorrelationState,
    CorrelationStateStore,
    HatenaCredential,
    UserCredentialStore,
    UserState,
)

logger = logging.getLogger("hatena-bridge")

CALLBACK_PATH = "/hatena/oauth/callback"


class CorrelationMissingError(Exception):
    """No live correlation record matches the callback."""


@dataclass
class BridgeStart:
    authorize_url: str
    state: str


class HatenaBridge:
    def __init__(
        self,
        oauth1: HatenaOAuth1Client,
        correlations: CorrelationStateStore,
        users: UserCredentialStore,
    ):
        self.oauth1 = oauth1
        self.correlations = correlations
        self.users = users

    async def start(self, user_id: str, callback_url: str) -> BridgeStart:
        # Nothing is stored unless Hatena hands out a request token.
        token = await self.oauth1.get_request_token(callback_url)
        state = str(uuid.uuid4())
        record = CorrelationState(
            user_id=user_id,
            request_token=token.request_token,
            request_token_secret=token.request_token_secret,
            state=state,
        )
        await self.correlations.put(state, record)
        await self.correlations.put(token.request_token, record)
        audit("bridge_started", user_id=user_id, request_token=redact(token.request_token))
        return BridgeStart(authorize_url=build_authorize_url(token.request_token, state), state=state)

    async def take_correlation(self, state: str | None, oauth_token: str) -> CorrelationState:
        """Consume the correlation under either alias and drop the other one."""
        consumed, record = state, None
        if state:
            record = await self.correlations.take(state)
        if record is None:
            consumed, record = oauth_token, await self.correlations.take(oauth_token)
        if record is None:
            raise CorrelationMissingError("Invalid or expired state")

        # Only the record's own aliases; never touch keys of another flow.
        for alias in {record.state, record.request_token} - {consumed, None}:
            await self.correlations.delete(alias)

        if record.request_token != oauth_token:
            raise CorrelationMissingError("Invalid or expired state")
        return record

    async def complete(self, state: str | None, oauth_token: str, verifier: str) -> UserState:
        try:
            record = await self.take_correlation(state, oauth_token)
        except CorrelationMissingError:
            audit("bridge_failed", reason="missing_correlation")
            raise

        try:
            access = await self.oauth1.exchange_access_token(
                record.request_token, record.request_token_secret, verifier,
            )
        except HatenaOAuthError as e:
            audit("bridge_failed", user_id=record.user_id, reason="exchange_failed", status=e.status)
            logger.error("hatena access token exchange failed: %s", e)
            raise

        user = await self.users.update_hatena(
            record.user_id,
            HatenaCredential(
                access_token=access.access_token,
                access_secret=access.access_secret,
                hatena_id=access.hatena_id,
            ),
        )
        audit("bridge_linked", user_id=record.user_id, hatena_id=access.hatena_id)
        return user
