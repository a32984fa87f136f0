"""
Bring-your-own-model widget: one AI turn, kept local until published.

invoke() adds the prompt as an ephemeral user message (meta.sentToAI),
sends the prompt plus recent context to /chat, and adds the reply as an
ephemeral assistant message. Failures come back as an ephemeral assistant
message carrying the error text. Nothing is retried.
"""

from __future__ import annotations

import logging

import httpx

from byomchat.client.api import ApiClient, ApiError
from byomchat.client.auth import AuthStore
from byomchat.client.chat import AI_CONTEXT_LIMIT, ChatSession
from byomchat.client.provider import ProviderStore
from byomchat.storage.models import Message, MessageMeta

logger = logging.getLogger(__name__)


class NotAuthenticated(Exception):
    pass


class ByomWidget:
    def __init__(
        self,
        api: ApiClient,
        provider: ProviderStore,
        auth: AuthStore,
        session: ChatSession,
        context_limit: int = AI_CONTEXT_LIMIT,
    ):
        self.api = api
        self.provider = provider
        self.auth = auth
        self.session = session
        self.context_limit = context_limit
        # Set when invoke() was called without a connected provider
        self.needs_setup = False

    async def invoke(self, prompt: str) -> Message | None:
        """Run one AI turn. Returns the ephemeral reply, or None if no model is connected."""
        if not self.auth.snapshot().signed_in:
            raise NotAuthenticated("Please log in")
        if not self.provider.connected:
            self.needs_setup = True
            return None
        self.needs_setup = False

        self.session.add_ephemeral_prompt(prompt)
        payload = {
            "prompt": prompt,
            "conversation": self.session.snapshot_for_ai(self.context_limit),
        }
        try:
            res = await self.api.post("/chat", payload)
        except (ApiError, httpx.HTTPError) as e:
            logger.warning("AI call failed: %s", e)
            return self.session.add_ephemeral_reply(str(e))

        res = res if isinstance(res, dict) else {}
        return self.session.add_ephemeral_reply(
            str(res.get("reply", "")),
            MessageMeta.from_dict(res.get("meta")),
        )
