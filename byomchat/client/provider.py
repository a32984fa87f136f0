"""
Provider registration state: is a model connected, which one, and its
masked config (secrets come back obscured, never in plaintext).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from byomchat.client.api import ApiClient, ApiError
from byomchat.client.auth import AuthStore
from byomchat.client.observable import Observable

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "http")


@dataclass(frozen=True)
class ProviderConfig:
    api_key: str | None = None
    model: str | None = None
    endpoint: str | None = None
    system_prompt: str | None = None

    def to_dict(self) -> dict:
        out = {
            "apiKey": self.api_key,
            "model": self.model,
            "endpoint": self.endpoint,
            "systemPrompt": self.system_prompt,
        }
        return {k: v for k, v in out.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict | None) -> ProviderConfig:
        data = data or {}
        return cls(
            api_key=data.get("apiKey"),
            model=data.get("model"),
            endpoint=data.get("endpoint"),
            system_prompt=data.get("systemPrompt"),
        )


@dataclass(frozen=True)
class ProviderState:
    connected: bool = False
    provider: str | None = None
    masked_config: ProviderConfig | None = None
    loading: bool = False
    error: str | None = None


class ProviderStore(Observable):
    def __init__(self, api: ApiClient):
        super().__init__()
        self.api = api
        self._state = ProviderState()

    def snapshot(self) -> ProviderState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state.connected

    def _set(self, **changes):
        self._state = replace(self._state, **changes)
        self._emit()

    def _apply(self, resp):
        provider = resp.get("provider") if isinstance(resp, dict) else None
        if isinstance(provider, dict) and provider.get("provider"):
            self._set(
                connected=True,
                provider=provider["provider"],
                masked_config=ProviderConfig.from_dict(provider.get("config")),
                error=None,
            )

    def bind_auth(self, auth: AuthStore):
        """Bootstrap on sign-in, forget the provider on sign-out."""
        signed_in = auth.snapshot().signed_in

        def on_auth():
            nonlocal signed_in
            now = auth.snapshot().signed_in
            if now and not signed_in:
                self._spawn(self.bootstrap())
            elif signed_in and not now:
                self._state = ProviderState()
                self._emit()
            signed_in = now

        return auth.subscribe(on_auth)

    async def bootstrap(self):
        """Read the current registration. A 404 just means not connected."""
        self._set(loading=True, error=None)
        try:
            self._apply(await self.api.get("/provider"))
        except ApiError as e:
            if e.status_code == 404:
                self._set(connected=False, provider=None, masked_config=None, error=None)
            else:
                self._set(error=str(e))
        finally:
            self._set(loading=False)

    async def register(self, provider: str, config: ProviderConfig):
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: '{provider}'. Available: {', '.join(PROVIDERS)}")
        self._set(loading=True, error=None)
        try:
            await self.api.post("/register-provider", {"provider": provider, "config": config.to_dict()})
            # Read back to get masked values
            self._apply(await self.api.get("/provider"))
            logger.info("Provider '%s' connected", provider)
        except ApiError as e:
            self._set(error=str(e) or "Failed to register provider")
            raise
        finally:
            self._set(loading=False)

    async def disconnect(self):
        self._set(loading=True, error=None)
        try:
            await self.api.delete("/provider")
            self._set(connected=False, provider=None, masked_config=None)
        except ApiError as e:
            self._set(error=str(e) or "Failed to disconnect provider")
            raise
        finally:
            self._set(loading=False)
