"""
HTTP client for the BYOM provider backend (reached through the server's
/api proxy by default).

    GET    /provider           → {ok, provider?: {provider, config}} | 404
    POST   /register-provider  {provider, config}
    DELETE /provider
    POST   /chat               {prompt, conversation} → {reply, meta?}

A 401 signs the user out via AuthStore and raises Unauthorized. Nothing is
retried.
"""

from __future__ import annotations

import json
import logging

import httpx

from byomchat.client.auth import AuthStore

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-2xx response from the backend."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class Unauthorized(ApiError):
    def __init__(self):
        super().__init__(401, "Unauthorized. Please sign in again.")


class ApiClient:
    def __init__(
        self,
        base_url: str,
        auth: AuthStore,
        timeout: float = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = timeout
        self._transport = transport

    async def request(self, method: str, path: str, body=None):
        headers = {"Content-Type": "application/json", **self.auth.auth_header()}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                content=json.dumps(body) if body is not None else None,
            )

        text = resp.text
        try:
            data = json.loads(text) if text else None
        except ValueError:
            data = None

        if resp.status_code == 401:
            self.auth.handle_unauthorized()
            raise Unauthorized()
        if resp.status_code >= 400:
            message = (data.get("error") if isinstance(data, dict) else None) or text or resp.reason_phrase
            logger.debug("%s %s failed: %d %s", method, path, resp.status_code, message)
            raise ApiError(resp.status_code, str(message))
        return data

    async def get(self, path: str):
        return await self.request("GET", path)

    async def post(self, path: str, body=None):
        return await self.request("POST", path, body)

    async def delete(self, path: str):
        return await self.request("DELETE", path)
