"""
Reverse proxy for /api/* → the provider/account backend.

The /api prefix is stripped, query string and body pass through untouched,
and the upstream status and body are returned verbatim (a 401 from upstream
stays a 401 so the client can drop its credential).
"""

import logging

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

# Never forwarded in either direction.
HOP_BY_HOP = {
    "host",
    "content-length",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "upgrade",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
}

STRIPPED_RESPONSE = HOP_BY_HOP | {"content-encoding"}


class ApiProxy:
    """Forwards requests to a single upstream origin."""

    def __init__(self, target: str, timeout: float = 60, transport: httpx.AsyncBaseTransport | None = None):
        self.target = target.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def build_url(self, path: str, query: str = "") -> str:
        url = f"{self.target}/{path.lstrip('/')}"
        if query:
            url += f"?{query}"
        return url

    async def forward(self, request: Request, path: str) -> Response:
        target = self.build_url(path, request.url.query)
        body = await request.body()
        headers = {
            k: v for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(request.method, target, headers=headers, content=body)
        except httpx.HTTPError as e:
            logger.warning("Upstream %s %s failed: %s", request.method, target, e)
            return JSONResponse({"error": f"Upstream unavailable: {e}"}, status_code=502)

        logger.debug("%s /api/%s → %s (%d)", request.method, path, target, resp.status_code)
        out_headers = {
            k: v for k, v in resp.headers.items()
            if k.lower() not in STRIPPED_RESPONSE
        }
        return Response(content=resp.content, status_code=resp.status_code, headers=out_headers)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} target={self.target!r}>"
