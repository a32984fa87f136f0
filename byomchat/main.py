"""
FastAPI application: the byomchat server entry point.

  - /ws        real-time conversation gateway (join/history/message/assistant)
  - /healthz   liveness probe
  - /api/*     reverse proxy to the BYOM provider backend
  - /*         single-page app shell from the client build
"""

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse

from byomchat.config import get_config
from byomchat.gateway import RoomManager, SessionGateway
from byomchat.proxy import ApiProxy
from byomchat.storage import ConversationStore, make_store
from byomchat.wiretap import WireLog

BUILD_MISSING = "Build missing: dist/index.html not found. Did the client build run?"

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
store: ConversationStore | None = None
gateway: SessionGateway | None = None
api_proxy: ApiProxy | None = None
wire_log: WireLog | None = None
dist_dir: Path | None = None

_started_at = time.monotonic()


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _resolve_dist_dir(candidates: list[str]) -> Path:
    """First candidate holding an index.html, else the first candidate."""
    paths = [Path(c) for c in candidates] or [Path("./dist")]
    for p in paths:
        if (p / "index.html").exists():
            return p
    return paths[0]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global store, gateway, api_proxy, wire_log, dist_dir

    cfg = get_config()
    _setup_logging(cfg)
    logger = logging.getLogger(__name__)

    store_cfg = cfg["store"]
    store = make_store(store_cfg["kind"], max_messages=store_cfg["max_messages"])

    wire_log = None
    if cfg["wiretap"].get("enabled"):
        wire_log = WireLog(cfg["wiretap"]["path"])

    gateway = SessionGateway(
        store,
        RoomManager(),
        wire=wire_log,
        enforce_participant_limit=cfg["gateway"].get("enforce_participant_limit", False),
    )
    api_proxy = ApiProxy(cfg["proxy"]["target"], timeout=cfg["proxy"].get("timeout", 60))
    dist_dir = _resolve_dist_dir(cfg["static"].get("dist_dirs", []))

    logger.info(
        "byomchat started — listening on %s:%s",
        cfg["server"]["host"],
        cfg["server"]["port"],
    )
    logger.info("Serving static files from: %s", dist_dir)
    logger.info("Proxying /api -> %s", api_proxy.target)
    logger.info("Store: %r", store)
    logger.info(
        "Participant limit: %s",
        "enforced by server" if gateway.enforce_participant_limit else "client convention",
    )
    logger.info("Wiretap: %s", cfg["wiretap"]["path"] if wire_log else "disabled")

    yield

    if wire_log:
        wire_log.close()
    logger.info("byomchat shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="byomchat",
    description="Bring-your-own-model shared chat.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config()["server"].get("cors_origins", []),
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.get("/healthz")
async def healthz():
    """Health check, plus store and room counts for `byomchat ring`."""
    body = {"ok": True, "uptime": time.monotonic() - _started_at}
    if store is not None:
        body.update(store.stats())
    if gateway is not None:
        body["rooms"] = gateway.rooms.room_count()
        body["connections"] = gateway.rooms.connection_count()
    return JSONResponse(body)


@app.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    """One long-lived connection per client; frames are protocol envelopes."""
    await websocket.accept()
    session = gateway.open(websocket)
    logging.getLogger(__name__).info("[%s] client connected", session.connection_id)
    reason = None
    try:
        while True:
            msg = await websocket.receive()
            if msg["type"] == "websocket.disconnect":
                reason = msg.get("code")
                break
            # Text or binary; anything undecodable is dropped by handle_frame
            frame = msg.get("text") or msg.get("bytes")
            if frame:
                await session.handle_frame(frame)
    except WebSocketDisconnect as e:
        reason = e.code
    finally:
        session.disconnect(reason)


@app.api_route("/api/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def api_passthrough(path: str, request: Request):
    """Forward to the provider backend with the /api prefix stripped."""
    return await api_proxy.forward(request, path)


# ---------------------------------------------------------------------------
# SPA shell. MUST be the last route registered.
# ---------------------------------------------------------------------------

@app.get("/{path:path}")
async def spa(path: str):
    """Serve a built asset if one matches, else index.html."""
    root = (dist_dir or _resolve_dist_dir(get_config()["static"]["dist_dirs"])).resolve()
    if path:
        candidate = (root / path).resolve()
        if candidate.is_file() and candidate.is_relative_to(root):
            return FileResponse(candidate)

    index = root / "index.html"
    if not index.exists():
        return PlainTextResponse(BUILD_MISSING, status_code=500)
    return FileResponse(index, media_type="text/html")


# ---------------------------------------------------------------------------
# Run with: python -m byomchat.main
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    cfg = get_config()
    uvicorn.run(
        "byomchat.main:app",
        host=cfg["server"]["host"],
        port=cfg["server"]["port"],
        reload=False,
    )
