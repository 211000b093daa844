#!/usr/bin/env python3
"""Video Kiosk Relay - Relay Server

Pairs a tablet (controller) with a phone (recorder) and hands recordings off:
- WebSocket at /ws for device registration and record/stop/ready relay
- REST API for video upload and retrieval through Supabase Storage
- Health and introspection endpoints
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from config import (
    HEARTBEAT_INTERVAL,
    HEARTBEAT_TIMEOUT,
    LOG_LEVEL,
    RELAY_HOST,
    RELAY_PORT,
    STORAGE_BUCKET,
    SUPABASE_ANON_KEY,
    SUPABASE_SERVICE_KEY,
    SUPABASE_URL,
)
from gateway import ConnectionGateway
from handoff import create_handoff_router
from registry import DeviceRegistry
from router import SessionRouter
from sessions import SessionTracker
from storage import ObjectStore, SupabaseStore

logger = logging.getLogger("relay.server")

registry = DeviceRegistry()
gateway = ConnectionGateway()
sessions = SessionTracker()
relay = SessionRouter(registry, gateway, sessions)

# Close code for handshakes from origins outside the allow-list
ORIGIN_REJECTED_CODE = 4003

# --- Shared HTTP client ---
# Single httpx.AsyncClient reused for all store requests.
# Initialized in lifespan(), closed on shutdown.
_http_client: Optional[httpx.AsyncClient] = None
_store: Optional[ObjectStore] = None


def set_store(store: Optional[ObjectStore]):
    global _store
    _store = store


def get_store() -> ObjectStore:
    if _store is None:
        raise RuntimeError("Object store not initialized (server not started)")
    return _store


async def _maintenance_loop():
    """Ping quiet connections, reap dead ones and time out stalled sessions."""
    while True:
        try:
            await asyncio.sleep(HEARTBEAT_INTERVAL)
            reaped = await gateway.heartbeat(HEARTBEAT_INTERVAL)
            expired = await relay.expire_sessions()
            if reaped or expired:
                logger.info(f"[maintenance] reaped {len(reaped)} connection(s), expired {len(expired)} session(s)")
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("[maintenance] pass failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _http_client

    # Refuse to start without store credentials
    config.validate()

    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(30.0, connect=5.0),
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
    )
    logger.info("Shared HTTP client initialized")

    if _store is None:
        set_store(SupabaseStore(
            _http_client,
            base_url=SUPABASE_URL,
            service_key=SUPABASE_SERVICE_KEY,
            anon_key=SUPABASE_ANON_KEY,
            bucket=STORAGE_BUCKET,
        ))
        logger.info(f"Supabase store ready (bucket {STORAGE_BUCKET})")

    maintenance_task = asyncio.create_task(_maintenance_loop())
    logger.info(f"Relay ready; allowed origins: {', '.join(config.allowed_origins())}")
    yield
    maintenance_task.cancel()
    try:
        await maintenance_task
    except asyncio.CancelledError:
        pass
    await _http_client.aclose()
    _http_client = None
    logger.info("Shared HTTP client closed")


app = FastAPI(title="Video Kiosk Relay", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=["Accept-Ranges", "Content-Range", "Content-Length"],
)

app.include_router(create_handoff_router(get_store))


# --- REST API ---

@app.get("/health")
async def health_check():
    """Liveness probe."""
    return JSONResponse({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "devices": len(registry),
        "activeSessions": sessions.active_count,
    })


@app.get("/api/devices")
async def list_devices():
    """List registered devices and whether their connection is still open."""
    devices = await registry.list_devices()
    return JSONResponse({"devices": [
        {**d.to_dict(), "connected": gateway.is_open(d.handle)} for d in devices
    ]})


@app.get("/api/sessions")
async def list_sessions():
    """List active and recently finished recording sessions."""
    return JSONResponse({"sessions": await sessions.list_sessions()})


# --- WebSocket: relay ---

def _origin_allowed(ws: WebSocket) -> bool:
    origin = ws.headers.get("origin")
    # Non-browser clients send no Origin
    if not origin:
        return True
    return origin.rstrip("/") in config.allowed_origins()


@app.websocket("/ws")
async def relay_ws(ws: WebSocket):
    """WebSocket endpoint for tablet and phone clients.

    Protocol: see router.py. Every frame is {type, data, sessionId?}.
    """
    if not _origin_allowed(ws):
        logger.warning(f"Rejected WebSocket from origin {ws.headers.get('origin')}")
        await ws.close(code=ORIGIN_REJECTED_CODE, reason="Origin not allowed")
        return

    await ws.accept()
    conn = gateway.connect(ws)
    client = f"{ws.client.host}:{ws.client.port}" if ws.client else "unknown"
    logger.info(f"{conn.handle} from {client}")
    reason = "client closed"

    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await relay.handle(conn.handle, raw)
    except WebSocketDisconnect as e:
        reason = f"client closed (code {e.code})"
    except Exception as e:
        logger.exception(f"Relay WebSocket error on {conn.handle}")
        reason = f"transport error: {e}"
    finally:
        await gateway.disconnect(conn.handle, reason)


def main():
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )
    try:
        config.validate()
    except config.ConfigError as e:
        logger.error(str(e))
        raise SystemExit(1)
    logger.info(f"Starting relay on {RELAY_HOST}:{RELAY_PORT}")
    # Transport-level pings detect peers that vanish without a close frame
    uvicorn.run(
        app,
        host=RELAY_HOST,
        port=RELAY_PORT,
        ws_ping_interval=HEARTBEAT_INTERVAL,
        ws_ping_timeout=HEARTBEAT_TIMEOUT,
    )


if __name__ == "__main__":
    main()
