"""
Preview Routes

FastAPI routes and WebSocket endpoint exposing provisioning status.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .lifecycle import PreviewSession, SessionRegistry, get_session_registry
from .models import StatusUpdate

logger = logging.getLogger(__name__)


# ============================================
# Request/Response Models
# ============================================

class CreateSessionRequest(BaseModel):
    """Request to create a preview session"""
    session_id: Optional[str] = None


class CreateSessionResponse(BaseModel):
    """Response from creating a preview session"""
    session_id: str
    status: str
    ws_url: str


class SubmitFilesRequest(BaseModel):
    """Project files for a preview; an empty set starts nothing"""
    files: Dict[str, str] = {}


def _require_session(registry: SessionRegistry, session_id: str) -> PreviewSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Preview session {session_id} not found")
    return session


def _request_scheme(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-proto")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.url.scheme


# ============================================
# REST API Router
# ============================================

preview_router = APIRouter(prefix="/api/preview", tags=["preview"])


@preview_router.post("/sessions", response_model=CreateSessionResponse)
async def create_session(
    request: Optional[CreateSessionRequest] = None,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Create a preview session (or return the existing one with that id)"""
    session = registry.create(request.session_id if request else None)

    return CreateSessionResponse(
        session_id=session.session_id,
        status=session.state.status.value,
        ws_url=f"/api/preview/ws/{session.session_id}",
    )


@preview_router.get("/sessions/{session_id}")
async def get_session_state(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """Get provisioning state"""
    session = _require_session(registry, session_id)
    return session.state.model_dump(mode="json")


@preview_router.post("/sessions/{session_id}/files")
async def submit_files(
    session_id: str,
    body: SubmitFilesRequest,
    request: Request,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Submit project files; a non-empty set (re)starts provisioning"""
    session = _require_session(registry, session_id)

    try:
        await session.check_environment(_request_scheme(request), request.url.hostname)
        state = await session.submit_files(body.files)
        return state.model_dump(mode="json")

    except Exception as e:
        logger.error(f"Failed to submit files: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@preview_router.post("/sessions/{session_id}/restart")
async def restart_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """Retry: start a brand-new run with the current files"""
    session = _require_session(registry, session_id)

    try:
        state = await session.restart()
        return state.model_dump(mode="json")

    except Exception as e:
        logger.error(f"Failed to restart preview: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@preview_router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    """Dispose a session and its sandbox"""
    if not await registry.dispose(session_id):
        raise HTTPException(status_code=404, detail=f"Preview session {session_id} not found")
    return {"status": "deleted", "session_id": session_id}


# ============================================
# WebSocket Router
# ============================================

preview_ws_router = APIRouter(tags=["preview-ws"])


class ConnectionManager:
    """Manages WebSocket connections"""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, session_id: str, websocket: WebSocket):
        """Connect a WebSocket to a session"""
        await websocket.accept()
        self.active_connections.setdefault(session_id, []).append(websocket)
        logger.info(f"WebSocket connected to preview {session_id}")

    def disconnect(self, session_id: str, websocket: WebSocket):
        """Disconnect a WebSocket"""
        if session_id in self.active_connections:
            if websocket in self.active_connections[session_id]:
                self.active_connections[session_id].remove(websocket)

            if not self.active_connections[session_id]:
                del self.active_connections[session_id]

        logger.info(f"WebSocket disconnected from preview {session_id}")

    async def send_to(self, websocket: WebSocket, message: dict):
        """Send message to specific connection"""
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"Failed to send message: {e}")


connection_manager = ConnectionManager()


@preview_ws_router.websocket("/api/preview/ws/{session_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    session_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """WebSocket endpoint streaming status updates"""
    session = registry.get(session_id)
    if session is None:
        logger.warning(f"WebSocket rejected, unknown preview {session_id}")
        await websocket.close(code=4404)
        return

    await connection_manager.connect(session_id, websocket)

    # Updates are queued in publish order and sent by a single writer task
    outbox: asyncio.Queue = asyncio.Queue()

    def on_update(update: StatusUpdate):
        outbox.put_nowait({
            "type": "status_update",
            "payload": update.model_dump(mode="json"),
        })

    async def writer():
        while True:
            message = await outbox.get()
            await connection_manager.send_to(websocket, message)

    unsubscribe = session.subscribe(on_update)
    writer_task = asyncio.ensure_future(writer())

    # Send initial state
    outbox.put_nowait({
        "type": "state_update",
        "payload": session.state.model_dump(mode="json"),
    })

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type")

            logger.debug(f"Received WS message: {msg_type}")

            if msg_type == "ping":
                outbox.put_nowait({"type": "pong"})

            elif msg_type == "state_request":
                outbox.put_nowait({
                    "type": "state_update",
                    "payload": session.state.model_dump(mode="json"),
                })

            elif msg_type == "restart":
                await session.restart()

            else:
                logger.warning(f"Unknown message type: {msg_type}")

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {session_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        unsubscribe()
        writer_task.cancel()
        connection_manager.disconnect(session_id, websocket)
