"""
Realtime Gateway

FastAPI WebSocket endpoint for the dispatch core.

Features:
- Token and session-epoch check at handshake, refusal with a close code
- JSON event frames ``{event, data, ack?}`` with acknowledgements
- Connection tracking per user so disconnect cleanup runs on the last socket
- Health endpoint
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError as FrameError

from lifeline.models.emergency import RealtimeEvent, isoformat, utcnow
from lifeline.services.dispatch.dispatch_engine import DispatchEngine, EventTransport
from lifeline.services.dispatch.errors import ConnectionAuthError, DispatchError
from lifeline.services.dispatch.location_ingest import LocationIngest
from lifeline.services.dispatch.session_binder import SessionBinder, extract_token


logger = logging.getLogger(__name__)

CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403


class ClientEvent(BaseModel):
    """Inbound frame"""
    event: str
    data: Any = None
    ack: Optional[Union[int, str]] = None


class ConnectionManager(EventTransport):
    """Manages WebSocket connections for real-time updates"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_users: Dict[str, str] = {}
        self.user_connections: Dict[str, Set[str]] = {}

    def connect(self, conn_id: str, user_id: str, websocket: WebSocket):
        """Register an accepted, authenticated connection"""
        self.active_connections[conn_id] = websocket
        self.connection_users[conn_id] = user_id
        self.user_connections.setdefault(user_id, set()).add(conn_id)
        logger.info(f"WebSocket client {conn_id} connected for user {user_id}")

    def disconnect(self, conn_id: str) -> int:
        """Remove a connection; returns how many connections its user still has"""
        self.active_connections.pop(conn_id, None)
        user_id = self.connection_users.pop(conn_id, None)
        if user_id is None:
            return 0

        connections = self.user_connections.get(user_id, set())
        connections.discard(conn_id)
        if not connections:
            self.user_connections.pop(user_id, None)
        logger.info(f"WebSocket client {conn_id} disconnected ({len(connections)} left for {user_id})")
        return len(connections)

    def connections_for_user(self, user_id: str) -> Set[str]:
        return set(self.user_connections.get(user_id, ()))

    async def send_event(self, conn_id: str, event: str, payload: Dict[str, Any]) -> bool:
        websocket = self.active_connections.get(conn_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json({"event": event, "data": payload})
        except Exception as e:
            logger.error(f"Error sending {event} to {conn_id}: {e}")
            return False
        return True

    async def send_ack(self, conn_id: str, ack_id: Union[int, str], data: Dict[str, Any]) -> bool:
        websocket = self.active_connections.get(conn_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json({"event": RealtimeEvent.ACK, "ack": ack_id, "data": data})
        except Exception as e:
            logger.error(f"Error acknowledging {conn_id}: {e}")
            return False
        return True

    def __len__(self) -> int:
        return len(self.active_connections)


class RealtimeGateway:
    """Binds the dispatch engine to a FastAPI application"""

    def __init__(
        self,
        engine: DispatchEngine,
        binder: SessionBinder,
        location_ingest: LocationIngest,
        connections: ConnectionManager,
        debug: bool = False
    ):
        self.engine = engine
        self.binder = binder
        self.location_ingest = location_ingest
        self.connections = connections
        self.logger = logging.getLogger(__name__)

        self.handlers = {
            RealtimeEvent.LOCATION_UPDATE: self._on_location_update,
            RealtimeEvent.SUBSCRIBE: self._on_subscribe,
            RealtimeEvent.UNSUBSCRIBE: self._on_unsubscribe,
            RealtimeEvent.RAISE: self._on_raise,
            RealtimeEvent.CANCEL: self._on_cancel,
        }

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.engine.start()
            try:
                yield
            finally:
                await self.engine.stop()

        self.app = FastAPI(
            title="Lifeline Dispatch",
            description="Realtime emergency dispatch",
            version="1.0.0",
            debug=debug,
            lifespan=lifespan
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self._setup_routes()

    def _setup_routes(self):
        """Setup FastAPI routes"""

        @self.app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket):
            await self.handle_connection(websocket)

        @self.app.get("/health")
        async def health_check():
            return {
                "status": "healthy",
                "timestamp": isoformat(utcnow()),
                "activeConnections": len(self.connections),
                "subscribers": len(self.engine.registry),
                "dispatch": self.engine.get_stats()
            }

    async def handle_connection(self, websocket: WebSocket):
        token = extract_token(websocket.query_params, websocket.headers)
        await websocket.accept()

        try:
            identity = self.binder.bind(token)
        except ConnectionAuthError as e:
            await websocket.send_json({
                "event": RealtimeEvent.CONNECT_ERROR,
                "data": {"code": e.code, "message": e.message}
            })
            close_code = CLOSE_FORBIDDEN if e.code == ConnectionAuthError.DEVICE_MISMATCH else CLOSE_UNAUTHORIZED
            await websocket.close(code=close_code)
            return

        conn_id = uuid.uuid4().hex
        user_id = identity.user_id
        self.connections.connect(conn_id, user_id, websocket)

        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_frame(conn_id, user_id, raw)
        except WebSocketDisconnect:
            pass
        finally:
            remaining = self.connections.disconnect(conn_id)
            await self.engine.handle_disconnect(user_id, conn_id, remaining)

    async def handle_frame(self, conn_id: str, user_id: str, raw: str):
        """Decode one client frame, run its handler and acknowledge if asked"""
        try:
            frame = ClientEvent(**json.loads(raw))
        except (ValueError, TypeError, FrameError) as e:
            self.logger.warning(f"Dropping malformed frame from {conn_id}: {e}")
            return

        payload = frame.data if isinstance(frame.data, dict) else {}
        handler = self.handlers.get(frame.event)

        if handler is None:
            response = {"status": "error", "message": "Unknown event"}
        else:
            try:
                response = await handler(user_id, conn_id, payload)
            except DispatchError as e:
                response = e.to_ack()
            except Exception as e:
                self.logger.error(f"Error handling {frame.event} from {user_id}: {e}", exc_info=True)
                response = {"status": "error", "message": "Internal server error"}

        if frame.ack is not None:
            await self.connections.send_ack(conn_id, frame.ack, response)

    async def _on_location_update(self, user_id: str, conn_id: str, payload: Dict[str, Any]):
        self.location_ingest.update(user_id, payload)
        return {"status": "ok"}

    async def _on_subscribe(self, user_id: str, conn_id: str, payload: Dict[str, Any]):
        await self.engine.subscribe(user_id, conn_id)
        return {"status": "ok"}

    async def _on_unsubscribe(self, user_id: str, conn_id: str, payload: Dict[str, Any]):
        self.engine.unsubscribe(user_id, conn_id)
        return {"status": "ok"}

    async def _on_raise(self, user_id: str, conn_id: str, payload: Dict[str, Any]):
        return await self.engine.raise_emergency(user_id, payload)

    async def _on_cancel(self, user_id: str, conn_id: str, payload: Dict[str, Any]):
        return await self.engine.cancel_emergency(user_id, payload)
