from typing import Dict, Set, Optional
from fastapi import WebSocket
from datetime import datetime, timezone
import asyncio
import structlog

from session_orchestrator.domain.models.chat_state import OrchestratorState
from session_orchestrator.domain.tool.tool_executor import ConsentRequest
from .schema.events import BaseEvent, ConnectionEvent, ConsentRequestEvent, ErrorEvent, StateUpdateEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages renderer WebSocket connections and fans out orchestrator events"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, client_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[client_id] = websocket
            self.connection_metadata[client_id] = {
                "connected_at": datetime.now(timezone.utc),
                "last_activity": datetime.now(timezone.utc)
            }

        await self.send_event(
            client_id,
            ConnectionEvent(status="connected", client_id=client_id)
        )

        logger.info("WebSocket connected", client_id=client_id)

    async def disconnect(self, client_id: str):
        """Forget a connection, closing it if it is still open"""
        async with self._lock:
            ws = self.active_connections.pop(client_id, None)
            self.connection_metadata.pop(client_id, None)

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                # Already closed by the peer
                logger.debug("Error closing WebSocket", client_id=client_id, error=str(e))

        logger.info("WebSocket disconnected", client_id=client_id)

    async def send_event(self, client_id: str, event: BaseEvent) -> bool:
        """Send an event to one client"""
        websocket = self.active_connections.get(client_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected client", client_id=client_id)
            return False

        try:
            await websocket.send_json(event.model_dump(mode="json"))

            if client_id in self.connection_metadata:
                self.connection_metadata[client_id]["last_activity"] = datetime.now(timezone.utc)

            return True

        except Exception as e:
            logger.error("Failed to send event", client_id=client_id, error=str(e))
            await self.disconnect(client_id)
            return False

    async def broadcast(self, event: BaseEvent):
        """Send an event to every connected client"""
        clients = list(self.active_connections.keys())
        tasks = [self.send_event(client_id, event) for client_id in clients]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def push_state(self, state: OrchestratorState):
        """State subscriber: mirror every snapshot to the renderers"""
        await self.broadcast(
            StateUpdateEvent(payload=state.model_dump(mode="json", by_alias=True))
        )

    async def push_consent_request(self, request: ConsentRequest):
        """Consent listener: ask the renderers to approve a tool call"""
        await self.broadcast(
            ConsentRequestEvent(
                request_id=request.id,
                tool_name=request.tool_name,
                arguments=request.arguments
            )
        )

    async def send_error(self, client_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a client"""
        error_event = ErrorEvent(
            payload={"message": error_message},
            error_code=error_code,
            client_id=client_id
        )
        await self.send_event(client_id, error_event)

    def get_active_clients(self) -> Set[str]:
        return set(self.active_connections.keys())
