from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """WebSocket event types"""
    STATE_UPDATE = "state_update"
    CONSENT_REQUEST = "consent_request"
    ERROR = "error"
    CONNECTION = "connection"

    # Client -> server
    USER_MESSAGE = "user_message"
    DRAFT_PROMPT = "draft_prompt"
    STOP = "stop"
    CONSENT_RESPONSE = "consent_response"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    client_id: Optional[str] = None


class StateUpdateEvent(BaseEvent):
    """Full orchestrator snapshot, camelCase keyed"""
    type: Literal[EventType.STATE_UPDATE] = EventType.STATE_UPDATE
    payload: Dict[str, Any]


class ConsentRequestEvent(BaseEvent):
    """A tool call waiting for the user's decision"""
    type: Literal[EventType.CONSENT_REQUEST] = EventType.CONSENT_REQUEST
    request_id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]


class UserMessage(BaseEvent):
    """Prompt sent from the chat front end"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str


class DraftPromptMessage(BaseEvent):
    """Text currently typed in the prompt box"""
    type: Literal[EventType.DRAFT_PROMPT] = EventType.DRAFT_PROMPT
    content: str


class StopMessage(BaseEvent):
    type: Literal[EventType.STOP] = EventType.STOP


class ConsentResponse(BaseEvent):
    """User's answer to a consent request"""
    type: Literal[EventType.CONSENT_RESPONSE] = EventType.CONSENT_RESPONSE
    request_id: str
    approved: bool
