from typing import Dict, Any, List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel
from enum import Enum


class ResourceName(str, Enum):
    """Chained resources owned by the orchestrator, in dependency order"""
    LLAMA = "llama"
    MODEL = "model"
    CONTEXT = "context"
    CONTEXT_SEQUENCE = "contextSequence"
    CHAT_SESSION = "chatSession"


RESOURCE_CHAIN: List[ResourceName] = [
    ResourceName.LLAMA,
    ResourceName.MODEL,
    ResourceName.CONTEXT,
    ResourceName.CONTEXT_SEQUENCE,
    ResourceName.CHAT_SESSION,
]


class WireModel(BaseModel):
    """Base model serialized with camelCase keys on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Resource lifecycle state

class ResourceState(WireModel):
    """Lifecycle state of a single resource"""
    loaded: bool = False
    error: Optional[str] = None


class ModelResourceState(ResourceState):
    """Lifecycle state of the loaded model"""
    load_progress: Optional[float] = None
    name: Optional[str] = None


# Streamed fragments and display blocks share one shape

class TextBlock(WireModel):
    """Plain response text"""
    type: Literal["text"] = "text"
    text: str


class SegmentBlock(WireModel):
    """Typed response segment such as a thought"""
    type: Literal["segment"] = "segment"
    segment_type: str
    text: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None


ResponseBlock = Annotated[Union[TextBlock, SegmentBlock], Field(discriminator="type")]
ResponseFragment = ResponseBlock


# Canonical history, owned by the engine's session object

class ResponseSegment(WireModel):
    """Segment stored inside a canonical model response"""
    type: Literal["segment"] = "segment"
    segment_type: str
    text: str
    ended: bool = False
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class FunctionCallRecord(WireModel):
    """Tool call made while generating a model response"""
    type: Literal["functionCall"] = "functionCall"
    name: str
    params: Any = None
    result: Any = None


class SystemHistoryItem(WireModel):
    type: Literal["system"] = "system"
    text: str


class UserHistoryItem(WireModel):
    type: Literal["user"] = "user"
    text: str


class ModelHistoryItem(WireModel):
    type: Literal["model"] = "model"
    response: List[Union[str, ResponseSegment, FunctionCallRecord]] = Field(default_factory=list)


CanonicalHistoryItem = Annotated[
    Union[SystemHistoryItem, UserHistoryItem, ModelHistoryItem],
    Field(discriminator="type")
]

history_adapter = TypeAdapter(List[CanonicalHistoryItem])


# Token accounting

class TokenStats(WireModel):
    """Token usage of a single turn"""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class PerformanceStats(WireModel):
    """Throughput of a single turn"""
    duration_ms: float = 0.0
    tokens_per_second: float = 0.0
    output_tokens_per_second: float = 0.0


class SessionTokenStats(WireModel):
    """Cumulative token usage read from the engine's token meter"""
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    message_count: int = 0


class TurnRecord(WireModel):
    """Stats recorded for the turn whose user item sits at `position`"""
    position: int
    user_text: str
    completed_at: str
    token_stats: TokenStats
    performance_stats: PerformanceStats


# Renderer-facing projection

class SimplifiedUserItem(WireModel):
    type: Literal["user"] = "user"
    id: str
    message: str
    token_stats: Optional[TokenStats] = None


class SimplifiedModelItem(WireModel):
    type: Literal["model"] = "model"
    id: str
    message: List[ResponseBlock] = Field(default_factory=list)
    token_stats: Optional[TokenStats] = None
    performance_stats: Optional[PerformanceStats] = None


SimplifiedChatItem = Annotated[
    Union[SimplifiedUserItem, SimplifiedModelItem],
    Field(discriminator="type")
]


class IdSlot(WireModel):
    """Identity minted for one canonical history position"""
    kind: Literal["user", "model"]
    id: str
    text: Optional[str] = None


class DraftPrompt(WireModel):
    """Prompt being typed in the renderer and its suggested continuation"""
    prompt: str = ""
    completion: str = ""


class ChatSessionState(ResourceState):
    """Lifecycle state of the chat session plus its live projection"""
    generating_result: bool = False
    simplified_chat: List[SimplifiedChatItem] = Field(default_factory=list)
    session_token_stats: SessionTokenStats = Field(default_factory=SessionTokenStats)
    draft_prompt: DraftPrompt = Field(default_factory=DraftPrompt)


class PreservedChat(WireModel):
    """Chat retained across a model unload"""
    messages: List[CanonicalHistoryItem] = Field(default_factory=list)
    simplified_chat: List[SimplifiedChatItem] = Field(default_factory=list)
    session_token_stats: SessionTokenStats = Field(default_factory=SessionTokenStats)
    id_slots: List[Optional[IdSlot]] = Field(default_factory=list)
    turn_stats: Dict[int, TurnRecord] = Field(default_factory=dict)


class OrchestratorState(WireModel):
    """Full snapshot pushed to subscribers after every mutation"""
    app_version: Optional[str] = None
    llama: ResourceState = Field(default_factory=ResourceState)
    selected_model_path: Optional[str] = None
    model: ModelResourceState = Field(default_factory=ModelResourceState)
    context: ResourceState = Field(default_factory=ResourceState)
    context_sequence: ResourceState = Field(default_factory=ResourceState)
    chat_session: ChatSessionState = Field(default_factory=ChatSessionState)
    preserved_chat_history: Optional[PreservedChat] = None


class ExportedChatSession(BaseModel):
    """On-disk layout of an exported chat session"""
    version: str = "1.0"
    model: Optional[str] = None
    created_at: str
    messages: List[CanonicalHistoryItem]


class SavedChat(WireModel):
    """Chat persisted in the chat store"""
    id: str
    title: str
    messages: List[CanonicalHistoryItem] = Field(default_factory=list)
    model: Optional[str] = None
    created_at: str
    updated_at: str
