from typing import Any, Awaitable, Callable, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone
import asyncio
import inspect
import time
import uuid
import structlog

from session_orchestrator.domain.models.errors import ConsentDenied, ToolNotFoundError
from session_orchestrator.domain.tool.tool_registry import ToolRegistry
from session_orchestrator.domain.tool.tool_validator import ToolParameterValidator
from session_orchestrator.infrastructure.observability.logging import orchestrator_logger

logger = structlog.get_logger(__name__)


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time_ms: Optional[float] = None


class ConsentRequest(BaseModel):
    """A tool call waiting for the user's approval"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


ConsentListener = Callable[[ConsentRequest], Awaitable[None]]


class ConsentGate:
    """Holds tool calls until an external consent decision arrives"""

    def __init__(self, require_consent: bool = True, timeout: Optional[float] = 120.0):
        self.require_consent = require_consent
        self.timeout = timeout
        self.listeners: List[ConsentListener] = []
        self._pending: Dict[str, asyncio.Future] = {}
        self._requests: Dict[str, ConsentRequest] = {}

    def add_listener(self, listener: ConsentListener):
        self.listeners.append(listener)

    async def request(self, tool_name: str, arguments: Dict[str, Any]) -> bool:
        """Ask for consent and wait for the answer; a timeout counts as denial"""

        if not self.require_consent:
            return True

        request = ConsentRequest(tool_name=tool_name, arguments=arguments)
        future = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        self._requests[request.id] = request

        try:
            for listener in list(self.listeners):
                try:
                    await listener(request)
                except Exception as e:
                    logger.error("Consent listener failed", request_id=request.id, error=str(e))

            return await asyncio.wait_for(future, timeout=self.timeout)

        except asyncio.TimeoutError:
            logger.warning("Consent request timed out", request_id=request.id, tool_name=tool_name)
            return False
        finally:
            self._pending.pop(request.id, None)
            self._requests.pop(request.id, None)

    def resolve(self, request_id: str, approved: bool) -> bool:
        """Answer a pending request; returns False if it is unknown or already answered"""

        future = self._pending.get(request_id)
        if future is None or future.done():
            return False
        future.set_result(approved)
        return True

    def pending_requests(self) -> List[ConsentRequest]:
        return list(self._requests.values())


class ToolExecutor:
    """Runs tool calls requested by the model, gated by consent"""

    def __init__(self, registry: Optional[ToolRegistry] = None, consent_gate: Optional[ConsentGate] = None):
        self.registry = registry or ToolRegistry()
        self.consent_gate = consent_gate or ConsentGate(require_consent=False)

    def list_tools(self) -> List[Dict[str, Any]]:
        return self.registry.list_tools()

    async def invoke(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Execute a tool; every failure becomes an unsuccessful ToolResult"""

        arguments = arguments or {}
        start = time.perf_counter()

        try:
            tool = self.registry.get_tool(name)
            if tool is None:
                raise ToolNotFoundError(name)

            validation = ToolParameterValidator.validate_tool_call(tool, arguments)
            if not validation.is_valid:
                result = ToolResult(success=False, error="; ".join(validation.errors))
            else:
                if not await self.consent_gate.request(name, arguments):
                    raise ConsentDenied(name)

                data = tool.handler(**arguments)
                if inspect.isawaitable(data):
                    data = await data
                result = ToolResult(success=True, data=data)

        except Exception as e:
            result = ToolResult(success=False, error=str(e))

        result.execution_time_ms = (time.perf_counter() - start) * 1000
        orchestrator_logger.log_tool_execution(
            tool_name=name,
            input_data=arguments,
            output_data=result.data,
            duration_ms=result.execution_time_ms,
            success=result.success,
            error=result.error
        )
        return result
