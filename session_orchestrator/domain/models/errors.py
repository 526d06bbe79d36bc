from typing import Optional


class OrchestratorError(Exception):
    """Base error for orchestrator operations"""


class PreconditionError(OrchestratorError):
    """Operation invoked on a resource that is not in the required lifecycle state"""

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message)
        self.resource = resource


class ResourceError(OrchestratorError):
    """Loading or creating a resource failed"""

    def __init__(self, resource: str, message: str):
        super().__init__(message)
        self.resource = resource


class GenerationAbort(OrchestratorError):
    """Generation was cancelled before any output was produced"""


class ConsentDenied(OrchestratorError):
    """A tool call was rejected by the consent step"""

    def __init__(self, tool_name: str):
        super().__init__(f"Consent denied for tool '{tool_name}'")
        self.tool_name = tool_name


class ToolNotFoundError(OrchestratorError):
    """Requested tool is not registered"""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' is not registered")
        self.tool_name = tool_name
