from typing import Dict, List, Any, Callable, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class ToolDefinition(BaseModel):
    """A tool the model may call during generation"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    category: str = "general"
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    handler: Callable[..., Any] = Field(exclude=True)

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "schema": self.parameters
        }


def get_date() -> str:
    """Get the current date"""
    return datetime.now().strftime("%Y-%m-%d")


def get_time() -> str:
    """Get the current time"""
    return datetime.now().strftime("%I:%M:%S %p")


class ToolRegistry:
    """Registry for managing available tools"""

    def __init__(self, include_builtin: bool = True):
        self.tools: Dict[str, ToolDefinition] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        if include_builtin:
            self._initialize_builtin_tools()

    def _initialize_builtin_tools(self):
        """Register the system tools every session gets"""

        self.register_tool(ToolDefinition(
            name="get_date",
            description="Get the current date",
            category="system",
            handler=get_date
        ))
        self.register_tool(ToolDefinition(
            name="get_time",
            description="Get the current time",
            category="system",
            handler=get_time
        ))

    def register_tool(self, tool: ToolDefinition):
        """Register a new tool, replacing one with the same name"""

        if tool.name in self.tools:
            self.unregister_tool(tool.name)

        self.tools[tool.name] = tool
        self.tool_categories.setdefault(tool.category, []).append(tool.name)

    def unregister_tool(self, name: str) -> bool:
        tool = self.tools.pop(name, None)
        if tool is None:
            return False

        names = self.tool_categories.get(tool.category, [])
        if name in names:
            names.remove(name)
        if not names:
            self.tool_categories.pop(tool.category, None)
        return True

    def clear_category(self, category: str):
        """Drop every tool of a category, e.g. when reloading external tools"""

        for name in list(self.tool_categories.get(category, [])):
            self.unregister_tool(name)

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        return self.tools.get(name)

    def list_tools(self) -> List[Dict[str, Any]]:
        """Describe all available tools"""

        return [tool.describe() for tool in self.tools.values()]

    def get_tools_by_category(self, category: str) -> List[Dict[str, Any]]:
        tool_names = self.tool_categories.get(category, [])
        return [self.tools[name].describe() for name in tool_names if name in self.tools]

    def search_tools(self, query: str) -> List[Dict[str, Any]]:
        """Search tools by name or description"""

        query_lower = query.lower()
        return [
            tool.describe() for tool in self.tools.values()
            if query_lower in tool.name.lower() or query_lower in tool.description.lower()
        ]
