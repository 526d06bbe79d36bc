from typing import Any, Dict, List
from dataclasses import dataclass, field
import jsonschema

from session_orchestrator.domain.tool.tool_registry import ToolDefinition


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


# Parameter validation
class ToolParameterValidator:
    @staticmethod
    def validate_tool_call(tool: ToolDefinition, parameters: Dict[str, Any]) -> ValidationResult:
        try:
            jsonschema.validate(parameters, tool.parameters)
            return ValidationResult(True, [])

        except jsonschema.ValidationError as e:
            return ValidationResult(False, [f"Schema validation failed: {e.message}"])
        except jsonschema.SchemaError as e:
            return ValidationResult(False, [f"Invalid tool schema: {e.message}"])
