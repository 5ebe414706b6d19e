from typing import Any, Dict, Optional


class KbAgentError(Exception):
    """Base class for all agent errors"""


class ProviderError(KbAgentError):
    """Language model provider call failed or returned nothing usable"""

    def __init__(self, message: str, *, empty_response: bool = False):
        super().__init__(message)
        self.empty_response = empty_response


class ToolExecutionError(KbAgentError):
    """A tool invocation failed"""

    def __init__(self, tool_name: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.details = details or {}

    def to_observation(self) -> Dict[str, Any]:
        """Error-shaped observation fed back to the model"""

        observation: Dict[str, Any] = {"error": str(self), "tool": self.tool_name}
        if self.details:
            observation["details"] = self.details
        return observation


class ToolNotFoundError(ToolExecutionError):
    """Tool name is not registered"""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, "tool is not registered")


class ToolValidationError(ToolExecutionError):
    """Tool arguments do not match the declared parameter schema"""


class PipelineValidationError(KbAgentError, ValueError):
    """Pipeline definition is invalid (duplicate names, unknown deps, cycles)"""


class PipelineStepError(KbAgentError):
    """A pipeline step exhausted its retries"""

    def __init__(self, step_name: str, message: str, attempts: int = 1):
        super().__init__(f"Step '{step_name}' failed: {message}")
        self.step_name = step_name
        self.attempts = attempts


class ContextProtocolError(KbAgentError, RuntimeError):
    """Tool-call / tool-result adjacency contract was violated by the caller"""
