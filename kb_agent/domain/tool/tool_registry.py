from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Callable
import inspect

import structlog

from kb_agent.domain.models.errors import ToolExecutionError, ToolNotFoundError, ToolValidationError
from kb_agent.domain.tool.tool_validator import ToolParameterValidator

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[Dict[str, Any], Dict[str, Any]], Any]


class ToolRegistry(ABC):
    """Capability registry the agent calls tools through"""

    @abstractmethod
    def describe(self) -> List[Dict[str, Any]]:
        """Tool schemas: {name, description, parameters}"""

    @abstractmethod
    def has(self, name: str) -> bool:
        """Whether a tool with this name exists"""

    @abstractmethod
    async def execute(self, name: str, args: Dict[str, Any], ctx: Optional[Dict[str, Any]] = None) -> Any:
        """Run a tool; raise ToolExecutionError on failure"""

    def tool_names(self) -> List[str]:
        return [schema["name"] for schema in self.describe()]


class InMemoryToolRegistry(ToolRegistry):
    """Registry for tools implemented as in-process callables"""

    def __init__(self):
        self.tools: Dict[str, Dict[str, Any]] = {}
        self.handlers: Dict[str, ToolHandler] = {}
        self.tool_categories: Dict[str, List[str]] = {}

    def register_tool(
        self,
        name: str,
        description: str,
        handler: ToolHandler,
        parameters: Optional[Dict[str, Any]] = None,
        category: str = "general"
    ):
        """Register a new tool"""

        if name in self.tools:
            raise ValueError(f"Tool '{name}' is already registered")

        self.tools[name] = {
            "name": name,
            "description": description,
            "parameters": parameters or {"type": "object", "properties": {}, "required": []},
            "category": category,
        }
        self.handlers[name] = handler

        if category not in self.tool_categories:
            self.tool_categories[category] = []
        self.tool_categories[category].append(name)

    def tool(
        self,
        name: str,
        description: str,
        parameters: Optional[Dict[str, Any]] = None,
        category: str = "general"
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of register_tool"""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register_tool(name, description, handler, parameters=parameters, category=category)
            return handler

        return decorator

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            }
            for tool in self.tools.values()
        ]

    def has(self, name: str) -> bool:
        return name in self.tools

    def get_tool_info(self, name: str) -> Optional[Dict[str, Any]]:
        """Get information about a specific tool"""

        return self.tools.get(name)

    def get_tools_by_category(self, category: str) -> List[Dict[str, Any]]:
        """Get tools by category"""

        names = self.tool_categories.get(category, [])
        return [self.tools[name] for name in names if name in self.tools]

    def search_tools(self, query: str) -> List[Dict[str, Any]]:
        """Search tools by name or description"""

        query_lower = query.lower()
        return [
            tool for tool in self.tools.values()
            if query_lower in tool["name"].lower() or query_lower in tool["description"].lower()
        ]

    async def execute(self, name: str, args: Dict[str, Any], ctx: Optional[Dict[str, Any]] = None) -> Any:
        tool = self.tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)

        validation = ToolParameterValidator.validate_tool_call(tool["parameters"], args)
        if not validation.is_valid:
            raise ToolValidationError(name, "invalid arguments", {"errors": validation.errors})

        handler = self.handlers[name]
        try:
            result = handler(args, ctx or {})
            if inspect.isawaitable(result):
                result = await result
        except ToolExecutionError:
            raise
        except Exception as e:
            logger.warning("Tool handler raised", tool_name=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e

        return result
