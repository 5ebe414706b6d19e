from abc import ABC, abstractmethod
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from kb_agent.domain.models.agent_state import Message

ToolChoice = Literal["auto", "required", "none"]


class FunctionCall(BaseModel):
    """Structured tool call returned by a provider"""
    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ProviderResponse(BaseModel):
    """Result of a tool-aware chat call"""
    text: Optional[str] = None
    function_calls: List[FunctionCall] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.text and self.text.strip()) and not self.function_calls


class LanguageModelProvider(ABC):
    """Chat model backend used by the agent"""

    @property
    def supports_native_tool_calling(self) -> bool:
        return False

    @abstractmethod
    async def chat(
        self,
        prompt: str,
        *,
        history: Optional[List[Message]] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        """Plain text completion"""

    async def chat_with_tools(
        self,
        prompt: str,
        *,
        messages: List[Message],
        tool_schemas: List[Dict[str, Any]],
        tool_choice: ToolChoice = "auto",
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> ProviderResponse:
        """Structured tool calling; only used when supports_native_tool_calling"""

        raise NotImplementedError(f"{type(self).__name__} does not support native tool calling")
