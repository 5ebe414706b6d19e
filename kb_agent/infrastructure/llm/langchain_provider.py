from typing import Any, Dict, List, Optional, Sequence
import json
import uuid

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from kb_agent.domain.llm.provider import FunctionCall, LanguageModelProvider, ProviderResponse, ToolChoice
from kb_agent.domain.models.agent_state import Message, Role
from kb_agent.domain.models.errors import ProviderError

logger = structlog.get_logger(__name__)


def to_openai_tools(tool_schemas: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Registry schemas in the function-tool format accepted by bind_tools"""

    return [
        {
            "type": "function",
            "function": {
                "name": schema["name"],
                "description": schema.get("description", ""),
                "parameters": schema.get("parameters") or {"type": "object", "properties": {}},
            },
        }
        for schema in tool_schemas
    ]


def to_langchain_messages(
    messages: Sequence[Message],
    system_prompt: Optional[str] = None
) -> List[BaseMessage]:
    """Convert context messages; only a leading system message is kept as SystemMessage"""

    converted: List[BaseMessage] = []
    if system_prompt:
        converted.append(SystemMessage(content=system_prompt))

    for message in messages:
        content = message.content or ""
        if message.role == Role.SYSTEM:
            if not converted:
                converted.append(SystemMessage(content=content))
            else:
                # Many chat APIs reject system messages after the first turn
                converted.append(HumanMessage(content=f"[system note]\n{content}"))
        elif message.role == Role.USER:
            converted.append(HumanMessage(content=content))
        elif message.role == Role.ASSISTANT:
            tool_calls = [
                {"name": call.name, "args": call.arguments, "id": call.id}
                for call in (message.tool_calls or [])
            ]
            converted.append(AIMessage(content=content, tool_calls=tool_calls))
        elif message.role == Role.TOOL:
            converted.append(ToolMessage(
                content=content,
                tool_call_id=message.tool_call_id or "",
                name=message.tool_name
            ))
    return converted


def content_to_text(content: Any) -> str:
    """Flatten LangChain message content (string or content blocks) to text"""

    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return "" if content is None else str(content)


class LangChainProvider(LanguageModelProvider):
    """Provider backed by any LangChain chat model"""

    def __init__(self, model: BaseChatModel, native_tools: bool = True, required_tool_choice: str = "any"):
        self.model = model
        self.native_tools = native_tools
        # Vendors spell "must call a tool" differently ("any", "required")
        self.required_tool_choice = required_tool_choice

    @property
    def supports_native_tool_calling(self) -> bool:
        return self.native_tools

    async def chat(
        self,
        prompt: str,
        *,
        history: Optional[List[Message]] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        messages = to_langchain_messages(list(history or []), system_prompt)
        messages.append(HumanMessage(content=prompt))

        try:
            reply = await self.model.ainvoke(messages, **_generation_kwargs(temperature, max_tokens))
        except Exception as e:
            raise ProviderError(f"{type(self.model).__name__}: {e}") from e
        return content_to_text(reply.content)

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
        lc_messages = to_langchain_messages(messages, system_prompt)

        try:
            runnable = self.model
            if tool_schemas:
                # Tools stay bound under "none" so earlier tool turns remain valid
                choice = {"required": self.required_tool_choice, "none": "none"}.get(tool_choice, "auto")
                runnable = self.model.bind_tools(to_openai_tools(tool_schemas), tool_choice=choice)
            reply = await runnable.ainvoke(lc_messages, **_generation_kwargs(temperature, max_tokens))
        except Exception as e:
            raise ProviderError(f"{type(self.model).__name__}: {e}") from e

        calls = []
        for tool_call in getattr(reply, "tool_calls", None) or []:
            args = tool_call.get("args") or {}
            if isinstance(args, str):
                try:
                    args = json.loads(args)
                except ValueError:
                    logger.warning("Dropping tool call with unparseable arguments", tool=tool_call.get("name"))
                    continue
            calls.append(FunctionCall(
                id=tool_call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                name=tool_call["name"],
                args=args
            ))

        text = content_to_text(reply.content)
        return ProviderResponse(text=text or None, function_calls=calls)


def _generation_kwargs(temperature: Optional[float], max_tokens: Optional[int]) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {}
    if temperature is not None:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    return kwargs
