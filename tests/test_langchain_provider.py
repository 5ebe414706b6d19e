from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from pydantic import Field

from kb_agent.domain.models.agent_state import Message, Role, ToolCall
from kb_agent.domain.models.errors import ProviderError
from kb_agent.infrastructure.llm.langchain_provider import (
    LangChainProvider, content_to_text, to_langchain_messages, to_openai_tools
)


def _model(*replies):
    return GenericFakeChatModel(messages=iter(list(replies)))


class ToolBindingFakeModel(GenericFakeChatModel):
    """Fake chat model that records bind_tools arguments"""

    bind_calls: List[Dict[str, Any]] = Field(default_factory=list)

    def bind_tools(self, tools, *, tool_choice=None, **kwargs):
        self.bind_calls.append({"tools": tools, "tool_choice": tool_choice})
        return self


def test_message_conversion():
    messages = [
        Message(role=Role.USER, content="find the logger"),
        Message(role=Role.SYSTEM, content="[Context compressed: 2 tool rounds, 4 results removed]"),
        Message(role=Role.ASSISTANT, tool_calls=[ToolCall(id="c1", name="search_project_code", arguments={"query": "log"})]),
        Message(role=Role.TOOL, content='{"total": 1}', tool_call_id="c1", tool_name="search_project_code"),
    ]

    converted = to_langchain_messages(messages, system_prompt="be brief")

    assert [type(m) for m in converted] == [SystemMessage, HumanMessage, HumanMessage, AIMessage, ToolMessage]
    assert converted[2].content.startswith("[system note]\n[Context compressed")
    assert converted[3].tool_calls[0]["name"] == "search_project_code"
    assert converted[3].tool_calls[0]["args"] == {"query": "log"}
    assert converted[4].tool_call_id == "c1"


def test_leading_system_message_stays_system():
    converted = to_langchain_messages([Message(role=Role.SYSTEM, content="rules")])
    assert isinstance(converted[0], SystemMessage)


def test_openai_tool_format():
    tools = to_openai_tools([{"name": "t", "description": "d", "parameters": None}])
    assert tools == [{
        "type": "function",
        "function": {"name": "t", "description": "d", "parameters": {"type": "object", "properties": {}}},
    }]


def test_content_blocks_are_flattened():
    assert content_to_text([{"type": "text", "text": "a"}, "b", {"type": "image_url"}]) == "ab"
    assert content_to_text(None) == ""


def test_chat_returns_text():
    provider = LangChainProvider(_model(AIMessage(content="hello")))

    reply = asyncio.run(provider.chat("hi", history=[Message(role=Role.USER, content="earlier")], system_prompt="s"))

    assert reply == "hello"


def test_chat_with_tools_maps_tool_calls():
    reply = AIMessage(content="", tool_calls=[{"name": "search_project_code", "args": {"query": "x"}, "id": "t1"}])
    model = ToolBindingFakeModel(messages=iter([reply]))
    provider = LangChainProvider(model)

    response = asyncio.run(provider.chat_with_tools(
        "find x",
        messages=[Message(role=Role.USER, content="find x")],
        tool_schemas=[{"name": "search_project_code", "description": "", "parameters": {}}],
        tool_choice="none",
    ))

    assert response.text is None
    assert [(call.id, call.name, call.args) for call in response.function_calls] == [
        ("t1", "search_project_code", {"query": "x"})
    ]
    assert [bound["tool_choice"] for bound in model.bind_calls] == ["none"]
    assert model.bind_calls[0]["tools"][0]["function"]["name"] == "search_project_code"


def test_model_errors_become_provider_errors():
    provider = LangChainProvider(_model())

    with pytest.raises(ProviderError):
        asyncio.run(provider.chat("hi"))


@pytest.mark.parametrize("tool_choice, expected", [("required", "any"), ("auto", "auto"), ("none", "none")])
def test_tool_choice_is_passed_to_bind_tools(tool_choice, expected):
    model = ToolBindingFakeModel(messages=iter([AIMessage(content="ok")]))
    provider = LangChainProvider(model)

    response = asyncio.run(provider.chat_with_tools(
        "go",
        messages=[Message(role=Role.USER, content="go")],
        tool_schemas=[{"name": "search_project_code", "description": "", "parameters": {}}],
        tool_choice=tool_choice,
    ))

    assert response.text == "ok"
    assert model.bind_calls[0]["tool_choice"] == expected
