"""Shared fakes: scripted providers and a small in-memory tool registry."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from kb_agent.domain.llm.provider import FunctionCall, LanguageModelProvider, ProviderResponse
from kb_agent.domain.models.agent_state import Message
from kb_agent.domain.tool.tool_registry import InMemoryToolRegistry
from kb_agent.infrastructure.config.settings import AgentSettings

Step = Union[str, ProviderResponse, Exception, Callable[[Dict[str, Any]], Any]]


class ScriptedTextProvider(LanguageModelProvider):
    """Replays canned text replies; the last one repeats once the script runs out"""

    def __init__(self, replies: List[Step], summary: str = "summary from model") -> None:
        self.replies = list(replies)
        self.summary = summary
        self.calls: List[Dict[str, Any]] = []

    async def chat(self, prompt, *, history=None, system_prompt=None, temperature=None, max_tokens=None) -> str:
        call = {"prompt": prompt, "history": list(history or []), "system_prompt": system_prompt}
        self.calls.append(call)
        if history == [] and system_prompt and "Do not call any tools" in system_prompt:
            return self.summary

        step = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(call)
        return step


class ScriptedNativeProvider(LanguageModelProvider):
    """Replays ProviderResponses through chat_with_tools"""

    def __init__(
        self,
        responses: List[Step],
        summary: Optional[Union[str, Exception]] = "summary from model"
    ) -> None:
        self.responses = list(responses)
        self.summary = summary
        self.tool_calls_requests: List[Dict[str, Any]] = []
        self.summary_requests: List[str] = []

    @property
    def supports_native_tool_calling(self) -> bool:
        return True

    async def chat(self, prompt, *, history=None, system_prompt=None, temperature=None, max_tokens=None) -> str:
        self.summary_requests.append(prompt)
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary

    async def chat_with_tools(
        self, prompt, *, messages: List[Message], tool_schemas, tool_choice="auto",
        system_prompt=None, temperature=None, max_tokens=None
    ) -> ProviderResponse:
        request = {
            "messages": messages,
            "tool_schemas": tool_schemas,
            "tool_choice": tool_choice,
            "system_prompt": system_prompt,
        }
        self.tool_calls_requests.append(request)

        step = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        if isinstance(step, str):
            return ProviderResponse(text=step)
        return step

    @property
    def total_calls(self) -> int:
        return len(self.tool_calls_requests) + len(self.summary_requests)


def calls(*specs: tuple) -> ProviderResponse:
    """ProviderResponse with function calls given as (id, name, args) tuples"""

    return ProviderResponse(function_calls=[FunctionCall(id=i, name=n, args=a) for i, n, a in specs])


@pytest.fixture()
def registry() -> InMemoryToolRegistry:
    reg = InMemoryToolRegistry()
    submitted: List[Dict[str, Any]] = []
    reg.submitted = submitted

    reg.register_tool(
        "search_project_code",
        "Search the project source",
        lambda args, ctx: {"matches": [{"file": "a.py", "line": 1, "code": args.get("query", "")}], "total": 1},
        parameters={
            "type": "object",
            "properties": {"query": {"type": "string", "description": "search text"}},
            "required": ["query"],
        },
        category="search",
    )

    def submit(args: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, Any]:
        submitted.append(args)
        return {"status": "created", "title": args["title"]}

    reg.register_tool(
        "submit_candidate",
        "Submit a knowledge candidate",
        submit,
        parameters={
            "type": "object",
            "properties": {"title": {"type": "string"}, "code": {"type": "string"}},
            "required": ["title"],
        },
        category="submit",
    )

    async def read_file(args: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, Any]:
        return {"path": args["path"], "content": "line\n" * 10}

    reg.register_tool(
        "read_project_file",
        "Read one file",
        read_file,
        parameters={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
    )

    def broken(args: Dict[str, Any], ctx: Dict[str, Any]) -> Any:
        raise RuntimeError("disk on fire")

    reg.register_tool("broken_tool", "Always fails", broken)
    return reg


@pytest.fixture()
def settings() -> AgentSettings:
    return AgentSettings(provider_retry_backoff_seconds=0.0, empty_response_retries=1)
