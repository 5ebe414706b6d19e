from typing import Any, Dict, List, Optional, Sequence
import json
import re

from kb_agent.domain.models.agent_state import Message, Role, ToolCallRecord, ToolCallStatus

DEFAULT_BASE_PROMPT = (
    "You are the assistant of a developer knowledge base. "
    "Use the available tools to look up project data before answering, "
    "and ground every answer in what the tools returned."
)

TEXT_MODE_INSTRUCTIONS = """## How to call tools
To call a tool, reply with exactly one block in this format:

```action
{"tool": "tool_name", "params": {"key": "value"}}
```

To call several independent tools at once, use:

```batch_actions
[{"tool": "tool_a", "params": {}}, {"tool": "tool_b", "params": {}}]
```

When you can answer without tools, answer directly and do not output an action block.
Answer in the user's language, concisely, citing the tool results you relied on."""

APOLOGY = (
    "Sorry, the language model is not responding right now, so I could not finish this request. "
    "Please try again in a moment."
)

CORRECTIVE_REPROMPT = (
    "You described the tools you intend to use but did not call any. "
    "Call them now using the action block format, or give your final answer."
)

CONTINUE_NUDGE = (
    "Continue with the task. Call the next tool you need, "
    "or write your final summary if the work is done."
)

TOOLS_CLOSED_NUDGE = "Tools are no longer available. Write your final summary now."

SUMMARY_SYSTEM_PROMPT = "Answer directly. Do not call any tools."

HISTORY_TURNS = 20

_ANSWER_PREFIX = re.compile(r"^\s*(?:Final Answer|Answer)\s*[:：]\s*", re.IGNORECASE)


def describe_tools(tool_schemas: Sequence[Dict[str, Any]]) -> str:
    blocks = []
    for schema in tool_schemas:
        properties = (schema.get("parameters") or {}).get("properties") or {}
        lines = [
            f"    - {name} ({spec.get('type', 'any')}): {spec.get('description', '')}".rstrip()
            for name, spec in properties.items()
        ]
        params = "\n".join(lines) or "    (none)"
        blocks.append(f"- **{schema['name']}**: {schema.get('description', '')}\n  Parameters:\n{params}")
    return "\n\n".join(blocks)


def build_system_prompt(
    tool_schemas: Sequence[Dict[str, Any]],
    native: bool,
    memory_section: str = "",
    base: Optional[str] = None,
    phase_hint: Optional[str] = None
) -> str:
    """System prompt for one turn; the phase hint is never stored in history"""

    parts = [base or DEFAULT_BASE_PROMPT]
    if not native and tool_schemas:
        parts.append("## Available tools\n" + describe_tools(tool_schemas))
        parts.append(TEXT_MODE_INSTRUCTIONS)
    if memory_section:
        parts.append(memory_section)
    if phase_hint:
        parts.append(f"## Current status\n{phase_hint}")
    return "\n\n".join(parts)


def build_anchor(prompt: str, history: Optional[Sequence[Dict[str, Any]]] = None) -> str:
    """Fold recent chat turns into the first message of the run"""

    turns = [turn for turn in (history or []) if turn.get("content")][-HISTORY_TURNS:]
    if not turns:
        return prompt

    lines = [f"{str(turn.get('role', 'user')).capitalize()}: {turn['content']}" for turn in turns]
    return "## Conversation so far\n" + "\n".join(lines) + f"\n\n## Current request\n{prompt}"


def build_observation(tool_name: str, text: str, prompt: str) -> str:
    """User-role observation message used by text-mode providers"""

    return (
        f'Observation from tool "{tool_name}":\n{text}\n\n'
        f'Based on the above observation, continue working on: "{prompt}".\n'
        "If you have enough information, give your final answer without an action block. "
        "Otherwise, call another tool."
    )


def build_summary_prompt(
    prompt: str,
    tool_log: Sequence[ToolCallRecord],
    iterations: int,
    submitted: Sequence[str] = ()
) -> str:
    used = _tool_usage(tool_log)
    lines = [
        f"You have used {iterations} rounds and {len(tool_log)} tool calls"
        f"{' (' + used + ')' if used else ''}."
    ]
    if submitted:
        lines.append("Already submitted: " + ", ".join(submitted))
    lines.append(f'Summarize what was accomplished and answer the original request: "{prompt}"')
    return "\n".join(lines)


def synthesize_local_summary(
    prompt: str,
    tool_log: Sequence[ToolCallRecord],
    submitted: Sequence[str] = ()
) -> str:
    """Summary assembled without the model, used when the provider is unavailable"""

    lines = [f'Could not complete a model-written answer for: "{prompt}".']
    if tool_log:
        ok = sum(1 for record in tool_log if record.status == ToolCallStatus.OK)
        lines.append(f"Tool calls made: {len(tool_log)} ({ok} succeeded). {_tool_usage(tool_log)}")
    else:
        lines.append("No tools were called.")
    if submitted:
        lines.append("Submitted: " + ", ".join(submitted))
    return "\n".join(lines)


def clean_final_answer(text: Optional[str]) -> str:
    if not text:
        return ""
    return _ANSWER_PREFIX.sub("", text, count=1).strip()


def render_history_for_text_mode(messages: List[Message]) -> List[Message]:
    """Text-mode providers see tool traffic as plain user/assistant turns"""

    rendered = []
    for message in messages:
        if message.role == Role.TOOL:
            rendered.append(Message(role=Role.USER, content=message.content))
        elif message.has_tool_calls:
            # The raw reply already carries the action text the model wrote
            if message.content:
                rendered.append(Message(role=Role.ASSISTANT, content=message.content))
                continue
            calls = [{"tool": call.name, "params": call.arguments} for call in message.tool_calls]
            body = json.dumps(calls[0] if len(calls) == 1 else calls, ensure_ascii=False, default=str)
            fence = "action" if len(calls) == 1 else "batch_actions"
            rendered.append(Message(role=Role.ASSISTANT, content=f"```{fence}\n{body}\n```"))
        else:
            rendered.append(message)
    return rendered


def _tool_usage(tool_log: Sequence[ToolCallRecord]) -> str:
    counts: Dict[str, int] = {}
    for record in tool_log:
        counts[record.name] = counts.get(record.name, 0) + 1
    return ", ".join(f"{name} x{count}" for name, count in counts.items())
