"""
Tool-call extraction for providers without native tool calling.

The model is asked to emit an ```action block, but in practice models fall
back to many other shapes. Each extractor below handles one shape and
returns None when it does not apply; ``parse_actions`` tries them in a fixed
order and the first one that yields calls wins. No match means the text is a
final answer.
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import json
import re
import uuid

from kb_agent.domain.models.agent_state import ToolCall

RawCall = Tuple[str, Dict[str, Any]]
Extractor = Callable[[str], Optional[List[RawCall]]]

_FENCED_ACTION = re.compile(r"```action\s*\n?(.*?)```", re.DOTALL)
_FENCED_BATCH = re.compile(r"```batch_actions\s*\n?(.*?)```", re.DOTALL)
_FENCED_CODE = re.compile(r"```[\w-]*\s*\n?(.*?)```", re.DOTALL)
_CALL_EXPR = re.compile(r"^\s*([A-Za-z_]\w*)\s*\((.*)\)\s*$", re.DOTALL)
_REACT_ACTION = re.compile(r"^\s*Action\s*:\s*`?([A-Za-z_]\w*)`?\s*$", re.MULTILINE | re.IGNORECASE)
_REACT_INPUT = re.compile(r"Action\s+Input\s*:\s*", re.IGNORECASE)
_XML_TOOL_CALL = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL | re.IGNORECASE)
_XML_FUNCTION = re.compile(r"<function=([\w.-]+)>(.*?)</function>", re.DOTALL)
_XML_PARAMETER = re.compile(r"<parameter=([\w.-]+)>(.*?)</parameter>", re.DOTALL)
_TRAILING_CALL = re.compile(r"([A-Za-z_]\w*)\s*\(([^()]*)\)\s*[.;]?\s*$")
_KWARG = re.compile(r"""(\w+)\s*=\s*("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*'|[^,)]+)""")

_NAME_KEYS = ("tool", "name", "function")
_PARAM_KEYS = ("params", "arguments", "parameters", "input")


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


def _loads(text: str) -> Any:
    try:
        return json.loads(text.strip())
    except (ValueError, TypeError):
        return None


def _coerce_scalar(raw: str) -> Any:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        inner = raw[1:-1]
        try:
            return json.loads(f'"{inner}"') if raw[0] == '"' else inner.replace("\\'", "'")
        except ValueError:
            return inner
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered in ("null", "none"):
        return None
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def _parse_kwargs(text: str) -> Dict[str, Any]:
    return {key: _coerce_scalar(value) for key, value in _KWARG.findall(text)}


def _call_from_object(obj: Any, require_params: bool = False) -> Optional[RawCall]:
    """{"tool": ..., "params": {...}} and its common spellings"""

    if not isinstance(obj, dict):
        return None

    name = None
    for key in _NAME_KEYS:
        value = obj.get(key)
        if isinstance(value, str) and value:
            name = value
            break
        # OpenAI style: {"function": {"name": ..., "arguments": ...}}
        if isinstance(value, dict) and isinstance(value.get("name"), str):
            return _call_from_object(value, require_params)
    if name is None:
        return None

    params: Any = None
    for key in _PARAM_KEYS:
        if key in obj:
            params = obj[key]
            break
    if params is None:
        if require_params:
            return None
        params = {}
    if isinstance(params, str):
        params = _loads(params) or {}
    if not isinstance(params, dict):
        return None
    return name, params


def _calls_from_json(value: Any, require_params: bool = False) -> Optional[List[RawCall]]:
    items = value if isinstance(value, list) else [value]
    calls = [call for call in (_call_from_object(item, require_params) for item in items) if call]
    return calls or None


# ─── extractors, in priority order ───────────────────────


def extract_fenced_action(text: str) -> Optional[List[RawCall]]:
    calls: List[RawCall] = []
    for block in _FENCED_ACTION.findall(text):
        calls.extend(_calls_from_json(_loads(block)) or [])
    return calls or None


def extract_batch_actions(text: str) -> Optional[List[RawCall]]:
    calls: List[RawCall] = []
    for block in _FENCED_BATCH.findall(text):
        calls.extend(_calls_from_json(_loads(block)) or [])
    return calls or None


def extract_fenced_call_expression(text: str) -> Optional[List[RawCall]]:
    calls: List[RawCall] = []
    for block in _FENCED_CODE.findall(text):
        for line in block.strip().splitlines():
            match = _CALL_EXPR.match(line)
            if match:
                calls.append((match.group(1), _parse_kwargs(match.group(2))))
    return calls or None


def extract_react(text: str) -> Optional[List[RawCall]]:
    match = _REACT_ACTION.search(text)
    if not match:
        return None

    params: Dict[str, Any] = {}
    input_match = _REACT_INPUT.search(text, match.end())
    if input_match:
        rest = text[input_match.end():].lstrip()
        try:
            value, _ = json.JSONDecoder().raw_decode(rest)
        except ValueError:
            value = None
        if isinstance(value, dict):
            params = value
    return [(match.group(1), params)]


def extract_xml_tool_call(text: str) -> Optional[List[RawCall]]:
    calls: List[RawCall] = []
    for body in _XML_TOOL_CALL.findall(text):
        parsed = _calls_from_json(_loads(body))
        if parsed:
            calls.extend(parsed)
            continue
        calls.extend(_function_tags(body))

    if not calls and "<function=" in text:
        calls.extend(_function_tags(text))
    return calls or None


def _function_tags(text: str) -> List[RawCall]:
    calls = []
    for name, body in _XML_FUNCTION.findall(text):
        params = {key: _coerce_scalar(value) for key, value in _XML_PARAMETER.findall(body)}
        calls.append((name, params))
    return calls


def extract_bare_json(text: str) -> Optional[List[RawCall]]:
    decoder = json.JSONDecoder()
    found: Optional[List[RawCall]] = None
    index = 0
    while True:
        start = min((i for i in (text.find("{", index), text.find("[", index)) if i != -1), default=-1)
        if start == -1:
            break
        try:
            value, end = decoder.raw_decode(text, start)
        except ValueError:
            index = start + 1
            continue
        calls = _calls_from_json(value, require_params=True)
        if calls:
            # The last well-formed call object wins
            found = calls
        index = end
    return found


def extract_trailing_call(text: str) -> Optional[List[RawCall]]:
    match = _TRAILING_CALL.search(text.strip())
    if not match:
        return None
    return [(match.group(1), _parse_kwargs(match.group(2)))]


EXTRACTORS: Tuple[Extractor, ...] = (
    extract_fenced_action,
    extract_batch_actions,
    extract_fenced_call_expression,
    extract_react,
    extract_xml_tool_call,
    extract_bare_json,
    extract_trailing_call,
)


def parse_actions(text: Optional[str], known_tools: Optional[Iterable[str]] = None) -> List[ToolCall]:
    """Tool calls found in a text reply; an empty list means a final answer"""

    if not text or not text.strip():
        return []

    known = set(known_tools) if known_tools is not None else None
    for extractor in EXTRACTORS:
        raw_calls = extractor(text)
        if not raw_calls:
            continue
        if known is not None:
            raw_calls = [(name, params) for name, params in raw_calls if name in known]
        if raw_calls:
            return [ToolCall(id=_new_call_id(), name=name, arguments=params) for name, params in raw_calls]
    return []


_PLAN_PATTERNS = (
    re.compile(r"\b(?:I|we)\s*(?:will|'ll|am going to|are going to|need to|should)\s+"
               r"(?:now\s+)?(?:search|read|look|check|call|use|analy[sz]e|inspect|explore|submit|run|examine)",
               re.IGNORECASE),
    re.compile(r"\b(?:let me|let's|next,? I)\s+(?:search|read|look|check|call|use|analy[sz]e|inspect|explore|submit|run)",
               re.IGNORECASE),
    re.compile(r"^\s*(?:step\s*\d+|\d+\.)\s+.*\b(?:search|read|call|submit)\b", re.IGNORECASE | re.MULTILINE),
)


def looks_like_unexecuted_plan(text: Optional[str]) -> bool:
    """Best-effort check for a reply that announces tool use instead of doing it"""

    if not text:
        return False
    # Long replies are almost always real answers
    if len(text) > 1500:
        return False
    return any(pattern.search(text) for pattern in _PLAN_PATTERNS)
