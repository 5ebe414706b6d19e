from typing import Any, Dict, Iterable, Optional
import json

from kb_agent.domain.context.context_window import ToolResultQuota


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, ensure_ascii=False)


def _cut(text: str, max_chars: int, marker: str = "\n... [truncated]") -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker


class ToolResultLimiter:
    """Compresses tool results before they enter the context window"""

    SUBMIT_MAX_CHARS = 500
    MATCH_CONTEXT_LINES = 7
    MATCH_LIST_LINES = 5

    def __init__(
        self,
        submit_tool_names: Iterable[str] = ("submit_candidate", "submit_with_check"),
        search_tool_names: Iterable[str] = ("search_project_code",),
        file_tool_names: Iterable[str] = ("read_project_file",)
    ):
        self.submit_tool_names = frozenset(submit_tool_names)
        self.search_tool_names = frozenset(search_tool_names)
        self.file_tool_names = frozenset(file_tool_names)

    def limit(self, tool_name: str, result: Any, quota: ToolResultQuota) -> str:
        if tool_name in self.submit_tool_names:
            return _to_text(result)[:self.SUBMIT_MAX_CHARS]

        if tool_name in self.search_tool_names:
            return self._limit_search(result, quota.max_matches, quota.max_chars)

        if tool_name in self.file_tool_names:
            return self._limit_file(result, quota.max_chars)

        raw = _to_text(result)
        return _cut(raw, quota.max_chars, f"\n... [truncated, {len(raw)} total chars]")

    def _limit_search(self, result: Any, max_matches: int, max_chars: int) -> str:
        if isinstance(result, str):
            return _cut(result, max_chars)
        if not isinstance(result, dict):
            return _to_text(result if result is not None else {})

        limited: Dict[str, Any] = dict(result)
        matches = result.get("matches")
        if isinstance(matches, list):
            limited["matches"] = [self._trim_match(match) for match in matches[:max_matches]]
            if len(matches) > max_matches:
                limited["_note"] = f"Showing {max_matches} of {len(matches)} matches"

        return _cut(_to_text(limited), max_chars)

    def _trim_match(self, match: Any) -> Any:
        if not isinstance(match, dict):
            return match

        trimmed = dict(match)
        context = trimmed.get("context")
        if isinstance(context, str):
            lines = context.split("\n")
            if len(lines) > self.MATCH_CONTEXT_LINES:
                trimmed["context"] = "\n".join(lines[:self.MATCH_CONTEXT_LINES]) + "\n... [truncated]"

        lines = trimmed.get("lines")
        if isinstance(lines, list) and len(lines) > self.MATCH_LIST_LINES:
            trimmed["lines"] = lines[:self.MATCH_LIST_LINES]
            trimmed["_truncated"] = True
        return trimmed

    def _limit_file(self, result: Any, max_chars: int) -> str:
        if isinstance(result, str):
            return _cut(result, max_chars)
        if not isinstance(result, dict):
            return _to_text(result if result is not None else {})

        limited = dict(result)
        content = limited.get("content")
        if isinstance(content, str) and len(content) > max_chars:
            kept = []
            size = 0
            # Cut on a line boundary
            for line in content.split("\n"):
                if size + len(line) + 1 > max_chars:
                    break
                kept.append(line)
                size += len(line) + 1
            limited["content"] = (
                "".join(line + "\n" for line in kept)
                + f"... [truncated at {max_chars} chars, total {len(content)}]"
            )
        return _to_text(limited)


def summarize_for_log(result: Any, max_chars: Optional[int] = 500) -> Any:
    """Size-limited copy of a tool result for the run's tool-call log"""

    if result is None or isinstance(result, (bool, int, float)):
        return result

    text = _to_text(result)
    if max_chars is None or len(text) <= max_chars:
        return result
    summary = _shrink(result)
    if summary is None or len(_to_text(summary)) > max_chars:
        # Nested payloads can still be large; fall back to a cut of the text form
        return text[:max_chars]
    return summary


def _shrink(result: Any) -> Any:
    if isinstance(result, list):
        return {"_summary": f"list with {len(result)} items", "first3": result[:3]}
    if isinstance(result, dict):
        # Keep the key structure, shrink the values
        summary: Dict[str, Any] = {}
        for key, value in result.items():
            if isinstance(value, str) and len(value) > 200:
                summary[key] = value[:200] + "..."
            elif isinstance(value, list):
                summary[key] = {"_count": len(value), "first2": value[:2]}
            else:
                summary[key] = value
        return summary
    return None
