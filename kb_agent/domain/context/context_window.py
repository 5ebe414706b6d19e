"""
Message log for a single agent run.

The window keeps the estimated token usage under a budget with three
escalating compaction levels:

- L1 (60-80% usage): old tool-result bodies become one-line markers.
- L2 (80-95% usage): everything between the prompt and the second-to-last
  tool round is merged into one synthetic system summary.
- L3 (>95% usage): only the prompt and the last tool round survive.

Message 0 is the anchor (the original prompt) and never changes. An
assistant message carrying tool calls and the tool results that answer it
form one unit: compaction keeps or drops the unit as a whole.
"""

from collections import Counter
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple
import json
import math

import structlog

from kb_agent.domain.models.agent_state import Message, Role, ToolCall, normalize_title
from kb_agent.domain.models.errors import ContextProtocolError

logger = structlog.get_logger(__name__)

CHARS_PER_TOKEN = 3


class CompactionResult(NamedTuple):
    level: int
    removed: int


class ToolResultQuota(NamedTuple):
    max_chars: int
    max_matches: int


class ContextWindow:
    """Ordered message log with token-budget compaction"""

    L1_USAGE = 0.6
    L2_USAGE = 0.8
    L3_USAGE = 0.95
    MIN_MESSAGES_TO_COMPACT = 4

    # L1 only touches results longer than this
    L1_MIN_CHARS = 2000
    L1_PREVIEW_CHARS = 200

    def __init__(
        self,
        anchor: str,
        token_budget: int = 24_000,
        *,
        submit_tool_names: Iterable[str] = ("submit_candidate", "submit_with_check"),
        submit_label_keys: Sequence[str] = ("title", "category"),
        max_message_chars: Optional[int] = None
    ):
        self.token_budget = token_budget
        self.submit_tool_names = frozenset(submit_tool_names)
        self.submit_label_keys = tuple(submit_label_keys)
        self.max_message_chars = max_message_chars or int(token_budget * CHARS_PER_TOKEN * 0.5)

        self._messages: List[Message] = [Message(role=Role.USER, content=self._fit(anchor))]
        self._pending_results: List[str] = []
        self._compacted_submits: Dict[str, str] = {}
        self._compacted_rounds = 0
        self._compacted_results = 0
        self._compacted_tools: Counter = Counter()
        self.compaction_log: List[str] = []

    # ─── appends ──────────────────────────────────────────

    def append_user_message(self, content: str):
        self._require_no_pending("append_user_message")
        self._messages.append(Message(role=Role.USER, content=self._fit(content)))

    def append_user_nudge(self, content: str):
        """Same as a user message; named separately so phase nudges are easy to audit"""
        self.append_user_message(content)

    def append_assistant_text(self, text: str):
        self._require_no_pending("append_assistant_text")
        self._messages.append(Message(role=Role.ASSISTANT, content=self._fit(text)))

    def append_assistant_with_tool_calls(self, text: Optional[str], calls: Sequence[ToolCall]):
        """Open a tool round; exactly len(calls) append_tool_result calls must follow"""

        self._require_no_pending("append_assistant_with_tool_calls")
        if not calls:
            raise ContextProtocolError("append_assistant_with_tool_calls needs at least one tool call")

        ids = [call.id for call in calls]
        if len(set(ids)) != len(ids):
            raise ContextProtocolError(f"Duplicate tool call ids in one round: {ids}")

        self._messages.append(Message(
            role=Role.ASSISTANT,
            content=self._fit(text) if text else None,
            tool_calls=[call.model_copy(deep=True) for call in calls],
        ))
        self._pending_results = ids

    def append_tool_result(self, call_id: str, tool_name: str, text: str):
        if call_id not in self._pending_results:
            raise ContextProtocolError(f"No open tool call with id '{call_id}'")

        self._pending_results.remove(call_id)
        self._messages.append(Message(
            role=Role.TOOL,
            content=self._fit(text),
            tool_call_id=call_id,
            tool_name=tool_name,
        ))

    # ─── queries ──────────────────────────────────────────

    def to_messages(self) -> List[Message]:
        return [m.model_copy(deep=True) for m in self._messages]

    @property
    def anchor(self) -> Message:
        return self._messages[0].model_copy(deep=True)

    @property
    def has_pending_results(self) -> bool:
        return bool(self._pending_results)

    def __len__(self) -> int:
        return len(self._messages)

    def estimate_tokens(self) -> int:
        total = 0
        for message in self._messages:
            total += _message_chars(message)
        return math.ceil(total / CHARS_PER_TOKEN)

    def get_token_usage_ratio(self) -> float:
        return self.estimate_tokens() / self.token_budget

    def get_tool_result_quota(self) -> ToolResultQuota:
        """Per-call size limit for tool results, shrinking as usage grows"""

        usage = self.get_token_usage_ratio()
        if usage < 0.4:
            return ToolResultQuota(max_chars=6000, max_matches=15)
        if usage < 0.6:
            return ToolResultQuota(max_chars=3000, max_matches=8)
        if usage < 0.8:
            return ToolResultQuota(max_chars=1500, max_matches=5)
        return ToolResultQuota(max_chars=800, max_matches=3)

    @property
    def compacted_submits(self) -> List[str]:
        """Titles of submissions whose rounds were dropped by compaction"""
        return list(self._compacted_submits.values())

    # ─── compaction ───────────────────────────────────────

    def compact_if_needed(self) -> CompactionResult:
        self._require_no_pending("compact_if_needed")

        usage = self.get_token_usage_ratio()
        if usage < self.L1_USAGE or len(self._messages) <= self.MIN_MESSAGES_TO_COMPACT:
            return CompactionResult(level=0, removed=0)
        if usage < self.L2_USAGE:
            return self._compact_l1()
        if usage < self.L3_USAGE:
            return self._compact_l2()
        return self._compact_l3()

    def reset_to_prompt_only(self):
        """Drop everything except the anchor; used after repeated provider failures"""

        if len(self._messages) > 1:
            self._remember_submits(self._messages[1:])
            self.compaction_log.append(f"RESET: cleared {len(self._messages) - 1} messages")
            self._messages = self._messages[:1]
        self._pending_results = []

    def _compact_l1(self) -> CompactionResult:
        truncated = self._truncate_old_tool_results()
        if truncated:
            self.compaction_log.append(f"L1: truncated {truncated} tool results")
            logger.info("Context compacted", level=1, truncated=truncated)
        return CompactionResult(level=1, removed=truncated)

    def _compact_l2(self) -> CompactionResult:
        starts = self._tool_round_starts()
        # Keep the last two tool rounds intact
        if len(starts) < 2 or starts[-2] <= 1:
            return self._compact_l1()
        return self._splice_and_summarize(starts[-2], level=2)

    def _compact_l3(self) -> CompactionResult:
        starts = self._tool_round_starts()
        if starts and starts[-1] > 1:
            return self._splice_and_summarize(starts[-1], level=3)
        if not starts and len(self._messages) > 2:
            return self._splice_and_summarize(len(self._messages) - 1, level=3)
        return self._compact_l1()

    def _truncate_old_tool_results(self) -> int:
        starts = self._tool_round_starts()
        if not starts:
            return 0

        truncated = 0
        for index in range(1, starts[-1]):
            message = self._messages[index]
            if message.role != Role.TOOL or not message.content:
                continue
            if len(message.content) <= self.L1_MIN_CHARS:
                continue
            preview = " ".join(message.content[:self.L1_PREVIEW_CHARS].split())
            message.content = (
                f"[{message.tool_name} result compacted, {len(message.content)} chars] {preview}..."
            )
            truncated += 1
        return truncated

    def _splice_and_summarize(self, keep_from: int, level: int) -> CompactionResult:
        removed = self._messages[1:keep_from]
        self._remember_submits(removed)

        for message in removed:
            if message.has_tool_calls:
                self._compacted_rounds += 1
                self._compacted_tools.update(call.name for call in message.tool_calls)
            elif message.role == Role.TOOL:
                self._compacted_results += 1

        summary = Message(role=Role.SYSTEM, content=self._summary_text())
        self._messages = [self._messages[0], summary] + self._messages[keep_from:]

        removed_count = keep_from - 1
        self.compaction_log.append(f"L{level}: removed {removed_count} messages")
        logger.info("Context compacted", level=level, removed=removed_count, kept=len(self._messages))
        return CompactionResult(level=level, removed=removed_count)

    def _summary_text(self) -> str:
        parts = [
            f"[Context compressed: {self._compacted_rounds} tool rounds, "
            f"{self._compacted_results} results removed]"
        ]
        if self._compacted_tools:
            used = ", ".join(f"{name} x{count}" for name, count in self._compacted_tools.most_common())
            parts.append(f"[Tools used earlier: {used}]")
        if self._compacted_submits:
            parts.append(f"[Already submitted: {', '.join(self._compacted_submits.values())}]")
        return "\n".join(parts)

    def _remember_submits(self, messages: Iterable[Message]):
        for message in messages:
            if not message.has_tool_calls:
                continue
            for call in message.tool_calls:
                if call.name not in self.submit_tool_names:
                    continue
                title = call.declared_title(self.submit_label_keys) or "untitled"
                self._compacted_submits.setdefault(normalize_title(title), title)

    # ─── helpers ──────────────────────────────────────────

    def _tool_round_starts(self) -> List[int]:
        return [start for start, _ in self.units() if self._messages[start].has_tool_calls]

    def units(self) -> List[Tuple[int, int]]:
        """Half-open index ranges of atomic units after the anchor"""

        spans: List[Tuple[int, int]] = []
        index = 1
        while index < len(self._messages):
            end = index + 1
            if self._messages[index].has_tool_calls:
                while end < len(self._messages) and self._messages[end].role == Role.TOOL:
                    end += 1
            spans.append((index, end))
            index = end
        return spans

    def _fit(self, text: str) -> str:
        if text is None or len(text) <= self.max_message_chars:
            return text
        return (
            text[:self.max_message_chars]
            + f"\n... [message truncated: {len(text)} chars, kept {self.max_message_chars}]"
        )

    def _require_no_pending(self, operation: str):
        if self._pending_results:
            raise ContextProtocolError(
                f"{operation} called while {len(self._pending_results)} tool results are still owed"
            )


def _message_chars(message: Message) -> int:
    chars = len(message.content or "")
    if message.tool_calls:
        chars += len(json.dumps([call.model_dump() for call in message.tool_calls], default=str))
    return chars
