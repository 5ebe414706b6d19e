from __future__ import annotations

import pytest

from kb_agent.domain.context.context_window import ContextWindow
from kb_agent.domain.models.agent_state import Role, ToolCall
from kb_agent.domain.models.errors import ContextProtocolError


def _call(call_id: str, name: str = "search_project_code", **args) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=args)


def _assert_units_intact(window: ContextWindow) -> None:
    messages = window.to_messages()
    for index, message in enumerate(messages):
        if not message.has_tool_calls:
            continue
        expected = {call.id for call in message.tool_calls}
        following = messages[index + 1:index + 1 + len(expected)]
        assert all(m.role == Role.TOOL for m in following)
        assert {m.tool_call_id for m in following} == expected

    spans = window.units()
    if spans:
        assert [start for start, _ in spans] == [1] + [end for _, end in spans[:-1]]
        assert spans[-1][1] == len(messages)
    for start, end in spans:
        assert all(m.role == Role.TOOL for m in messages[start + 1:end])


def test_anchor_is_first_and_immutable_copy():
    window = ContextWindow("find the logging helpers")
    messages = window.to_messages()
    messages[0].content = "changed"

    assert window.to_messages()[0].content == "find the logging helpers"
    assert window.anchor.role == Role.USER


def test_tool_results_must_follow_their_call():
    window = ContextWindow("prompt")
    window.append_assistant_with_tool_calls(None, [_call("c1"), _call("c2")])
    assert window.has_pending_results

    with pytest.raises(ContextProtocolError):
        window.append_user_message("too early")
    with pytest.raises(ContextProtocolError):
        window.append_tool_result("unknown", "search_project_code", "{}")

    window.append_tool_result("c2", "search_project_code", "second")
    window.append_tool_result("c1", "search_project_code", "first")
    window.append_user_message("now fine")
    assert not window.has_pending_results

    assert [m.role for m in window.to_messages()] == [
        Role.USER, Role.ASSISTANT, Role.TOOL, Role.TOOL, Role.USER
    ]


def test_compaction_refused_while_results_are_owed():
    window = ContextWindow("prompt")
    window.append_assistant_with_tool_calls(None, [_call("c1")])
    with pytest.raises(ContextProtocolError):
        window.compact_if_needed()


def test_estimate_tokens_counts_three_chars_per_token():
    window = ContextWindow("x" * 30)
    assert window.estimate_tokens() == 10
    window.append_assistant_text("y" * 4)
    assert window.estimate_tokens() == 12


def test_no_compaction_below_threshold_or_with_few_messages():
    window = ContextWindow("prompt", token_budget=100)
    window.append_assistant_text("z" * 500)
    assert window.compact_if_needed().level == 0


def test_level_one_shortens_old_results_and_keeps_units():
    window = ContextWindow("prompt", token_budget=100_000)
    window.append_assistant_with_tool_calls("looking", [_call("a1", query="x"), _call("a2", query="y")])
    window.append_tool_result("a1", "search_project_code", "A" * 5000)
    window.append_tool_result("a2", "search_project_code", "B" * 5000)
    window.append_assistant_with_tool_calls(None, [_call("b1", query="z")])
    window.append_tool_result("b1", "search_project_code", "C" * 3000)

    # 0.6 <= usage < 0.8
    window.token_budget = int(window.estimate_tokens() / 0.7)
    result = window.compact_if_needed()

    assert result.level == 1
    assert result.removed == 2
    messages = window.to_messages()
    assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.TOOL, Role.ASSISTANT, Role.TOOL]
    assert [m.tool_call_id for m in messages[2:4]] == ["a1", "a2"]
    assert messages[2].content.startswith("[search_project_code result compacted")
    assert len(messages[2].content) < 400
    # The latest round is untouched
    assert messages[5].content == "C" * 3000
    _assert_units_intact(window)


def test_level_two_merges_old_rounds_into_summary():
    window = ContextWindow("prompt", token_budget=100_000)
    for n in range(4):
        name = "submit_candidate" if n == 0 else "search_project_code"
        window.append_assistant_with_tool_calls(None, [_call(f"c{n}", name=name, title="Logger setup")])
        window.append_tool_result(f"c{n}", name, "R" * 1500)

    window.token_budget = int(window.estimate_tokens() / 0.9)
    result = window.compact_if_needed()

    assert result.level == 2
    messages = window.to_messages()
    assert messages[0].content == "prompt"
    assert messages[1].role == Role.SYSTEM
    assert "Already submitted: Logger setup" in messages[1].content
    # Last two rounds survive
    assert [m.tool_call_id for m in messages if m.role == Role.TOOL] == ["c2", "c3"]
    assert window.compacted_submits == ["Logger setup"]
    _assert_units_intact(window)


def test_level_three_keeps_anchor_and_last_round():
    window = ContextWindow("prompt", token_budget=100_000)
    for n in range(3):
        window.append_assistant_with_tool_calls(None, [_call(f"c{n}")])
        window.append_tool_result(f"c{n}", "search_project_code", "R" * 3000)

    window.token_budget = int(window.estimate_tokens() / 1.2)
    result = window.compact_if_needed()

    assert result.level == 3
    messages = window.to_messages()
    assert [m.role for m in messages] == [Role.USER, Role.SYSTEM, Role.ASSISTANT, Role.TOOL]
    assert messages[3].tool_call_id == "c2"
    assert window.compaction_log[-1].startswith("L3")


def test_reset_to_prompt_only_remembers_submissions():
    window = ContextWindow("prompt")
    window.append_assistant_with_tool_calls(None, [_call("s1", name="submit_candidate", title="Retry helper")])
    window.append_tool_result("s1", "submit_candidate", "ok")

    window.reset_to_prompt_only()

    assert len(window) == 1
    assert window.compacted_submits == ["Retry helper"]


def test_quota_shrinks_with_usage():
    window = ContextWindow("x" * 30, token_budget=100)
    assert window.get_tool_result_quota() == (6000, 15)
    window.token_budget = 20
    assert window.get_tool_result_quota() == (3000, 8)
    window.token_budget = 14
    assert window.get_tool_result_quota() == (1500, 5)
    window.token_budget = 10
    assert window.get_tool_result_quota() == (800, 3)


def test_oversized_message_is_truncated_with_marker():
    window = ContextWindow("prompt", token_budget=100, max_message_chars=50)
    window.append_user_message("q" * 80)

    content = window.to_messages()[-1].content
    assert content.startswith("q" * 50)
    assert "[message truncated: 80 chars, kept 50]" in content


def test_category_labels_submissions_without_title():
    window = ContextWindow("prompt")
    window.append_assistant_with_tool_calls(None, [_call("s1", name="submit_with_check", category="logging")])
    window.append_tool_result("s1", "submit_with_check", "ok")

    window.reset_to_prompt_only()

    assert window.compacted_submits == ["logging"]
