from __future__ import annotations

import pytest

from kb_agent.domain.orchestration.parsing.action_parser import looks_like_unexecuted_plan, parse_actions

KNOWN = {"search_project_code", "read_project_file", "submit_candidate"}


def _pairs(text: str):
    return [(call.name, call.arguments) for call in parse_actions(text, KNOWN)]


def test_fenced_action_block():
    text = 'Let me look.\n```action\n{"tool": "search_project_code", "params": {"query": "logger"}}\n```'
    assert _pairs(text) == [("search_project_code", {"query": "logger"})]


def test_batch_actions_block():
    text = (
        "```batch_actions\n"
        '[{"tool": "search_project_code", "params": {"query": "a"}},'
        ' {"tool": "read_project_file", "params": {"path": "b.py"}}]\n'
        "```"
    )
    assert _pairs(text) == [
        ("search_project_code", {"query": "a"}),
        ("read_project_file", {"path": "b.py"}),
    ]


def test_call_expression_in_fenced_code():
    text = '```python\nsearch_project_code(query="retry", limit=5, exact=true)\n```'
    assert _pairs(text) == [("search_project_code", {"query": "retry", "limit": 5, "exact": True})]


def test_react_format():
    text = 'Thought: I need the file.\nAction: read_project_file\nAction Input: {"path": "src/app.py"}'
    assert _pairs(text) == [("read_project_file", {"path": "src/app.py"})]


@pytest.mark.parametrize("text", [
    '<tool_call>\n{"name": "search_project_code", "arguments": {"query": "cache"}}\n</tool_call>',
    "<tool_call><function=search_project_code><parameter=query>cache</parameter></function></tool_call>",
])
def test_xml_tool_call(text):
    assert _pairs(text) == [("search_project_code", {"query": "cache"})]


def test_bare_json_takes_the_last_call_object():
    text = (
        'First {"tool": "search_project_code", "params": {"query": "one"}} '
        'then {"tool": "read_project_file", "arguments": {"path": "two.py"}}'
    )
    assert _pairs(text) == [("read_project_file", {"path": "two.py"})]


def test_trailing_bare_call():
    text = "I will now check the file.\nread_project_file(path='lib/util.py')"
    assert _pairs(text) == [("read_project_file", {"path": "lib/util.py"})]


def test_unknown_tools_are_discarded():
    text = '```action\n{"tool": "delete_everything", "params": {}}\n```'
    assert parse_actions(text, KNOWN) == []


def test_plain_answer_has_no_actions():
    assert parse_actions("The project uses structlog for logging (see a.py).", KNOWN) == []
    assert parse_actions("", KNOWN) == []


def test_json_without_params_is_not_a_call():
    assert parse_actions('Result: {"name": "search_project_code"}', KNOWN) == []


def test_call_ids_are_unique():
    text = '```batch_actions\n[{"tool": "search_project_code"}, {"tool": "search_project_code"}]\n```'
    parsed = parse_actions(text, KNOWN)
    assert len({call.id for call in parsed}) == 2


def test_plan_detector():
    assert looks_like_unexecuted_plan("I will search the codebase for the logger and then submit it.")
    assert looks_like_unexecuted_plan("Let me check the config loader first.")
    assert not looks_like_unexecuted_plan("The config loader lives in settings.py and reads env vars.")
    assert not looks_like_unexecuted_plan(None)
