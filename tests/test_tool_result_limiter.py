from __future__ import annotations

import json

from kb_agent.domain.context.context_window import ToolResultQuota
from kb_agent.domain.context.tool_result_limiter import ToolResultLimiter, summarize_for_log

limiter = ToolResultLimiter()


def test_submission_results_are_capped_at_500_chars():
    text = limiter.limit("submit_candidate", {"message": "m" * 2000}, ToolResultQuota(6000, 15))
    assert len(text) == 500


def test_search_keeps_top_matches_and_notes_the_rest():
    result = {
        "matches": [{"file": f"f{i}.py", "context": "\n".join(f"l{n}" for n in range(12))} for i in range(20)],
        "total": 20,
    }

    limited = json.loads(limiter.limit("search_project_code", result, ToolResultQuota(100_000, 3)))

    assert [m["file"] for m in limited["matches"]] == ["f0.py", "f1.py", "f2.py"]
    assert limited["_note"] == "Showing 3 of 20 matches"
    assert limited["matches"][0]["context"].split("\n")[:7] == [f"l{n}" for n in range(7)]
    assert limited["matches"][0]["context"].endswith("... [truncated]")
    # The original result is not modified
    assert len(result["matches"]) == 20


def test_file_content_is_cut_on_a_line_boundary():
    content = "".join(f"line {n:03d}\n" for n in range(100))

    limited = json.loads(limiter.limit("read_project_file", {"path": "a.py", "content": content}, ToolResultQuota(50, 5)))

    body, marker = limited["content"].rsplit("... ", 1)
    assert body.endswith("\n")
    assert all(line.startswith("line ") for line in body.splitlines())
    assert len(body) <= 50
    assert marker == f"[truncated at 50 chars, total {len(content)}]"


def test_other_tools_are_json_serialized_and_cut():
    text = limiter.limit("list_recipes", {"items": ["x" * 100] * 10}, ToolResultQuota(200, 5))
    assert text.startswith('{"items": ["xxx')
    assert text.endswith("total chars]")
    assert len(text) < 260


def test_short_results_pass_through():
    assert limiter.limit("list_recipes", "plain", ToolResultQuota(800, 3)) == "plain"


def test_summarize_for_log_keeps_key_structure():
    summary = summarize_for_log({"title": "t" * 400, "items": list(range(50)), "count": 50})

    assert summary["title"] == "t" * 200 + "..."
    assert summary["items"] == {"_count": 50, "first2": [0, 1]}
    assert summary["count"] == 50
    assert summarize_for_log({"small": 1}) == {"small": 1}


def test_summarize_for_log_bounds_nested_payloads():
    nested = summarize_for_log({"data": {"blob": "x" * 100_000}}, 500)
    listed = summarize_for_log([{"blob": "y" * 10_000}] * 5, 300)

    assert isinstance(nested, str) and len(nested) == 500
    assert nested.startswith('{"data": {"blob": "xxx')
    assert len(listed) == 300
