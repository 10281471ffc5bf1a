"""Tests for core.ghost_fixer — truncation classification and continuation."""

from unittest.mock import MagicMock

import pytest

from config.rules import COMPLETE_SENTINEL, END_MARKER
from core.errors import ContinuationError, RunCancelled
from core.ghost_fixer import (
    Classification,
    FixState,
    GhostFixer,
    build_continuation,
    classify,
    is_complete,
    merge,
)


def test_sentinel_is_authoritative():
    assert is_complete(f"const a = 1;\n{COMPLETE_SENTINEL}\n")
    assert not is_complete("export default function App() { return null; }\n")
    assert not is_complete("")
    assert not is_complete(None)


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------

class TestClassify:
    def test_open_double_quote(self):
        assert classify('const title = "Hello wor') is Classification.OPEN_DOUBLE_QUOTE

    def test_open_single_quote(self):
        assert classify("const title = 'Hello wor") is Classification.OPEN_SINGLE_QUOTE

    def test_apostrophe_does_not_count(self):
        assert classify('const t = "it\'s') is Classification.OPEN_DOUBLE_QUOTE

    def test_later_quote_wins_when_both_are_open(self):
        assert classify("say('He said \"hi") is Classification.OPEN_DOUBLE_QUOTE

    def test_open_template_literal(self):
        assert classify("const msg = `Hello ${name}") is Classification.OPEN_TEMPLATE_LITERAL

    def test_open_tag(self):
        text = "return (\n  <div>\n    <img className=\"w-full\" src={hero}"
        assert classify(text) is Classification.OPEN_TAG

    def test_unbalanced_braces(self):
        text = "export default function App() {\n  return (\n    <div>\n"
        assert classify(text) is Classification.UNBALANCED_BRACES

    def test_unbalanced_parens(self):
        assert classify("const total = sum(1,\n  2") is Classification.UNBALANCED_PARENS

    def test_general(self):
        assert classify("const a = 1;\n") is Classification.GENERAL


# ---------------------------------------------------------------------------
# build_continuation / merge
# ---------------------------------------------------------------------------

def test_continuation_carries_only_bounded_tail():
    text = "x" * 600 + "TAIL_END"
    request = build_continuation(text, original_prompt="a bakery site", tail_chars=400)
    assert len(request.tail) == 400
    assert request.tail == text[-400:]
    assert "x" * 401 not in request.prompt
    body = request.to_body()
    assert body["mode"] == "continuation"
    assert body["classification"] == "General"
    assert body["contextTail"] == request.tail
    assert body["originalPrompt"] == "a bakery site"


def test_continuation_prompt_names_the_repair():
    request = build_continuation('const title = "Hello wor')
    assert request.classification is Classification.OPEN_DOUBLE_QUOTE
    assert "double-quoted string" in request.prompt
    assert COMPLETE_SENTINEL in request.prompt


def test_merge_strips_fences_and_markers():
    merged = merge("const a = ", "```tsx\n/// BEGIN_CODE ///\n1;\n```")
    assert merged == "const a = 1;"


def test_merge_is_plain_concatenation():
    assert merge('const t = "Hel', 'lo";') == 'const t = "Hello";'


# ---------------------------------------------------------------------------
# GhostFixer.run
# ---------------------------------------------------------------------------

class TestGhostFixer:
    def test_complete_text_needs_no_calls(self):
        continue_fn = MagicMock()
        text = f"const a = 1;\n{COMPLETE_SENTINEL}"
        result = GhostFixer().run(text, continue_fn)
        assert result.complete
        assert result.attempts == 0
        assert result.state is FixState.COMPLETE
        continue_fn.assert_not_called()

    def test_open_double_quote_is_repaired_in_one_call(self):
        truncated = 'export default function App() {\n  const title = "Hello wor'
        continuation = f'ld";\n  return <h1>{{title}}</h1>;\n}}\n{END_MARKER}\n{COMPLETE_SENTINEL}\n'
        continue_fn = MagicMock(return_value=continuation)

        fixer = GhostFixer(max_attempts=3, tail_chars=400)
        result = fixer.run(truncated, continue_fn, original_prompt="hero title")

        assert result.complete
        assert result.attempts == 1
        assert result.classifications == [Classification.OPEN_DOUBLE_QUOTE]
        assert 'const title = "Hello world";' in result.text
        request = continue_fn.call_args[0][0]
        assert request.classification is Classification.OPEN_DOUBLE_QUOTE
        assert request.original_prompt == "hero title"
        assert result.state is FixState.COMPLETE

    def test_gives_up_after_max_attempts(self):
        continue_fn = MagicMock(return_value="  more();\n")
        result = GhostFixer(max_attempts=3).run("function f() {\n", continue_fn)
        assert not result.complete
        assert result.attempts == 3
        assert result.state is FixState.GAVE_UP
        assert continue_fn.call_count == 3
        assert result.text.startswith("function f() {\n")

    def test_continuation_failure_raises_continuation_error(self):
        continue_fn = MagicMock(side_effect=RuntimeError("socket closed"))
        with pytest.raises(ContinuationError) as exc_info:
            GhostFixer().run("const a = (", continue_fn)
        assert exc_info.value.attempt == 1
        assert exc_info.value.error_type == "truncation"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_cancellation_propagates_unchanged(self):
        continue_fn = MagicMock(side_effect=RunCancelled())
        with pytest.raises(RunCancelled):
            GhostFixer().run("const a = (", continue_fn)

    def test_zero_attempts_gives_up_immediately(self):
        continue_fn = MagicMock()
        result = GhostFixer(max_attempts=0).run("const a = (", continue_fn)
        assert not result.complete
        assert result.attempts == 0
        continue_fn.assert_not_called()

    def test_one_fixer_serves_overlapping_runs(self):
        fixer = GhostFixer(max_attempts=1)
        inner = {}

        def outer_continue(request):
            # a second artifact runs through the same fixer mid-continuation
            inner["result"] = fixer.run("function g() {\n", MagicMock(return_value="  more();\n"))
            return f"\n}}\n{END_MARKER}\n{COMPLETE_SENTINEL}\n"

        outer = fixer.run("function f() {\n", outer_continue)
        assert outer.complete
        assert outer.state is FixState.COMPLETE
        assert inner["result"].state is FixState.GAVE_UP
        assert not inner["result"].complete
