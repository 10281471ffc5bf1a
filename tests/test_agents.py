"""Tests for the stage agents — the Anthropic client is always a MagicMock."""

import json
from unittest.mock import MagicMock, patch

import anthropic
import httpx
import pytest

from agents.base import load_prompt
from agents.builder import BuilderAgent
from agents.healer import HealerAgent
from agents.linter import LinterAgent
from agents.planner import PlannerAgent
from config.rules import COMPLETE_SENTINEL
from core.errors import BadRequest, RateLimited, StageError
from core.events import CodeEvent, CompleteEvent, PlanEvent, StatusEvent


def _client(chunks, stop_reason="end_turn"):
    stream = MagicMock()
    stream.text_stream = iter(chunks)
    stream.get_final_message.return_value = MagicMock(stop_reason=stop_reason)
    manager = MagicMock()
    manager.__enter__.return_value = stream
    manager.__exit__.return_value = False
    client = MagicMock()
    client.messages.stream.return_value = manager
    return client


def _user_message(client):
    return client.messages.stream.call_args.kwargs["messages"][0]["content"]


@pytest.mark.parametrize("name", ["planner", "builder", "linter", "healer"])
def test_prompts_load(name):
    assert load_prompt(name).strip()


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

class TestPlanner:
    def test_emits_plan(self):
        plan = {
            "summary": "A bakery",
            "complexity": "HIGH",
            "files": [{"path": "/App.tsx", "description": "Entry", "lineEstimate": 90, "priority": 1}],
        }
        text = json.dumps(plan)
        client = _client([text[:20], text[20:]])
        events = list(PlannerAgent(client=client).run({"prompt": "a bakery"}))

        assert isinstance(events[0], StatusEvent)
        assert events[0].step == "architect"
        assert events[1] == PlanEvent(files=plan["files"], complexity="high", summary="A bakery", step="architect")
        assert events[2] == CompleteEvent(success=True, step="architect")

    def test_unparsable_plan_is_empty_manifest(self):
        events = list(PlannerAgent(client=_client(["I cannot do that"])).run({"prompt": "a bakery"}))
        assert events[1].files == []
        assert events[1].complexity is None

    def test_missing_prompt(self):
        with pytest.raises(BadRequest):
            next(PlannerAgent(client=_client([])).run({}))

    def test_existing_code_is_summarised_not_sent(self):
        client = _client(["{}"])
        list(PlannerAgent(client=client).run({"prompt": "add a footer", "currentCode": "a\nb\nc"}))
        message = _user_message(client)
        assert "3-line" in message
        assert "a\nb\nc" not in message


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class TestBuilder:
    def test_natural_stop_appends_sentinel(self):
        events = list(BuilderAgent(client=_client(["const ", "a = 1;"])).run({"prompt": "x"}))
        partials = [e.code for e in events if isinstance(e, CodeEvent)]
        assert partials[:2] == ["const ", "a = 1;"]
        assert COMPLETE_SENTINEL in partials[-1]
        assert all(e.partial for e in events if isinstance(e, CodeEvent))
        assert isinstance(events[-1], CompleteEvent)

    def test_token_limit_omits_sentinel(self):
        client = _client(["const a = ("], stop_reason="max_tokens")
        events = list(BuilderAgent(client=client).run({"prompt": "x"}))
        assert not any(COMPLETE_SENTINEL in e.code for e in events if isinstance(e, CodeEvent))

    def test_message_carries_target_and_healing_context(self):
        agent = BuilderAgent(client=MagicMock())
        message = agent.build_message({
            "prompt": "a bakery",
            "targetFile": {"path": "/components/Hero.tsx", "description": "Hero", "lineEstimate": 60},
            "otherFiles": [{"path": "/data/products.ts", "default": None, "exports": ["products"]}],
            "healingContext": {
                "errorType": "MissingImport",
                "errorMessage": "'useState' is used but never imported",
                "location": "line 3",
                "failedCode": "x" * 5000,
                "fixSuggestion": "Add the import",
            },
        })
        assert "/components/Hero.tsx" in message
        assert "about 60 lines" in message
        assert "/data/products.ts: default none; named products" in message
        assert "MissingImport" in message
        assert "x" * 1500 in message
        assert "x" * 1501 not in message

    def test_continuation_mode_sends_prompt_verbatim(self):
        client = _client(["rest"])
        list(BuilderAgent(client=client).run({"prompt": "[CONTINUATION_MODE] go", "mode": "continuation"}))
        assert _user_message(client) == "[CONTINUATION_MODE] go"

    @patch("utils.llm.time.sleep")
    def test_rate_limit_maps_to_rate_limited(self, mock_sleep):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        response = httpx.Response(429, request=request)
        client = MagicMock()
        client.messages.stream.side_effect = anthropic.RateLimitError("slow down", response=response, body=None)
        events = BuilderAgent(client=client).run({"prompt": "x"})
        assert isinstance(next(events), StatusEvent)
        with pytest.raises(RateLimited):
            next(events)

    @patch("utils.llm.time.sleep")
    def test_api_error_maps_to_stage_error(self, mock_sleep):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        response = httpx.Response(500, request=request)
        client = MagicMock()
        client.messages.stream.side_effect = anthropic.InternalServerError("oops", response=response, body=None)
        events = BuilderAgent(client=client).run({"prompt": "x"})
        next(events)
        with pytest.raises(StageError) as exc_info:
            next(events)
        assert exc_info.value.stage == "builder"


# ---------------------------------------------------------------------------
# Healer
# ---------------------------------------------------------------------------

class TestHealer:
    def test_requires_crash_context(self):
        with pytest.raises(BadRequest):
            next(HealerAgent(client=_client([])).run({"runtimeError": "boom"}))

    def test_message_has_error_and_code_only(self):
        client = _client(["fixed"])
        events = list(HealerAgent(client=client).run({
            "runtimeError": "TypeError: x is undefined",
            "failedCode": "const y = x.z;",
        }))
        message = _user_message(client)
        assert "TypeError: x is undefined" in message
        assert "const y = x.z;" in message
        assert events[0].step == "healing"
        assert COMPLETE_SENTINEL in "".join(e.code for e in events if isinstance(e, CodeEvent))

    def test_continuation_mode_needs_only_prompt(self):
        client = _client(["more"])
        list(HealerAgent(client=client).run({"prompt": "continue", "mode": "continuation"}))
        assert _user_message(client) == "continue"


# ---------------------------------------------------------------------------
# Linter
# ---------------------------------------------------------------------------

class TestLinter:
    def test_fail_verdict(self):
        verdict = {"verdict": "fail", "errorType": "MissingImport", "explanation": "no import", "extra": 1}
        events = list(LinterAgent(client=_client([json.dumps(verdict)])).run({"code": "x", "path": "/App.tsx"}))
        result = events[-1].verdict
        assert result["verdict"] == "FAIL"
        assert result["errorType"] == "MissingImport"
        assert "extra" not in result
        assert result["fixSuggestion"] == "N/A"

    def test_unparsable_verdict_passes(self):
        events = list(LinterAgent(client=_client(["looks fine to me"])).run({"code": "x"}))
        assert events[-1].verdict["verdict"] == "PASS"

    def test_requires_code(self):
        with pytest.raises(BadRequest):
            next(LinterAgent(client=_client([])).run({"path": "/App.tsx"}))
