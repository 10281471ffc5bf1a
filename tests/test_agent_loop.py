"""Tests for client.agent_loop — a fake transport feeds canned event streams."""

from config.rules import COMPLETE_SENTINEL, END_MARKER
from core.errors import RateLimited
from core.events import (
    CodeEvent,
    CompleteEvent,
    ErrorEvent,
    FileCompleteEvent,
    LogEvent,
    PlanEvent,
    StatusEvent,
)
from core.state import CLIENT_BUILDING, CLIENT_DONE, CLIENT_ERROR, CLIENT_IDLE, CLIENT_LINTING
from client.agent_loop import AgentLoop, map_step

BUNDLE = "import React from 'react';\n\nfunction App() { return <div />; }\n\nexport default App;\n"


class FakeStream:
    def __init__(self, events):
        self._events = events
        self.closed = False

    def events(self):
        yield from self._events

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, **responses):
        self.responses = responses
        self.calls = []
        self.streams = []

    def open(self, path, body):
        self.calls.append((path, body))
        response = self.responses[path.replace("api/", "")]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(body)
        stream = FakeStream(response)
        self.streams.append(stream)
        return stream


def successful_run():
    return [
        StatusEvent("Planning your project...", step="architect"),
        PlanEvent(files=[{"path": "/App.tsx"}], complexity="medium", step="architect"),
        StatusEvent("Building /App.tsx...", step="builder"),
        StatusEvent("Validating /App.tsx...", step="linter"),
        FileCompleteEvent(path="/App.tsx", line_count=5, step="builder"),
        StatusEvent("Bundling preview...", step="bundler"),
        CodeEvent(code=BUNDLE, files=[{"path": "/App.tsx", "lineCount": 5, "passed": True}], step="bundler"),
        CompleteEvent(success=True, file_count=1, credits_used=2, attempts=1),
    ]


def test_map_step():
    assert map_step("architect") == "architecting"
    assert map_step("bundler") == CLIENT_BUILDING
    assert map_step("linter") == CLIENT_LINTING
    assert map_step(None, CLIENT_LINTING) == CLIENT_LINTING
    assert map_step("mystery", "healing") == "healing"


# ---------------------------------------------------------------------------
# start
# ---------------------------------------------------------------------------

def test_successful_run():
    seen = []
    transport = FakeTransport(generate=successful_run())
    loop = AgentLoop(transport, "u1", on_event=lambda state, event: seen.append(state.stage))
    loop.mount("p1")

    state = loop.start("a bakery storefront", style_profile="warm")

    assert state.stage == CLIENT_DONE
    assert state.last_generated_code == BUNDLE
    assert state.credits_used == 2
    assert state.is_running is False
    assert state.locked_project_id == "p1"
    assert state.plan["complexity"] == "medium"
    assert state.files == [{"path": "/App.tsx", "lineCount": 5, "passed": True}]
    assert any("/App.tsx (5 lines, ok)" in line for line in state.logs)
    assert seen[:4] == ["architecting", "architecting", "building", "linting"]

    path, body = transport.calls[0]
    assert path == "api/generate"
    assert body == {"prompt": "a bakery storefront", "userId": "u1", "styleProfile": "warm", "projectId": "p1"}
    assert transport.streams[0].closed


def test_logs_are_append_only():
    events = [LogEvent("one"), LogEvent("two")] + successful_run()
    loop = AgentLoop(FakeTransport(generate=events), "u1")
    state = loop.start("x")
    assert state.logs[0] == "> Initializing multi-agent pipeline..."
    assert state.logs[1:3] == ["one", "two"]


def test_error_event_sets_error_state():
    events = [
        StatusEvent("Planning your project...", step="architect"),
        ErrorEvent("Insufficient credits. Need 6, have 5.", error_type="affordability", retryable=False),
        CompleteEvent(success=False, credits_used=0),
    ]
    loop = AgentLoop(FakeTransport(generate=events), "u1")
    state = loop.start("x")
    assert state.stage == CLIENT_ERROR
    assert state.error == "Insufficient credits. Need 6, have 5."
    assert state.retryable is False
    assert state.is_running is False


def test_stream_without_terminal_event_is_an_error():
    events = [StatusEvent("Planning your project...", step="architect")]
    loop = AgentLoop(FakeTransport(generate=events), "u1")
    state = loop.start("x")
    assert state.stage == CLIENT_ERROR
    assert state.error == "Generation ended unexpectedly. Please retry."
    assert state.retryable is True


def test_transport_failure_is_an_error():
    loop = AgentLoop(FakeTransport(generate=RateLimited()), "u1")
    state = loop.start("x")
    assert state.stage == CLIENT_ERROR
    assert state.retryable is True
    assert state.logs[-1].startswith("Error: Rate limit exceeded")


def test_skip_planning_and_current_code_in_body():
    transport = FakeTransport(generate=successful_run())
    loop = AgentLoop(transport, "u1")
    loop.start("tweak it", current_code="old", skip_planning=True)
    body = transport.calls[0][1]
    assert body["currentCode"] == "old"
    assert body["skipArchitect"] is True
    assert "projectId" not in body


# ---------------------------------------------------------------------------
# Cancellation and project locking
# ---------------------------------------------------------------------------

def test_cancel_mid_stream_goes_idle_and_ignores_the_rest():
    seen = []

    def on_event(state, event):
        seen.append(event)
        if isinstance(event, StatusEvent):
            loop.cancel()

    transport = FakeTransport(generate=successful_run())
    loop = AgentLoop(transport, "u1", on_event=on_event)
    loop.mount("p1")
    state = loop.start("x")

    assert state.stage == CLIENT_IDLE
    assert state.run_id is None
    assert state.locked_project_id is None
    assert state.last_generated_code == ""
    assert state.logs == []
    assert len(seen) == 1
    assert loop.active_project_id == "p1"
    assert transport.streams[0].closed


def test_project_switch_drops_the_old_run():
    def on_event(state, event):
        if isinstance(event, PlanEvent):
            loop.mount("p2")

    loop = AgentLoop(FakeTransport(generate=successful_run()), "u1", on_event=on_event)
    loop.mount("p1")
    state = loop.start("x")

    assert loop.active_project_id == "p2"
    assert state.stage == CLIENT_IDLE
    assert state.last_generated_code == ""


def test_late_events_from_a_previous_run_are_ignored():
    loop = AgentLoop(FakeTransport(generate=successful_run()), "u1")
    first_run = loop.start("x").run_id
    second = loop.start("y")
    assert second.run_id != first_run

    assert loop.apply(first_run, CodeEvent(code="stale")) is False
    assert loop.state.last_generated_code == BUNDLE


def test_unmount_resets_everything():
    loop = AgentLoop(FakeTransport(generate=successful_run()), "u1")
    loop.mount("p1")
    loop.start("x")
    loop.unmount()
    assert loop.active_project_id is None
    assert loop.state.stage == CLIENT_IDLE


# ---------------------------------------------------------------------------
# heal_code
# ---------------------------------------------------------------------------

def _big_app():
    sections = []
    for i in range(4):
        body = "\n".join(f"  const v{j} = {j};" for j in range(20))
        sections.append(f"function Section{i}() {{\n{body}\n  return null;\n}}")
    return "\n\n".join(sections) + "\n\nexport default Section0;\n"


def test_heal_sends_crash_context_and_applies_fix():
    fixed = "export default function App() { return <div />; }"
    transport = FakeTransport(heal=[
        StatusEvent("Analyzing the runtime error...", step="healing"),
        CodeEvent(code=fixed, summary="Applied runtime fix", step="healing"),
        CompleteEvent(success=True, credits_used=0),
    ])
    loop = AgentLoop(transport, "u1")
    loop.mount("p1")

    result = loop.heal_code("TypeError: x is undefined", "const y = x.z;")

    assert result == fixed
    assert loop.state.stage == CLIENT_DONE
    path, body = transport.calls[0]
    assert path == "api/heal"
    assert body == {"runtimeError": "TypeError: x is undefined", "failedCode": "const y = x.z;",
                    "userId": "u1", "projectId": "p1"}


def test_heal_guardrails_keep_previous_code():
    old = _big_app()
    transport = FakeTransport(heal=[
        CodeEvent(code="export default function App() { return null; }", step="healing"),
        CompleteEvent(success=True),
    ])
    loop = AgentLoop(transport, "u1")
    loop.state.last_generated_code = old

    result = loop.heal_code("TypeError: boom")

    assert result == old
    assert loop.state.last_generated_code == old
    assert any(line.startswith("Guardrails kept the previous code") for line in loop.state.logs)
    assert transport.calls[0][1]["failedCode"] == old


def test_heal_failure_returns_none():
    transport = FakeTransport(heal=[
        ErrorEvent("Healed code failed validation", error_type="validation", retryable=True, step="healing"),
        CompleteEvent(success=False),
    ])
    loop = AgentLoop(transport, "u1")
    assert loop.heal_code("boom", "const a = 1;") is None
    assert loop.state.stage == CLIENT_ERROR


# ---------------------------------------------------------------------------
# continue_truncated
# ---------------------------------------------------------------------------

def test_continue_truncated_repairs_against_one_stage():
    truncated = 'export default function App() {\n  const title = "Hello wor'
    continuation = f'ld";\n  return <h1>{{title}}</h1>;\n}}\n{END_MARKER}\n{COMPLETE_SENTINEL}\n'
    transport = FakeTransport(**{"continue": [CodeEvent(code=continuation, partial=True), CompleteEvent(success=True)]})
    loop = AgentLoop(transport, "u1")

    fix = loop.continue_truncated(truncated, original_prompt="a hero")

    assert fix.complete
    assert fix.attempts == 1
    path, body = transport.calls[0]
    assert path == "api/continue"
    assert body["mode"] == "continuation"
    assert body["classification"] == "OpenDoubleQuote"
    assert body["userId"] == "u1"
    assert 'const title = "Hello world";' in loop.state.last_generated_code
    assert COMPLETE_SENTINEL not in loop.state.last_generated_code
    assert END_MARKER not in loop.state.last_generated_code


def test_continue_truncated_keeps_code_when_still_incomplete():
    transport = FakeTransport(**{"continue": [CodeEvent(code="  more();", partial=True), CompleteEvent(success=True)]})
    loop = AgentLoop(transport, "u1")
    loop.state.last_generated_code = "previous"

    fix = loop.continue_truncated("function f() {\n")

    assert not fix.complete
    assert loop.state.last_generated_code == "previous"
    assert loop.state.logs[-1] == "Truncated output could not be fully recovered"


def test_continue_truncated_records_a_failed_continuation():
    transport = FakeTransport(**{"continue": RateLimited()})
    loop = AgentLoop(transport, "u1")
    loop.mount("p1")

    assert loop.continue_truncated("const a = (") is None

    assert loop.state.stage == CLIENT_ERROR
    assert loop.state.error.startswith("Continuation failed")
    assert loop.state.retryable
    assert not loop.state.is_running


def test_continue_truncated_error_event_fails_the_run():
    transport = FakeTransport(**{"continue": [
        ErrorEvent("Builder stage unavailable", error_type="transport", retryable=True, step="builder"),
        CompleteEvent(success=False),
    ]})
    loop = AgentLoop(transport, "u1")
    loop.state.last_generated_code = "previous"

    assert loop.continue_truncated("function f() {\n") is None

    assert loop.state.stage == CLIENT_ERROR
    assert "Builder stage unavailable" in loop.state.error
    assert loop.state.last_generated_code == "previous"


def test_continue_truncated_drops_a_cancelled_repair():
    loop = None

    def reset_then_answer(body):
        loop.reset()
        return [CodeEvent(code=f"\n}}\n{COMPLETE_SENTINEL}\n", partial=True), CompleteEvent(success=True)]

    transport = FakeTransport(**{"continue": reset_then_answer})
    loop = AgentLoop(transport, "u1")
    loop.mount("p1")

    assert loop.continue_truncated("function f() {\n") is None

    assert loop.state.stage == CLIENT_IDLE
    assert loop.state.error is None
    assert loop.state.last_generated_code == ""
    assert transport.streams[0].closed
