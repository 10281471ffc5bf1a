#!/usr/bin/env python3
"""Pipeline server: the public streaming API plus the four stage endpoints.

Public:  POST /api/generate, /api/heal, /api/continue; GET /api/health,
         /api/credits/<user_id>
Stages:  POST /stages/<planner|builder|linter|healer>

Every streamed response uses `data: <json>\\n\\n` frames, a `: keep-alive`
heartbeat while the producer is quiet, and `data: [DONE]` at the end.
"""

import hmac
import logging
import os
import queue
import threading
import uuid

from flask import Flask, Response, jsonify, request

from agents.builder import BuilderAgent
from agents.healer import HealerAgent
from agents.linter import LinterAgent
from agents.planner import PlannerAgent
from config.defaults import load_settings
from core.credits import CreditMeter, InMemoryLedger
from core.errors import BadRequest, PipelineError, RateLimited
from core.events import END_FRAME, HEARTBEAT, CompleteEvent, ErrorEvent, StatusEvent, encode
from core.orchestrator import Orchestrator
from core.stage_runner import STAGES, StageRunner
from core.state import GenerationRequest
from core.storage import make_store

logger = logging.getLogger(__name__)

app = Flask(__name__)
settings = load_settings()
ledger = InMemoryLedger(settings["starting_balance"])
meter = CreditMeter(ledger, settings["privileged_users"], settings["pricing"])
store = make_store(settings)
orchestrator = Orchestrator(StageRunner.from_settings(settings), meter, store, settings)
stage_agents = {
    "planner": PlannerAgent(settings),
    "builder": BuilderAgent(settings),
    "linter": LinterAgent(settings),
    "healer": HealerAgent(settings),
}

_DONE = object()
_OPEN_PATHS = {"/api/health"}


def _error_response(exc, status):
    body = exc.to_payload()
    body["error"] = exc.message
    resp = jsonify(body)
    resp.status_code = status
    return resp


def event_stream(events, cancel, interval=None, maxsize=None):
    """Pump an event generator through a bounded queue into SSE bytes.

    A producer thread drives `events`; the response generator drains the
    queue, sending a heartbeat whenever nothing arrives within `interval`.
    When the consumer goes away, `cancel` is set and the producer closes
    `events` at its next put.
    """
    interval = settings["heartbeat_interval"] if interval is None else interval
    channel = queue.Queue(maxsize=maxsize or settings["event_queue_size"])

    def put(item):
        while not cancel.is_set():
            try:
                channel.put(item, timeout=0.25)
                return True
            except queue.Full:
                continue
        return False

    def produce():
        try:
            for event in events:
                if not put(event):
                    break
        except Exception:
            # Nothing upstream can receive it; the missing terminal event tells the client
            logger.exception("Event producer crashed")
        finally:
            events.close()
            put(_DONE)

    def generate():
        worker = threading.Thread(target=produce, daemon=True)
        worker.start()
        try:
            while True:
                try:
                    item = channel.get(timeout=interval)
                except queue.Empty:
                    yield HEARTBEAT
                    continue
                if item is _DONE:
                    break
                yield encode(item)
            yield END_FRAME
        finally:
            cancel.set()

    return generate()


def _sse(events, cancel=None):
    cancel = cancel or threading.Event()
    return Response(
        event_stream(events, cancel),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object")
    return body


@app.errorhandler(BadRequest)
def handle_bad_request(exc):
    return _error_response(exc, 400)


@app.before_request
def require_token():
    token = settings["service_token"]
    if not token or request.path in _OPEN_PATHS:
        return None
    header = request.headers.get("Authorization", "")
    if not hmac.compare_digest(header, f"Bearer {token}"):
        return jsonify({"error": "Unauthorized"}), 401
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@app.route("/api/health")
def api_health():
    return jsonify({"status": "ok", "stages": list(STAGES)})


@app.route("/api/credits/<user_id>")
def api_credits(user_id):
    return jsonify({
        "userId": user_id,
        "balance": meter.balance(user_id),
        "privileged": meter.is_privileged(user_id),
    })


@app.route("/api/generate", methods=["POST"])
def api_generate():
    """Run the full pipeline and stream its events."""
    gen_request = GenerationRequest.from_body(_json_body())
    if not gen_request.prompt:
        raise BadRequest("Missing prompt")
    if not gen_request.user_id:
        raise BadRequest("Missing userId")

    cancel = threading.Event()
    run_id = uuid.uuid4().hex
    logger.info("Accepted run %s for user %s", run_id, gen_request.user_id)
    return _sse(orchestrator.run(gen_request, run_id=run_id, cancel=cancel), cancel)


@app.route("/api/heal", methods=["POST"])
def api_heal():
    """Fix a runtime crash with one Healer call. Never charged."""
    body = _json_body()
    for key in ("runtimeError", "failedCode", "userId"):
        if not body.get(key):
            raise BadRequest(f"Missing {key}")

    cancel = threading.Event()
    events = orchestrator.heal(
        body["runtimeError"],
        body["failedCode"],
        body["userId"],
        project_id=body.get("projectId"),
        style_profile=body.get("styleProfile"),
        plan=body.get("architectPlan"),
        cancel=cancel,
    )
    return _sse(events, cancel)


@app.route("/api/continue", methods=["POST"])
def api_continue():
    """One Builder continuation call, streamed straight back."""
    body = _json_body()
    if body.get("mode") != "continuation":
        raise BadRequest("mode must be 'continuation'")
    if not body.get("prompt"):
        raise BadRequest("Missing prompt")

    cancel = threading.Event()
    return _sse(orchestrator.relay("builder", body, cancel=cancel, step="builder"), cancel)


# ---------------------------------------------------------------------------
# Stage endpoints
# ---------------------------------------------------------------------------

def _stage_events(agent, buffered, rest):
    try:
        yield from buffered
        yield from rest
    except PipelineError as exc:
        logger.warning("Stage %s failed mid-stream: %s", agent.name, exc.message)
        yield ErrorEvent.from_exception(exc, step=agent.step)
        yield CompleteEvent(success=False, step=agent.step)


@app.route("/stages/<name>", methods=["POST"])
def stage(name):
    """Run one stage agent.

    Events are pulled up to the first non-status event before the response
    starts, so request and rate-limit failures still get a real HTTP status.
    """
    agent = stage_agents.get(name)
    if agent is None:
        return jsonify({"error": f"Unknown stage: {name}"}), 404

    events = agent.run(_json_body())
    buffered = []
    try:
        for event in events:
            buffered.append(event)
            if not isinstance(event, StatusEvent):
                break
    except BadRequest as exc:
        return _error_response(exc, 400)
    except RateLimited as exc:
        resp = _error_response(exc, 429)
        if exc.retry_after is not None:
            resp.headers["Retry-After"] = str(exc.retry_after)
        return resp
    except PipelineError as exc:
        logger.warning("Stage %s failed: %s", name, exc.message)
        return _error_response(exc, 502)

    return _sse(_stage_events(agent, buffered, events))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.environ.get("PORT", 5001))
    print(f"Pipeline server running at http://localhost:{port}")
    app.run(debug=False, port=port, threaded=True)
