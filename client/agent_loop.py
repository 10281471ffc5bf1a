"""Client agent loop — drives one generation stream and keeps UI-visible state.

The loop talks to the orchestrator's public endpoints through any transport
exposing open(path, body) -> stream with events() and close();
core.stage_runner.HttpStreamClient is the HTTP one.

Each start() gets a fresh ClientPipelineState keyed by a new run id. Events
are applied only while their run id is still the current one and the locked
project is still the mounted one, so late chunks after cancel, reset, unmount
or a project switch are dropped.
"""

import logging
import threading
import uuid

from core.errors import (
    ContinuationError,
    PipelineError,
    RunCancelled,
    StageError,
    StreamEndedUnexpectedly,
)
from core.events import (
    CodeEvent,
    CompleteEvent,
    ErrorEvent,
    FileCompleteEvent,
    LogEvent,
    PlanEvent,
    StatusEvent,
    is_terminal,
)
from core.ghost_fixer import GhostFixer
from core.policy import safe_apply
from core.state import (
    CLIENT_ARCHITECTING,
    CLIENT_BUILDING,
    CLIENT_DONE,
    CLIENT_ERROR,
    CLIENT_HEALING,
    CLIENT_IDLE,
    CLIENT_LINTING,
    ClientPipelineState,
)
from core.validator import validate
from utils.llm import extract_file_text

logger = logging.getLogger(__name__)

STEP_MAP = {
    "architect": CLIENT_ARCHITECTING,
    "builder": CLIENT_BUILDING,
    "bundler": CLIENT_BUILDING,
    "linter": CLIENT_LINTING,
    "healing": CLIENT_HEALING,
}

GENERATE_PATH = "api/generate"
HEAL_PATH = "api/heal"
CONTINUE_PATH = "api/continue"


def map_step(step, current=CLIENT_BUILDING):
    """Server step name to UI step name; unknown steps keep the current one."""
    return STEP_MAP.get(step, current)


class AgentLoop:
    def __init__(self, transport, user_id, on_event=None, ghost_fixer=None, app_path="/App.tsx"):
        self.transport = transport
        self.user_id = user_id
        self.on_event = on_event
        self.ghost_fixer = ghost_fixer or GhostFixer()
        self.app_path = app_path
        self.state = ClientPipelineState()
        self.active_project_id = None
        self._stream = None
        self._terminal_seen = False
        self._lock = threading.RLock()

    # --- project locking -------------------------------------------------

    def mount(self, project_id):
        """Make project_id the active project with a fresh idle state."""
        stream = None
        with self._lock:
            stream, self._stream = self._stream, None
            self.active_project_id = project_id
            self.state = ClientPipelineState()
        if stream is not None:
            stream.close()

    def unmount(self):
        self.mount(None)

    def reset(self):
        """Abort anything in flight and return to idle, keeping the mounted project."""
        self.mount(self.active_project_id)

    def cancel(self):
        """Abort the in-flight stream and go idle immediately."""
        with self._lock:
            run_id = self.state.run_id
        logger.info("Cancelling run %s", run_id)
        self.reset()

    # --- event application -----------------------------------------------

    def _is_current(self, run_id):
        return (
            run_id is not None
            and self.state.run_id == run_id
            and self.state.locked_project_id == self.active_project_id
        )

    def apply(self, run_id, event):
        """Apply one event to the state. Returns False when it was discarded."""
        with self._lock:
            if not self._is_current(run_id):
                return False
            state = self.state
            if is_terminal(event):
                self._terminal_seen = True
                state.is_running = False
            if isinstance(event, StatusEvent):
                state.stage = map_step(event.step, state.stage)
            elif isinstance(event, LogEvent):
                state.logs.append(event.message)
            elif isinstance(event, PlanEvent):
                state.plan = event.payload()
            elif isinstance(event, FileCompleteEvent):
                state.files.append(event.payload())
                mark = "ok" if event.passed else f"kept with {event.category}"
                state.logs.append(f"{event.path} ({event.line_count} lines, {mark})")
            elif isinstance(event, CodeEvent):
                if event.partial:
                    return True
                state.last_generated_code = event.code
                if event.files is not None:
                    state.files = list(event.files)
                state.stage = CLIENT_DONE
            elif isinstance(event, ErrorEvent):
                state.error = event.message
                state.retryable = event.retryable
                state.stage = CLIENT_ERROR
            elif isinstance(event, CompleteEvent):
                state.is_running = False
                if event.credits_used is not None:
                    state.credits_used = event.credits_used
                if state.stage != CLIENT_ERROR and self._terminal_seen:
                    state.stage = CLIENT_DONE
        if self.on_event is not None:
            self.on_event(self.state, event)
        return True

    def _fail(self, run_id, message, retryable):
        with self._lock:
            if not self._is_current(run_id):
                return
            self.state.error = message
            self.state.retryable = retryable
            self.state.stage = CLIENT_ERROR
            self.state.is_running = False
            self.state.logs.append(f"Error: {message}")

    # --- operations --------------------------------------------------------

    def start(self, prompt, current_code=None, style_profile=None, skip_planning=False):
        """Run one generation to its end (blocking) and return the final state."""
        run_id = uuid.uuid4().hex
        with self._lock:
            previous, self._stream = self._stream, None
            self.state = ClientPipelineState(
                run_id=run_id,
                stage=CLIENT_ARCHITECTING,
                logs=["> Initializing multi-agent pipeline..."],
                last_generated_code=current_code or "",
                locked_project_id=self.active_project_id,
                is_running=True,
            )
            self._terminal_seen = False
        if previous is not None:
            previous.close()

        body = {"prompt": prompt, "userId": self.user_id}
        if current_code:
            body["currentCode"] = current_code
        if style_profile:
            body["styleProfile"] = style_profile
        if self.active_project_id:
            body["projectId"] = self.active_project_id
        if skip_planning:
            body["skipArchitect"] = True

        self._consume(run_id, GENERATE_PATH, body)
        return self.state

    def _consume(self, run_id, path, body):
        try:
            stream = self.transport.open(path, body)
            with self._lock:
                if not self._is_current(run_id):
                    stream.close()
                    return
                self._stream = stream
            try:
                for event in stream.events():
                    if not self.apply(run_id, event):
                        break
            finally:
                stream.close()
        except PipelineError as exc:
            if self._is_current(run_id):
                logger.warning("Run %s transport failure: %s", run_id, exc.message)
            self._fail(run_id, exc.message, exc.retryable)
            return

        with self._lock:
            if self._is_current(run_id):
                self._stream = None
                if not self._terminal_seen:
                    exc = StreamEndedUnexpectedly()
                    self._fail(run_id, exc.message, True)

    def heal_code(self, runtime_error, failed_code=None):
        """Send only the crash context to the healer and apply the fix.

        The healed code replaces last_generated_code unless the overwrite
        guardrails reject it. Returns the code now in effect, or None when the
        heal failed.
        """
        failed_code = failed_code or self.state.last_generated_code
        run_id = uuid.uuid4().hex
        with self._lock:
            self.state.run_id = run_id
            self.state.locked_project_id = self.active_project_id
            self.state.stage = CLIENT_HEALING
            self.state.error = None
            self.state.is_running = True
            self.state.logs.append(f"> Healing runtime error: {runtime_error[:120]}")
            self._terminal_seen = False

        body = {
            "runtimeError": runtime_error,
            "failedCode": failed_code,
            "userId": self.user_id,
        }
        if self.active_project_id:
            body["projectId"] = self.active_project_id
        if self.state.plan:
            body["architectPlan"] = self.state.plan
        self._consume(run_id, HEAL_PATH, body)

        with self._lock:
            if not self._is_current(run_id) or self.state.stage == CLIENT_ERROR:
                return None
            healed = self.state.last_generated_code
            result = safe_apply(failed_code, healed, runtime_error)
            if not result.accepted:
                self.state.last_generated_code = failed_code
                self.state.logs.append(
                    "Guardrails kept the previous code: "
                    + "; ".join(f.message for f in result.failed)
                )
            return self.state.last_generated_code

    def continue_truncated(self, text=None, original_prompt=None):
        """Repair truncated output against the builder stage, one continuation at a time.

        Runs under its own run id, so a cancel, reset or project switch
        mid-repair drops the rest and returns None. A failed continuation call
        puts the state in error ("Continuation failed: ...") and returns None.
        Otherwise returns the FixResult; the merged text is adopted only if it
        is complete and passes the static validator.
        """
        text = text if text is not None else self.state.last_generated_code
        run_id = uuid.uuid4().hex
        with self._lock:
            self.state.run_id = run_id
            self.state.locked_project_id = self.active_project_id
            self.state.stage = CLIENT_BUILDING
            self.state.error = None
            self.state.is_running = True
            self.state.logs.append("> Continuing truncated output...")

        def continue_fn(request):
            body = request.to_body()
            body["userId"] = self.user_id
            stream = self.transport.open(CONTINUE_PATH, body)
            with self._lock:
                if not self._is_current(run_id):
                    stream.close()
                    raise RunCancelled()
                self._stream = stream
            parts = []
            try:
                for event in stream.events():
                    with self._lock:
                        if not self._is_current(run_id):
                            raise RunCancelled()
                        if isinstance(event, LogEvent):
                            self.state.logs.append(event.message)
                    if isinstance(event, CodeEvent):
                        parts.append(event.code)
                    elif isinstance(event, ErrorEvent):
                        raise StageError("builder", event.message)
                    elif isinstance(event, CompleteEvent):
                        break
            finally:
                stream.close()
            return "".join(parts)

        try:
            fix = self.ghost_fixer.run(text, continue_fn, original_prompt=original_prompt, label="client")
        except RunCancelled:
            return None
        except ContinuationError as exc:
            logger.warning("Run %s continuation failed: %s", run_id, exc.message)
            self._fail(run_id, f"Continuation failed: {exc.message}", exc.retryable)
            return None

        with self._lock:
            if not self._is_current(run_id):
                return None
            self._stream = None
            self.state.is_running = False
            self.state.stage = CLIENT_DONE
            code = extract_file_text(fix.text)
            if fix.complete and validate(code, self.app_path).passed:
                self.state.last_generated_code = code
                self.state.logs.append(f"Recovered truncated output after {fix.attempts} continuation(s)")
            else:
                self.state.logs.append("Truncated output could not be fully recovered")
        return fix
