"""Pipeline orchestrator — plan, meter, build, validate, bundle, persist.

`Orchestrator.run` is a generator of typed events. The server encodes them onto
the wire; tests consume them directly. Every run ends with exactly one terminal
event (`code` on success, `error` otherwise) followed by `complete`.

Stages run strictly one after another; files are built one at a time in
manifest priority order. Cancellation is cooperative and checked between
chunks and stages.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace

from config.defaults import load_settings
from core import state as S
from core.bundler import build_bundle, summarize_exports
from core.errors import (
    AffordabilityError,
    BadRequest,
    ContinuationError,
    PipelineError,
    PolicyViolation,
    RunCancelled,
    StageError,
    StreamEndedUnexpectedly,
    TransportError,
    TruncationError,
    ValidationFailed,
)
from core.events import (
    CodeEvent,
    CompleteEvent,
    ErrorEvent,
    FileCompleteEvent,
    LogEvent,
    PlanEvent,
    StatusEvent,
)
from core.ghost_fixer import GhostFixer, is_complete
from core.policy import check_prompt, normalize_path, path_rejection, safe_apply
from core.state import (
    FileManifestEntry,
    GeneratedFile,
    PipelineRun,
    ValidationResult,
)
from core.validator import validate
from utils.llm import extract_file_text, extract_log_tags

logger = logging.getLogger(__name__)

STAGE_STEPS = {
    S.PLANNING: "architect",
    S.BUILDING: "builder",
    S.VALIDATING: "linter",
    S.HEALING: "healing",
    S.BUNDLING: "bundler",
}


@dataclass
class StageOutput:
    raw: str = ""
    plan: PlanEvent | None = None
    verdict: dict | None = None
    completed: bool = False


def _drain(gen, sink):
    """Run a sub-generator to completion, collecting its events into sink."""
    while True:
        try:
            sink.append(next(gen))
        except StopIteration as stop:
            return stop.value


class Orchestrator:
    """Runs one generation request through planner, builder and validator.

    Collaborators are injected: a StageRunner for the remote stages, a
    CreditMeter, and a file store exposing upsert(project_id, path, content,
    version). The orchestrator keeps no state between runs.
    """

    def __init__(self, stage_runner, meter, store, settings=None, ghost_fixer=None):
        self.runner = stage_runner
        self.meter = meter
        self.store = store
        self.settings = settings if settings is not None else load_settings()
        self.ghost_fixer = ghost_fixer or GhostFixer(
            max_attempts=self.settings["ghost_fixer_attempts"],
            tail_chars=self.settings["ghost_fixer_tail_chars"],
        )

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def run(self, request, run_id=None, cancel=None):
        """Generate events for one full pipeline run."""
        run = PipelineRun(id=run_id or uuid.uuid4().hex, request=request)
        logger.info("Run %s started for user %s", run.id, request.user_id)
        try:
            yield from self._execute(run, cancel)
        except GeneratorExit:
            # Consumer went away mid-run
            run.cancelled = True
            self._refund_if_empty(run)
            raise
        except PipelineError as exc:
            yield from self._fail(run, exc)
        except Exception as exc:
            logger.exception("Run %s crashed", run.id)
            yield from self._fail(run, PipelineError(f"Internal error: {exc}"))

    def heal(self, runtime_error, failed_code, user_id, project_id=None,
             style_profile=None, plan=None, cancel=None):
        """Direct heal: one Healer call on crash context, no planning, no charge.

        The healed code is persisted only after it passes the validator and the
        overwrite guardrails against failed_code. The client runs the same
        guardrails, so both sides keep the same latest version.
        """
        attempts = 0
        try:
            if not failed_code or not runtime_error:
                raise BadRequest("runtimeError and failedCode are required")
            yield StatusEvent("Analyzing the runtime error...", step="healing")
            body = {
                "runtimeError": runtime_error,
                "failedCode": failed_code,
                "userId": user_id,
            }
            if style_profile:
                body["styleProfile"] = style_profile
            if plan:
                body["architectPlan"] = plan
            if project_id:
                body["projectId"] = project_id

            output = yield from self._stream_stage("healer", body, cancel, "healing")
            attempts = 1
            raw = output.raw
            if not is_complete(raw):
                pending = []
                fix = self.ghost_fixer.run(
                    raw, lambda req: self._continue(req, "healer", cancel, pending),
                    label="heal",
                )
                yield from pending
                attempts += fix.attempts
                raw = fix.text
                if not fix.complete:
                    raise TruncationError(
                        f"Healed code is still incomplete after {fix.attempts} continuation(s)",
                        details={"attempts": fix.attempts},
                    )

            code = extract_file_text(raw)
            result = validate(code, self.settings["app_path"])
            if not result.passed:
                raise ValidationFailed(
                    f"Healed code failed validation: {result.category} - {result.explanation}",
                    details={"category": result.category, "line": result.line},
                )
            guarded = safe_apply(failed_code, code, runtime_error)
            if not guarded.accepted:
                raise ValidationFailed(
                    "Guardrails rejected the healed code: "
                    + "; ".join(f"{r.guard}: {r.message}" for r in guarded.failed),
                    details={"guards": [r.guard for r in guarded.failed]},
                )
            if project_id:
                self._upsert(project_id, self.settings["bundle_path"], code, "heal")
            yield CodeEvent(code=code, summary="Applied runtime fix", step="healing")
            yield CompleteEvent(success=True, attempts=attempts, credits_used=0)
        except PipelineError as exc:
            logger.warning("Heal failed: %s", exc.message)
            yield ErrorEvent.from_exception(exc, step="healing")
            yield CompleteEvent(success=False, attempts=attempts)
        except Exception as exc:
            logger.exception("Heal crashed")
            yield ErrorEvent.from_exception(PipelineError(f"Internal error: {exc}"), step="healing")
            yield CompleteEvent(success=False, attempts=attempts)

    def relay(self, stage, body, cancel=None, step="builder"):
        """Stream one stage call straight through (used for client-driven continuation)."""
        try:
            with self.runner.invoke(stage, body) as stream:
                for event in stream.events():
                    self._checkpoint(None, cancel)
                    yield replace(event, step=event.step or step)
                    if isinstance(event, CompleteEvent):
                        return
            yield CompleteEvent(success=True)
        except PipelineError as exc:
            yield ErrorEvent.from_exception(exc, step=step)
            yield CompleteEvent(success=False)

    # ------------------------------------------------------------------
    # Run state machine
    # ------------------------------------------------------------------

    def _execute(self, run, cancel):
        request = run.request
        if not request.prompt:
            raise BadRequest("Prompt is required")
        if not request.user_id:
            raise BadRequest("userId is required")
        check_prompt(request.prompt)

        # Planning
        run.stage = S.PLANNING
        yield StatusEvent("Planning your project...", step="architect")
        self._checkpoint(run, cancel)
        yield from self._plan(run, cancel)
        yield PlanEvent(
            files=[entry.to_dict() for entry in run.manifest],
            complexity=run.complexity,
            summary=run.plan.get("summary"),
            step="architect",
        )

        # Cost and debit happen before any billable work
        cost = self.meter.cost(len(run.manifest), run.complexity)
        run.credits_reserved = cost
        self._checkpoint(run, cancel)
        if not self.meter.can_afford(request.user_id, cost):
            raise AffordabilityError(cost, self.meter.balance(request.user_id))
        debit = self.meter.debit(request.user_id, cost, run.id)
        if not debit.ok:
            raise AffordabilityError(cost, debit.balance)
        run.debited = debit.status == "ok"
        charged = cost if run.debited else 0

        # Building
        for entry in sorted(run.manifest, key=lambda e: e.priority):
            self._checkpoint(run, cancel)
            run.stage = S.BUILDING
            generated = yield from self._build_file(run, entry, cancel)
            if generated is None:
                continue
            run.put_file(generated)
            yield FileCompleteEvent(
                path=generated.path,
                line_count=generated.line_count,
                passed=generated.validation.passed,
                category=generated.validation.category or None,
                step="builder",
            )

        if not run.files:
            if run.policy_violations:
                violation = run.policy_violations[0]
                raise PolicyViolation(
                    violation["message"], rule=violation["category"],
                    pattern=violation["pattern"], path=violation["path"],
                )
            raise ValidationFailed("No file passed validation", retryable=True)

        # Bundling
        self._checkpoint(run, cancel)
        run.stage = S.BUNDLING
        yield StatusEvent("Bundling preview...", step="bundler")
        bundle = build_bundle([(f.path, f.content) for f in run.files], self.settings["app_path"])

        self._persist(run, bundle)
        run.stage = S.DONE
        logger.info("Run %s done: %d file(s), %d credit(s)", run.id, len(run.files), charged)
        yield CodeEvent(
            code=bundle,
            summary=run.plan.get("summary") or f"Generated {len(run.files)} file(s)",
            files=[
                {"path": f.path, "lineCount": f.line_count, "passed": f.validation.passed}
                for f in run.files
            ],
            step="bundler",
        )
        yield CompleteEvent(
            success=True,
            file_count=len(run.files),
            credits_used=charged,
            attempts=run.attempts,
        )

    def _fail(self, run, exc):
        step = STAGE_STEPS.get(run.stage)
        run.stage = S.FAILED
        if isinstance(exc, RunCancelled):
            run.cancelled = True
        if isinstance(exc, (AffordabilityError, PolicyViolation, BadRequest)):
            logger.info("Run %s rejected: %s", run.id, exc.message)
        else:
            logger.warning("Run %s failed (%s): %s", run.id, exc.error_type, exc.message)
        self._refund_if_empty(run)
        yield ErrorEvent.from_exception(exc, step=step)
        yield CompleteEvent(
            success=False,
            file_count=len(run.files),
            credits_used=run.credits_reserved if run.debited and run.files else 0,
            attempts=run.attempts,
        )

    def _refund_if_empty(self, run):
        if run.debited and not run.files:
            self.meter.refund(run.request.user_id, run.id)
            run.debited = False

    def _checkpoint(self, run, cancel):
        if cancel is not None and cancel.is_set():
            if run is not None:
                run.cancelled = True
            raise RunCancelled()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _fallback_entry(self, request):
        return FileManifestEntry(
            path=self.settings["app_path"],
            description=request.prompt,
            line_budget=self.settings["default_line_budget"],
            priority=1,
        )

    def _plan(self, run, cancel):
        request = run.request
        default_tier = self.meter.pricing["default_tier"]
        if request.skip_planning:
            run.manifest = [self._fallback_entry(request)]
            run.complexity = default_tier
            yield LogEvent("Skipping planner, building a single file", step="architect")
            return

        body = {"prompt": request.prompt}
        if request.style_profile:
            body["styleProfile"] = request.style_profile
        if request.existing_code:
            body["currentCode"] = request.existing_code
        output = yield from self._stream_stage("planner", body, cancel, "architect")

        plan = output.plan
        run.manifest = self.sanitize_manifest(plan.files if plan else [])
        if not run.manifest:
            logger.info("Run %s: planner returned no files, using single-file manifest", run.id)
            yield LogEvent("Planner returned no files; building everything in one file", step="architect")
            run.manifest = [self._fallback_entry(request)]
        run.complexity = (plan.complexity if plan and plan.complexity else default_tier).lower()
        run.plan = {"summary": plan.summary if plan else None, "files": [e.to_dict() for e in run.manifest]}

    def sanitize_manifest(self, files):
        """Normalise planner output into unique, allowed manifest entries."""
        manifest = []
        seen = set()
        for index, item in enumerate(files):
            if isinstance(item, str):
                item = {"path": item}
            if not isinstance(item, dict) or not item.get("path"):
                continue
            path = normalize_path(str(item["path"]))
            reason = path_rejection(path)
            if reason:
                logger.warning("Dropping planned path %s: %s", path, reason)
                continue
            if path in seen:
                continue
            seen.add(path)
            manifest.append(FileManifestEntry(
                path=path,
                description=str(item.get("description") or ""),
                line_budget=_as_int(item.get("lineEstimate"), self.settings["default_line_budget"]),
                priority=_as_int(item.get("priority"), index + 1),
            ))
        return manifest

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def _builder_body(self, run, entry, healing):
        request = run.request
        body = {
            "prompt": request.prompt,
            "plan": {"files": [e.to_dict() for e in run.manifest], "complexity": run.complexity},
            "targetFile": {
                "path": entry.path,
                "description": entry.description,
                "lineEstimate": entry.line_budget,
            },
        }
        others = summarize_exports([(f.path, f.content) for f in run.files if f.path != entry.path])
        if others:
            body["otherFiles"] = others
        if request.style_profile:
            body["styleProfile"] = request.style_profile
        if request.existing_code and entry.path == self.settings["app_path"]:
            body["currentCode"] = request.existing_code
        if healing:
            body["healingContext"] = healing
        return body

    def _build_file(self, run, entry, cancel):
        """Build one manifest entry. Returns a GeneratedFile, or None if rejected."""
        path = entry.path
        healing = None
        last = None
        max_attempts = max(1, int(self.settings["max_build_attempts"]))

        for attempt in range(1, max_attempts + 1):
            self._checkpoint(run, cancel)
            run.attempts += 1
            if healing is None:
                run.stage = S.BUILDING
                step = "builder"
                yield StatusEvent(f"Building {path}...", step=step)
            else:
                run.stage = S.HEALING
                step = "healing"
                yield StatusEvent(f"Fixing {path} (attempt {attempt}/{max_attempts})...", step=step)

            output = yield from self._stream_stage("builder", self._builder_body(run, entry, healing), cancel, step)
            raw = output.raw

            if not is_complete(raw):
                yield LogEvent(f"{path} was cut off, requesting a continuation", step=step)
                pending = []
                try:
                    fix = self.ghost_fixer.run(
                        raw,
                        lambda req: self._continue(req, "builder", cancel, pending),
                        original_prompt=run.request.prompt,
                        label=path,
                    )
                except ContinuationError as exc:
                    yield from pending
                    logger.warning("Continuation for %s failed: %s", path, exc.message)
                    yield LogEvent(f"Continuation for {path} failed: {exc.message}", step=step)
                    content = extract_file_text(raw)
                    result = ValidationResult(
                        passed=False,
                        category="ContinuationFailed",
                        explanation=exc.message,
                        fix_suggestion="Regenerate the complete file within the line budget",
                    )
                    last = (content, result)
                    healing = result.to_healing_context(content)
                    continue
                yield from pending
                raw = fix.text
                if not fix.complete:
                    yield LogEvent(f"{path} still incomplete after {fix.attempts} continuation(s)", step=step)

            content = extract_file_text(raw)
            run.stage = S.VALIDATING
            yield StatusEvent(f"Validating {path}...", step="linter")
            result = validate(content, path)
            if result.passed and self.settings["remote_lint"]:
                result = yield from self._remote_lint(run, entry, content, cancel)

            if result.passed:
                return GeneratedFile(path=path, content=content, validation=result)

            logger.warning("Validation failed for %s: %s (%s)", path, result.category, result.explanation)
            location = f" at line {result.line}" if result.line else ""
            yield LogEvent(f"{path} failed {result.category}{location}: {result.explanation}", step="linter")

            if result.is_policy:
                run.policy_violations.append({
                    "path": path,
                    "category": result.category,
                    "message": result.explanation,
                    "pattern": result.pattern,
                })
                yield LogEvent(f"{path} rejected by policy: {result.pattern}", step="linter")
                return None

            last = (content, result)
            healing = result.to_healing_context(content)

        content, result = last
        if self.settings["soft_admit"] and len(content.strip()) >= self.settings["soft_admit_min_chars"]:
            logger.warning("Soft-admitting %s despite %s", path, result.category)
            yield LogEvent(f"Keeping {path} despite {result.category} after {max_attempts} attempts", step="linter")
            return GeneratedFile(path=path, content=content, validation=result)
        yield LogEvent(f"Dropping {path} after {max_attempts} attempts", step="linter")
        return None

    def _continue(self, request, stage, cancel, sink):
        """Ghost-fixer continuation callback: one stage call, returns raw text."""
        return _drain(self._stream_stage(stage, request.to_body(), cancel, "builder"), sink).raw

    def _remote_lint(self, run, entry, content, cancel):
        body = {"code": content, "path": entry.path, "prompt": run.request.prompt}
        try:
            output = yield from self._stream_stage("linter", body, cancel, "linter")
        except (TransportError, StageError) as exc:
            logger.warning("Linter unavailable for %s: %s", entry.path, exc.message)
            return ValidationResult(passed=True)

        verdict = output.verdict or {}
        if str(verdict.get("verdict", "PASS")).upper() != "FAIL":
            return ValidationResult(passed=True)
        category = verdict.get("errorType") or "LinterFail"
        return ValidationResult(
            passed=False,
            category=category,
            explanation=verdict.get("explanation") or "Linter rejected the file",
            pattern=str(verdict.get("location") or ""),
            fix_suggestion=verdict.get("fixSuggestion") or "",
            severity="policy" if category == "Policy" else "error",
        )

    # ------------------------------------------------------------------
    # Stage streaming and persistence
    # ------------------------------------------------------------------

    def _stream_stage(self, stage, body, cancel, step):
        """Sub-generator: forwards status/log events, returns a StageOutput."""
        output = StageOutput()
        parts = []
        final = None
        with self.runner.invoke(stage, body) as stream:
            for event in stream.events():
                self._checkpoint(None, cancel)
                if isinstance(event, CodeEvent):
                    if event.partial:
                        parts.append(event.code)
                    else:
                        final = event.code
                elif isinstance(event, (StatusEvent, LogEvent)):
                    yield replace(event, step=step)
                elif isinstance(event, PlanEvent):
                    output.plan = event
                elif isinstance(event, ErrorEvent):
                    raise StageError(stage, event.message)
                elif isinstance(event, CompleteEvent):
                    output.verdict = event.verdict
                    output.completed = True
                    break
        if not output.completed:
            raise StreamEndedUnexpectedly(f"The {stage} stage ended without completing. Please retry.")
        output.raw = final if final is not None else "".join(parts)
        messages, _ = extract_log_tags(output.raw)
        for message in messages:
            yield LogEvent(message, step=step)
        return output

    def _upsert(self, project_id, path, content, version):
        self.store.upsert(project_id, path, content, version)

    def _persist(self, run, bundle):
        project_id = run.request.project_id or run.request.user_id
        for generated in run.files:
            self._upsert(project_id, generated.path, generated.content, run.id)
        self._upsert(project_id, self.settings["bundle_path"], bundle, run.id)


def _as_int(value, default):
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default
