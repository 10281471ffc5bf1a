"""Planner agent — breaks a request into a file manifest."""

from agents.base import StageAgent
from core.events import CompleteEvent, PlanEvent, StatusEvent
from utils.llm import parse_json


class PlannerAgent(StageAgent):
    """Produces a summary, a complexity tier and a file manifest."""

    name = "planner"
    step = "architect"
    prompt_name = "planner"
    max_tokens_key = "planner_max_tokens"
    required_fields = ("prompt",)

    def build_message(self, body):
        parts = [f"Request: {body['prompt']}"]
        if body.get("styleProfile"):
            parts.append(f"Style profile: {body['styleProfile']}")
        if body.get("currentCode"):
            # Only the size matters for planning an edit, not the full text
            lines = body["currentCode"].count("\n") + 1
            parts.append(f"The user already has a {lines}-line App.tsx; plan an update of it.")
        return "\n".join(parts)

    def run(self, body):
        self.check_body(body)
        yield StatusEvent("Designing the file structure...", step=self.step)
        text, _ = self.complete_text(body)
        result = parse_json(text)

        files = []
        complexity = None
        summary = None
        if isinstance(result, dict):
            raw_files = result.get("files") or result.get("file_manifest") or []
            files = [f for f in raw_files if isinstance(f, (dict, str))]
            if isinstance(result.get("complexity"), str):
                complexity = result["complexity"].lower()
            if isinstance(result.get("summary"), str):
                summary = result["summary"]

        # An empty manifest is passed through; the orchestrator falls back to one file
        yield PlanEvent(files=files, complexity=complexity, summary=summary, step=self.step)
        yield CompleteEvent(success=True, step=self.step)
