"""Linter agent — asks the model for a PASS/FAIL verdict on one file."""

from agents.base import StageAgent
from core.events import CompleteEvent, StatusEvent
from utils.llm import parse_json

_DEFAULT_VERDICT = {
    "verdict": "PASS",
    "errorType": "None",
    "severity": "info",
    "explanation": "No verdict returned",
    "location": "N/A",
    "fixSuggestion": "N/A",
}


class LinterAgent(StageAgent):
    """Reviews a generated file and returns a structured verdict."""

    name = "linter"
    step = "linter"
    prompt_name = "linter"
    max_tokens_key = "linter_max_tokens"
    required_fields = ("code",)

    def build_message(self, body):
        parts = []
        if body.get("prompt"):
            parts.append(f"User request: {body['prompt']}")
        parts.append(f"File: {body.get('path', '/App.tsx')}")
        parts.append(f"```tsx\n{body['code']}\n```")
        return "\n\n".join(parts)

    def run(self, body):
        self.check_body(body)
        yield StatusEvent(f"Reviewing {body.get('path', 'code')}...", step=self.step)
        text, _ = self.complete_text(body)
        result = parse_json(text)

        verdict = dict(_DEFAULT_VERDICT)
        if isinstance(result, dict):
            verdict.update({k: v for k, v in result.items() if k in _DEFAULT_VERDICT})
        verdict["verdict"] = str(verdict["verdict"]).upper()
        yield CompleteEvent(success=True, verdict=verdict, step=self.step)
