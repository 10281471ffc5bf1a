"""Healer agent — fixes code that crashed at runtime."""

import json

from agents.builder import BuilderAgent
from core.errors import BadRequest


class HealerAgent(BuilderAgent):
    """Same streaming contract as the builder, with crash context as input."""

    name = "healer"
    step = "healing"
    prompt_name = "healer"
    required_fields = ("runtimeError", "failedCode")

    def check_body(self, body):
        keys = ("prompt",) if body.get("mode") == "continuation" else self.required_fields
        for key in keys:
            if not body.get(key):
                raise BadRequest(f"Missing {key}")

    def build_message(self, body):
        if body.get("mode") == "continuation":
            return body["prompt"]
        parts = [
            f"## Runtime Error\n{body['runtimeError']}",
            f"## Code That Crashed\n```tsx\n{body['failedCode']}\n```",
        ]
        if body.get("architectPlan"):
            parts.append(f"## Original Plan\n```json\n{json.dumps(body['architectPlan'], indent=2)}\n```")
        if body.get("styleProfile"):
            parts.append(f"## Style Profile\n{body['styleProfile']}")
        parts.append("Return the complete fixed file.")
        return "\n\n".join(parts)

    def status_message(self, body):
        if body.get("mode") == "continuation":
            return "Continuing the fix..."
        return "Fixing the runtime error..."
