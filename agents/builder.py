"""Builder agent — writes one file of the manifest, streamed."""

import json

from agents.base import StageAgent
from config.rules import COMPLETE_SENTINEL
from core.events import CodeEvent, CompleteEvent, StatusEvent

FAILED_CODE_PREVIEW = 1500


class BuilderAgent(StageAgent):
    """Streams raw model text as partial code events.

    The completion sentinel is appended only when the model stopped on its
    own, so its absence downstream always means the output was cut.
    """

    name = "builder"
    step = "builder"
    prompt_name = "builder"
    required_fields = ("prompt",)

    def build_message(self, body):
        if body.get("mode") == "continuation":
            return body["prompt"]

        parts = [f"## User Request\n{body['prompt']}"]
        target = body.get("targetFile")
        if target:
            parts.append(
                f"## File To Write\nPath: {target.get('path')}\n"
                f"Purpose: {target.get('description', '')}\n"
                f"Aim for about {target.get('lineEstimate', 150)} lines."
            )
        if body.get("plan"):
            parts.append(f"## Project Plan\n```json\n{json.dumps(body['plan'], indent=2)}\n```")
        if body.get("otherFiles"):
            lines = []
            for summary in body["otherFiles"]:
                exported = ", ".join(summary.get("exports") or []) or "none"
                lines.append(f"- {summary['path']}: default {summary.get('default') or 'none'}; named {exported}")
            parts.append("## Already Written Files (exports only)\n" + "\n".join(lines))
        if body.get("styleProfile"):
            parts.append(f"## Style Profile\n{body['styleProfile']}")
        if body.get("currentCode"):
            parts.append(f"## Current Code\n```tsx\n{body['currentCode']}\n```")
        healing = body.get("healingContext")
        if healing:
            parts.append(
                "## Previous Attempt Failed Validation\n"
                f"Error type: {healing.get('errorType')}\n"
                f"Error: {healing.get('errorMessage')} ({healing.get('location', 'unknown')})\n"
                f"Fix: {healing.get('fixSuggestion', '')}\n"
                f"Failed code (start):\n```tsx\n{(healing.get('failedCode') or '')[:FAILED_CODE_PREVIEW]}\n```\n"
                "Fix this error and keep everything else."
            )
        parts.append("Write the complete file now.")
        return "\n\n".join(parts)

    def status_message(self, body):
        if body.get("mode") == "continuation":
            return "Continuing where the output was cut off..."
        target = body.get("targetFile") or {}
        return f"Writing {target.get('path', 'code')}..."

    def run(self, body):
        self.check_body(body)
        yield StatusEvent(self.status_message(body), step=self.step)
        llm_stream = self.open_stream(body)
        for delta in self.iterate(llm_stream):
            yield CodeEvent(code=delta, partial=True, step=self.step)
        if not llm_stream.truncated:
            yield CodeEvent(code=f"\n{COMPLETE_SENTINEL}\n", partial=True, step=self.step)
        yield CompleteEvent(success=True, step=self.step)
