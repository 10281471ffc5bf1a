"""Base class for the four generation stages."""

import os
from abc import ABC, abstractmethod

import anthropic

from config.defaults import DEFAULTS
from core.errors import BadRequest, RateLimited, StageError
from utils.llm import LLMStream

_PROMPT_DIR = os.path.join(os.path.dirname(__file__), "prompts")


def load_prompt(name):
    with open(os.path.join(_PROMPT_DIR, f"{name}.txt")) as f:
        return f.read()


class StageAgent(ABC):
    """A stateless stage: one request body in, a stream of events out."""

    name = "stage"
    step = None
    prompt_name = ""
    max_tokens_key = "max_tokens"
    required_fields = ()

    def __init__(self, settings=None, client=None):
        self.settings = settings or DEFAULTS
        self.client = client

    @abstractmethod
    def build_message(self, body):
        """Turn the request body into the user message for the model."""

    @abstractmethod
    def run(self, body):
        """Yield events for one request."""

    def check_body(self, body):
        for key in self.required_fields:
            if not body.get(key):
                raise BadRequest(f"Missing {key}")

    def system_prompt(self):
        return load_prompt(self.prompt_name)

    def open_stream(self, body):
        return LLMStream(
            self.system_prompt(),
            self.build_message(body),
            max_tokens=self.settings[self.max_tokens_key],
            model=self.settings["model"],
            client=self.client,
        )

    def iterate(self, llm_stream):
        """Iterate model deltas, mapping SDK errors onto pipeline errors."""
        try:
            yield from llm_stream
        except anthropic.RateLimitError as exc:
            raise RateLimited() from exc
        except anthropic.APIError as exc:
            raise StageError(self.name, f"Model request failed: {exc}") from exc

    def complete_text(self, body):
        """Run the model to the end and return (text, stop_reason)."""
        llm_stream = self.open_stream(body)
        text = "".join(self.iterate(llm_stream))
        return text, llm_stream.stop_reason
