"""Claude API client and helpers for pulling files out of stage output."""

import json
import logging
import os
import re
import time

import anthropic

from config.defaults import DEFAULTS
from config.rules import BEGIN_MARKER, COMPLETE_SENTINEL, END_MARKER

logger = logging.getLogger(__name__)

MODEL = DEFAULTS["model"]
MAX_TOKENS = DEFAULTS["max_tokens"]

_FENCED_RE = re.compile(r"```[\w+-]*[ \t]*\n(.*?)```", re.DOTALL)
_LOG_TAG_RE = re.compile(r"\[LOG:\s*(.*?)\]")


def get_client():
    """Return an Anthropic client. Raises if no API key is set."""
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise RuntimeError(
            "ANTHROPIC_API_KEY environment variable is not set. "
            "Get a key at https://console.anthropic.com/ and run:\n"
            "  export ANTHROPIC_API_KEY='your-key-here'"
        )
    return anthropic.Anthropic(api_key=api_key)


class LLMStream:
    """Iterate over a streamed Claude response, one text delta at a time.

    After iteration, `stop_reason` holds the model's stop reason, so callers
    can tell a natural finish from a token-limit cut.
    """

    def __init__(self, system_prompt, user_message, max_tokens=None, model=None, client=None):
        self.system_prompt = system_prompt
        self.user_message = user_message
        self.max_tokens = max_tokens or MAX_TOKENS
        self.model = model or MODEL
        self._client = client
        self.stop_reason = None
        self.text = ""

    @property
    def truncated(self):
        return self.stop_reason == "max_tokens"

    def __iter__(self):
        client = self._client or get_client()
        for attempt in range(2):
            emitted = False
            try:
                with client.messages.stream(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=self.system_prompt,
                    messages=[{"role": "user", "content": self.user_message}],
                ) as stream:
                    for chunk in stream.text_stream:
                        emitted = True
                        self.text += chunk
                        yield chunk
                    self.stop_reason = stream.get_final_message().stop_reason
                return
            except anthropic.APIError:
                # Retrying after partial output would duplicate text downstream
                if attempt == 0 and not emitted:
                    logger.warning("Claude stream failed before any output, retrying")
                    time.sleep(2)
                    continue
                raise


def parse_json(text):
    """Parse JSON from model text, tolerating fences and surrounding prose.

    Returns None when nothing parseable is found.
    """
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```\w*\n?", "", cleaned)
        cleaned = re.sub(r"\n?```$", "", cleaned)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
    return None


def extract_log_tags(text):
    """Split `[LOG: ...]` tags out of raw stage text. Returns (messages, cleaned)."""
    messages = [m.strip() for m in _LOG_TAG_RE.findall(text or "") if m.strip()]
    cleaned = _LOG_TAG_RE.sub("", text or "")
    return messages, cleaned


def extract_file_text(raw):
    """Pull one file's source out of raw stage text.

    Prefers the begin/end marker pair (a missing end marker means the text runs
    to the end), then the first fenced block, then the whole text. The
    completion sentinel and log tags are never part of the result.
    """
    _, text = extract_log_tags(raw or "")
    text = text.replace(COMPLETE_SENTINEL, "")

    begin = text.find(BEGIN_MARKER)
    if begin != -1:
        body = text[begin + len(BEGIN_MARKER):]
        end = body.find(END_MARKER)
        if end != -1:
            body = body[:end]
        return body.strip("\n").rstrip()

    match = _FENCED_RE.search(text)
    if match:
        return match.group(1).rstrip()

    text = text.replace(END_MARKER, "")
    return text.strip()
