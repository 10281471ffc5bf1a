"""Ghost Fixer — truncation detection and continuation for generated files.

A stage appends COMPLETE_SENTINEL as its very last output when the model
finished on its own. If the sentinel is missing the text was cut off, so we
classify where it stopped, ask the same stage to continue from a short tail,
and stitch the continuation on. Merging is plain concatenation; whatever comes
out must go back through the static validator.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from config.defaults import DEFAULTS
from config.rules import BEGIN_MARKER, COMPLETE_SENTINEL, END_MARKER
from core.errors import ContinuationError, RunCancelled

logger = logging.getLogger(__name__)

TEMPLATE_WINDOW = 300

_FENCE_RE = re.compile(r"```[\w+-]*[ \t]*\n?")
_STRAY_MARKER_RE = re.compile(r"///\s*(?:TYPE:\s*\w+|BEGIN_CODE)\s*///[ \t]*\n?")
_OPEN_TAG_RE = re.compile(r"<[A-Za-z][\w.:-]*(?:\s[^<>]*)?$")
_WORD = re.compile(r"[\w$]")


class Classification(Enum):
    OPEN_DOUBLE_QUOTE = "OpenDoubleQuote"
    OPEN_SINGLE_QUOTE = "OpenSingleQuote"
    OPEN_TEMPLATE_LITERAL = "OpenTemplateLiteral"
    OPEN_TAG = "OpenTag"
    UNBALANCED_BRACES = "UnbalancedBraces"
    UNBALANCED_PARENS = "UnbalancedParens"
    GENERAL = "General"


class FixState(Enum):
    GENERATING = "generating"
    COMPLETE = "complete"
    TRUNCATED = "truncated"
    CONTINUING = "continuing"
    MERGING = "merging"
    GAVE_UP = "gave_up"


REPAIR_INSTRUCTIONS = {
    Classification.OPEN_DOUBLE_QUOTE:
        "Your output stopped inside a double-quoted string. Start by finishing that "
        "string value and its closing \" before writing anything else.",
    Classification.OPEN_SINGLE_QUOTE:
        "Your output stopped inside a single-quoted string. Start by finishing that "
        "string value and its closing ' before writing anything else.",
    Classification.OPEN_TEMPLATE_LITERAL:
        "Your output stopped inside a template literal. Finish the template text, close "
        "any open ${...} expression, then close it with a backtick.",
    Classification.OPEN_TAG:
        "Your output stopped in the middle of a JSX opening tag. Finish its attributes "
        "and close the tag with > or />.",
    Classification.UNBALANCED_BRACES:
        "Your output stopped with unclosed { blocks. Continue the code and close every "
        "open block, object and JSX expression.",
    Classification.UNBALANCED_PARENS:
        "Your output stopped with unclosed ( groups. Continue the expression or call and "
        "close every open parenthesis.",
    Classification.GENERAL:
        "Your output was cut off. Continue exactly from the last character.",
}


def is_complete(text):
    """The sentinel is authoritative; nothing else is consulted."""
    return COMPLETE_SENTINEL in (text or "")


def _unescaped_positions(line, quote):
    positions = []
    escaped = False
    for i, ch in enumerate(line):
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch != quote:
            continue
        if quote == "'" and 0 < i < len(line) - 1 and _WORD.match(line[i - 1]) and _WORD.match(line[i + 1]):
            continue  # apostrophe in prose
        positions.append(i)
    return positions


def classify(text):
    """Decide where the text was cut off. Always returns a Classification."""
    text = text or ""
    stripped = text.rstrip()
    last_line = stripped.rsplit("\n", 1)[-1]

    doubles = _unescaped_positions(last_line, '"')
    singles = _unescaped_positions(last_line, "'")
    odd_double = len(doubles) % 2 == 1
    odd_single = len(singles) % 2 == 1
    if odd_double and odd_single:
        if doubles[-1] > singles[-1]:
            return Classification.OPEN_DOUBLE_QUOTE
        return Classification.OPEN_SINGLE_QUOTE
    if odd_double:
        return Classification.OPEN_DOUBLE_QUOTE
    if odd_single:
        return Classification.OPEN_SINGLE_QUOTE

    window = stripped[-TEMPLATE_WINDOW:]
    if len(_unescaped_positions(window, "`")) % 2 == 1:
        return Classification.OPEN_TEMPLATE_LITERAL

    if _OPEN_TAG_RE.search(last_line):
        return Classification.OPEN_TAG

    if text.count("{") > text.count("}"):
        return Classification.UNBALANCED_BRACES
    if text.count("(") > text.count(")"):
        return Classification.UNBALANCED_PARENS
    return Classification.GENERAL


@dataclass
class ContinuationRequest:
    classification: Classification
    tail: str
    prompt: str
    original_prompt: str | None = None

    def to_body(self):
        body = {
            "prompt": self.prompt,
            "mode": "continuation",
            "classification": self.classification.value,
            "contextTail": self.tail,
        }
        if self.original_prompt:
            body["originalPrompt"] = self.original_prompt
        return body


def build_continuation(text, classification=None, original_prompt=None, tail_chars=None):
    """Compose a follow-up request that carries only a bounded tail of `text`."""
    if classification is None:
        classification = classify(text)
    if tail_chars is None:
        tail_chars = DEFAULTS["ghost_fixer_tail_chars"]
    tail = (text or "")[-tail_chars:]

    parts = [
        "[CONTINUATION_MODE]",
        "You previously generated code but it was cut off. Continue EXACTLY from where you left off.",
        "",
        f"LAST {len(tail)} CHARACTERS OF YOUR PREVIOUS OUTPUT:",
        "```",
        tail,
        "```",
        "",
        REPAIR_INSTRUCTIONS[classification],
        "",
        "RULES:",
        "1. Do not repeat any code that is already written.",
        f"2. Do not emit {BEGIN_MARKER} or markdown fences.",
        f"3. Close the file with {END_MARKER} and then output {COMPLETE_SENTINEL} as the last line.",
    ]
    if original_prompt:
        parts += ["", f"Original request was: {original_prompt}"]
    return ContinuationRequest(
        classification=classification,
        tail=tail,
        prompt="\n".join(parts),
        original_prompt=original_prompt,
    )


def merge(original, continuation):
    """Concatenate after dropping fences and stray begin/type markers."""
    clean = _STRAY_MARKER_RE.sub("", continuation or "")
    clean = _FENCE_RE.sub("", clean)
    return (original or "") + clean.rstrip()


@dataclass
class FixResult:
    text: str
    complete: bool
    attempts: int
    state: FixState
    classifications: list = field(default_factory=list)


class GhostFixer:
    """Bounded continuation loop for one artifact.

    Holds configuration only; the state of a run is local to run() and ends
    up in its FixResult, so one fixer can serve concurrent runs.
    """

    def __init__(self, max_attempts=None, tail_chars=None):
        self.max_attempts = DEFAULTS["ghost_fixer_attempts"] if max_attempts is None else max_attempts
        self.tail_chars = DEFAULTS["ghost_fixer_tail_chars"] if tail_chars is None else tail_chars

    def run(self, text, continue_fn, original_prompt=None, label=""):
        """Drive text to completion.

        continue_fn(ContinuationRequest) -> str returns the raw continuation.
        A failure inside it raises ContinuationError; running out of attempts
        returns the best-effort text with complete=False.
        """
        if is_complete(text):
            return FixResult(text=text, complete=True, attempts=0, state=FixState.COMPLETE)

        attempts = 0
        classifications = []
        state = FixState.TRUNCATED
        while attempts < self.max_attempts:
            classification = classify(text)
            classifications.append(classification)
            request = build_continuation(
                text, classification,
                original_prompt=original_prompt,
                tail_chars=self.tail_chars,
            )
            attempts += 1
            state = FixState.CONTINUING
            logger.info("Ghost fixer %s attempt %d/%d (%s)",
                        label, attempts, self.max_attempts, classification.value)
            try:
                continuation = continue_fn(request)
            except RunCancelled:
                raise
            except Exception as exc:
                raise ContinuationError(f"Continuation attempt {attempts} failed: {exc}", attempts) from exc

            state = FixState.MERGING
            text = merge(text, continuation)
            if is_complete(text):
                state = FixState.COMPLETE
                return FixResult(text=text, complete=True, attempts=attempts,
                                 state=state, classifications=classifications)
            state = FixState.TRUNCATED
            logger.debug("Ghost fixer %s still %s after attempt %d", label, state.value, attempts)

        logger.warning("Ghost fixer %s gave up after %d attempts", label, attempts)
        return FixResult(text=text, complete=False, attempts=attempts,
                         state=FixState.GAVE_UP, classifications=classifications)
