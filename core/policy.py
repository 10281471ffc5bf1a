"""Prompt policy guard and overwrite guardrails."""

import logging
import re
from dataclasses import dataclass, field

from config.defaults import GUARDRAILS
from config.rules import POLICY_RULES, RESTRICTED_PREFIXES
from core.errors import PolicyViolation

logger = logging.getLogger(__name__)

_MICRO_PATTERNS = [
    re.compile(r"^(make|change|update|fix|add|remove|set|swap|replace|move|adjust|tweak)\b", re.IGNORECASE),
    re.compile(r"^(can you|please)\s+(make|change|update|fix|add|remove)\b", re.IGNORECASE),
]
_COMPONENT_RE = re.compile(r"(?:function|const)\s+[A-Z][A-Za-z0-9]*\s*[:=(]")


def keyword_regex(keyword):
    """Whitespace-tolerant, word-bounded regex for a keyword phrase."""
    words = [re.escape(w) for w in keyword.strip().lower().split()]
    return re.compile(r"\b" + r"\s+".join(words) + r"\b", re.IGNORECASE)


_COMPILED_RULES = [
    (rule, [keyword_regex(k) for k in rule["keywords"]]) for rule in POLICY_RULES
]


def find_violation(prompt):
    """Return (rule, keyword) for the first matching rule, or None."""
    text = (prompt or "").lower()
    for rule, patterns in _COMPILED_RULES:
        for keyword, pattern in zip(rule["keywords"], patterns):
            if pattern.search(text):
                return rule, keyword
    return None


def check_prompt(prompt):
    """Raise PolicyViolation if the prompt asks for something the platform owns."""
    match = find_violation(prompt)
    if match is None:
        return
    rule, keyword = match
    logger.info("Prompt blocked by policy rule %s", rule["id"])
    raise PolicyViolation(rule["message"], rule=rule["id"], pattern=keyword)


def normalize_path(path):
    path = (path or "").strip().replace("\\", "/")
    if not path.startswith("/"):
        path = "/" + path
    return re.sub(r"/{2,}", "/", path)


def path_rejection(path):
    """Why a planned path may not be generated, or None when it is fine."""
    if ".." in path.split("/"):
        return "path traversal"
    lowered = path.lower()
    for prefix in RESTRICTED_PREFIXES:
        if lowered.startswith(prefix):
            return f"restricted folder {prefix}"
    return None


# --- Overwrite guardrails ---

@dataclass
class GuardResult:
    passed: bool
    guard: str
    message: str = "OK"
    details: dict = field(default_factory=dict)


@dataclass
class ApplyResult:
    accepted: bool
    code: str
    failed: list = field(default_factory=list)


def is_micro_edit(prompt):
    words = (prompt or "").split()
    if not words:
        return False
    if len(words) > 20:
        return False
    text = " ".join(words).lower()
    return len(words) <= GUARDRAILS["micro_max_words"] or any(p.search(text) for p in _MICRO_PATTERNS)


def length_guard(old, new, config):
    ratio = len(new) / len(old)
    if ratio < config["min_length_ratio"]:
        return GuardResult(
            False, "LENGTH_GUARD",
            f"Output ({len(new)} chars) is only {round(ratio * 100)}% of the original ({len(old)} chars)",
            {"old": len(old), "new": len(new)},
        )
    return GuardResult(True, "LENGTH_GUARD")


def line_count_guard(old, new, config):
    old_lines = len(old.split("\n"))
    new_lines = len(new.split("\n"))
    ratio = new_lines / max(old_lines, 1)
    if old_lines > GUARDRAILS["min_old_lines"] and ratio < config["min_line_ratio"]:
        return GuardResult(
            False, "LINE_COUNT_GUARD",
            f"{old_lines} lines shrank to {new_lines} ({round(ratio * 100)}%)",
            {"old": old_lines, "new": new_lines},
        )
    return GuardResult(True, "LINE_COUNT_GUARD")


def structure_guard(old, new):
    old_components = len(_COMPONENT_RE.findall(old))
    new_components = len(_COMPONENT_RE.findall(new))
    if old_components >= 3 and new_components <= 1:
        return GuardResult(
            False, "STRUCTURE_GUARD",
            f"{old_components} components reduced to {new_components}",
            {"old": old_components, "new": new_components},
        )
    return GuardResult(True, "STRUCTURE_GUARD")


def safe_apply(old, new, prompt=""):
    """Accept `new` unless it looks like a catastrophic overwrite of `old`."""
    if not old or len(old) < GUARDRAILS["activation_chars"]:
        return ApplyResult(True, new)
    if not new:
        return ApplyResult(False, old, [GuardResult(False, "LENGTH_GUARD", "Output is empty")])

    config = GUARDRAILS["micro"] if is_micro_edit(prompt) else GUARDRAILS["normal"]
    results = [
        length_guard(old, new, config),
        line_count_guard(old, new, config),
        structure_guard(old, new),
    ]
    failed = [r for r in results if not r.passed]
    if failed:
        logger.warning("Guardrails rejected overwrite: %s",
                       "; ".join(f"{r.guard}: {r.message}" for r in failed))
        return ApplyResult(False, old, failed)
    return ApplyResult(True, new)
