"""Transport codec for the `data: <json>` event stream.

Every stage boundary speaks the same framing:

    data: {"type": "status", "step": "architect", "data": {"message": "..."}}\n\n

A `data: [DONE]` frame closes the stream without producing an event, and lines
starting with `:` are keep-alive comments. Decoding only ever looks at complete
lines; a trailing partial line stays in the buffer until the next chunk.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from typing import ClassVar

from core.errors import MalformedFrame

END_TOKEN = "[DONE]"
HEARTBEAT = b": keep-alive\n\n"
END_FRAME = b"data: [DONE]\n\n"

STEPS = ("architect", "builder", "linter", "healing", "bundler")


class EventDecodeError(MalformedFrame):
    """A frame parsed as JSON but is not a recognised event."""


def _require(data, key, kind, event_type):
    if key not in data:
        raise EventDecodeError(f"{event_type} event missing '{key}'")
    value = data[key]
    if not isinstance(value, kind):
        raise EventDecodeError(f"{event_type} event field '{key}' has type {type(value).__name__}")
    return value


def _optional(data, key, kind, event_type, default=None):
    value = data.get(key, default)
    if value is None or value is default:
        return value
    if not isinstance(value, kind):
        raise EventDecodeError(f"{event_type} event field '{key}' has type {type(value).__name__}")
    return value


@dataclass(frozen=True)
class StatusEvent:
    type: ClassVar[str] = "status"
    message: str
    step: str | None = None

    def payload(self):
        return {"message": self.message}

    @classmethod
    def from_payload(cls, data, step):
        if isinstance(data, str):
            return cls(message=data, step=step)
        return cls(message=_require(data, "message", str, cls.type), step=step)


@dataclass(frozen=True)
class LogEvent:
    type: ClassVar[str] = "log"
    message: str
    step: str | None = None

    def payload(self):
        return self.message

    @classmethod
    def from_payload(cls, data, step):
        if isinstance(data, str):
            return cls(message=data, step=step)
        return cls(message=_require(data, "message", str, cls.type), step=step)


@dataclass(frozen=True)
class PlanEvent:
    type: ClassVar[str] = "plan"
    files: list = field(default_factory=list)
    complexity: str | None = None
    summary: str | None = None
    step: str | None = None

    def payload(self):
        data = {"files": list(self.files)}
        if self.complexity is not None:
            data["complexity"] = self.complexity
        if self.summary is not None:
            data["summary"] = self.summary
        return data

    @classmethod
    def from_payload(cls, data, step):
        return cls(
            files=_require(data, "files", list, cls.type),
            complexity=_optional(data, "complexity", str, cls.type),
            summary=_optional(data, "summary", str, cls.type),
            step=step,
        )


@dataclass(frozen=True)
class CodeEvent:
    type: ClassVar[str] = "code"
    code: str
    summary: str | None = None
    partial: bool = False
    files: list | None = None
    step: str | None = None

    def payload(self):
        data = {"code": self.code}
        if self.summary is not None:
            data["summary"] = self.summary
        if self.partial:
            data["partial"] = True
        if self.files is not None:
            data["files"] = list(self.files)
        return data

    @classmethod
    def from_payload(cls, data, step):
        return cls(
            code=_require(data, "code", str, cls.type),
            summary=_optional(data, "summary", str, cls.type),
            partial=bool(_optional(data, "partial", bool, cls.type, False)),
            files=_optional(data, "files", list, cls.type),
            step=step,
        )


@dataclass(frozen=True)
class FileCompleteEvent:
    type: ClassVar[str] = "file_complete"
    path: str
    line_count: int
    passed: bool = True
    category: str | None = None
    step: str | None = None

    def payload(self):
        data = {"path": self.path, "lineCount": self.line_count, "passed": self.passed}
        if self.category:
            data["category"] = self.category
        return data

    @classmethod
    def from_payload(cls, data, step):
        return cls(
            path=_require(data, "path", str, cls.type),
            line_count=_require(data, "lineCount", int, cls.type),
            passed=bool(_optional(data, "passed", bool, cls.type, True)),
            category=_optional(data, "category", str, cls.type),
            step=step,
        )


@dataclass(frozen=True)
class ErrorEvent:
    type: ClassVar[str] = "error"
    message: str
    error_type: str | None = None
    retryable: bool = False
    details: dict | None = None
    step: str | None = None

    def payload(self):
        data = {"message": self.message}
        if self.error_type:
            data["errorType"] = self.error_type
        data["retryable"] = self.retryable
        if self.details:
            data["details"] = dict(self.details)
        return data

    @classmethod
    def from_payload(cls, data, step):
        return cls(
            message=_require(data, "message", str, cls.type),
            error_type=_optional(data, "errorType", str, cls.type),
            retryable=bool(_optional(data, "retryable", bool, cls.type, False)),
            details=_optional(data, "details", dict, cls.type),
            step=step,
        )

    @classmethod
    def from_exception(cls, exc, step=None):
        payload = exc.to_payload()
        return cls(
            message=payload["message"],
            error_type=payload["errorType"],
            retryable=payload["retryable"],
            details=payload.get("details"),
            step=step,
        )


@dataclass(frozen=True)
class CompleteEvent:
    type: ClassVar[str] = "complete"
    success: bool
    file_count: int | None = None
    credits_used: int | None = None
    attempts: int | None = None
    verdict: dict | None = None
    step: str | None = None

    def payload(self):
        data = {"success": self.success}
        if self.file_count is not None:
            data["fileCount"] = self.file_count
        if self.credits_used is not None:
            data["creditsUsed"] = self.credits_used
        if self.attempts is not None:
            data["attempts"] = self.attempts
        if self.verdict is not None:
            data["verdict"] = dict(self.verdict)
        return data

    @classmethod
    def from_payload(cls, data, step):
        return cls(
            success=_require(data, "success", bool, cls.type),
            file_count=_optional(data, "fileCount", int, cls.type),
            credits_used=_optional(data, "creditsUsed", int, cls.type),
            attempts=_optional(data, "attempts", int, cls.type),
            verdict=_optional(data, "verdict", dict, cls.type),
            step=step,
        )


EVENT_TYPES = {
    cls.type: cls
    for cls in (StatusEvent, LogEvent, PlanEvent, CodeEvent,
                FileCompleteEvent, ErrorEvent, CompleteEvent)
}

def is_terminal(event):
    """True for the final `code` or `error` of a run. Partial code deltas don't count."""
    if isinstance(event, CodeEvent):
        return not event.partial
    return isinstance(event, ErrorEvent)


def to_envelope(event):
    envelope = {"type": event.type}
    if event.step is not None:
        envelope["step"] = event.step
    envelope["data"] = event.payload()
    return envelope


def from_envelope(envelope):
    """Turn a parsed envelope dict into a typed event, failing on unknown shapes."""
    if not isinstance(envelope, dict):
        raise EventDecodeError("Event envelope is not an object")
    event_type = envelope.get("type")
    cls = EVENT_TYPES.get(event_type)
    if cls is None:
        raise EventDecodeError(f"Unknown event type: {event_type!r}")
    step = envelope.get("step")
    if step is not None and not isinstance(step, str):
        raise EventDecodeError("Event step must be a string")
    data = envelope.get("data")
    if data is None:
        raise EventDecodeError(f"{event_type} event has no data")
    if cls is not LogEvent and cls is not StatusEvent and not isinstance(data, dict):
        raise EventDecodeError(f"{event_type} event data must be an object")
    return cls.from_payload(data, step)


def encode(event):
    """Frame one event as `data: <json>\\n\\n` bytes."""
    body = json.dumps(to_envelope(event), separators=(",", ":"))
    return f"data: {body}\n\n".encode("utf-8")


def decode(text, buffer=""):
    """Parse every complete line of buffer + text.

    Returns (events, leftover, closed). `leftover` holds the trailing partial
    line, or a data line whose JSON is not complete yet; `closed` is True once
    the end token has been seen, after which nothing else is parsed.
    """
    buffer += text
    events = []
    while True:
        newline = buffer.find("\n")
        if newline == -1:
            return events, buffer, False
        line = buffer[:newline]
        rest = buffer[newline + 1:]
        if line.endswith("\r"):
            line = line[:-1]

        if not line or line.startswith(":") or not line.startswith("data:"):
            buffer = rest
            continue

        payload = line[5:].strip()
        if not payload:
            buffer = rest
            continue
        if payload == END_TOKEN:
            return events, rest, True

        try:
            envelope = json.loads(payload)
        except json.JSONDecodeError:
            # Once the following line is whole, more bytes can't complete this one
            if "\n" in rest:
                raise MalformedFrame("Unparsable event frame", line=line) from None
            return events, buffer, False

        events.append(from_envelope(envelope))
        buffer = rest


class FrameDecoder:
    """Incremental decoder over raw byte chunks.

    Multi-byte UTF-8 sequences split across chunks are held back by the
    incremental codec, so `feed` can be called with arbitrary slices.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self.buffer = ""
        self.closed = False

    def feed(self, chunk):
        if self.closed:
            return []
        if isinstance(chunk, bytes):
            text = self._utf8.decode(chunk)
        else:
            text = chunk
        events, self.buffer, self.closed = decode(text, self.buffer)
        return events

    def finish(self):
        """Flush at end of stream. A dangling complete frame is still parsed."""
        if self.closed:
            return []
        tail = self._utf8.decode(b"", final=True)
        events, self.buffer, self.closed = decode(tail + "\n", self.buffer)
        return events
