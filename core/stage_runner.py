"""Stage runner — invokes one remote generation stage and hands back its stream.

Each stage (planner, builder, linter, healer) is a POST endpoint that answers
with the same `data: <json>` framing as the public API. Nothing here buffers a
whole response; callers pull decoded events as chunks arrive.
"""

import logging

import requests

from config.defaults import DEFAULTS
from core.errors import RateLimited, StageError, TransportError
from core.events import FrameDecoder

logger = logging.getLogger(__name__)

STAGES = ("planner", "builder", "linter", "healer")


def _error_message(response):
    try:
        body = response.json()
    except ValueError:
        return (response.text or "").strip()[:200] or response.reason or "Stage request failed"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)


class StageStream:
    """An open streamed response from one stage."""

    def __init__(self, stage, response):
        self.stage = stage
        self._response = response
        self._closed = False

    def iter_chunks(self):
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                if chunk:
                    yield chunk
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"{self.stage} stream dropped: {exc}") from exc

    def events(self):
        """Decode events incrementally until the end token or the stream ends."""
        decoder = FrameDecoder()
        for chunk in self.iter_chunks():
            yield from decoder.feed(chunk)
            if decoder.closed:
                return
        yield from decoder.finish()

    def close(self):
        if not self._closed:
            self._closed = True
            self._response.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class HttpStreamClient:
    """Thin requests wrapper: bearer auth, JSON body, streamed response."""

    def __init__(self, base_url=None, token="", timeout=None, session=None):
        self.base_url = (base_url or DEFAULTS["stage_base_url"]).rstrip("/")
        self.token = token
        self.timeout = timeout or DEFAULTS["stage_timeout"]
        self.session = session or requests.Session()

    def open(self, path, body, stage=None):
        stage = stage or path
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {"Accept": "text/event-stream"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.session.post(
                url, json=body, headers=headers, stream=True, timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Could not reach {stage} stage: {exc}") from exc

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            message = _error_message(response)
            response.close()
            logger.warning("Stage %s rate limited", stage)
            raise RateLimited(message or "Rate limit exceeded", retry_after=retry_after)
        if response.status_code >= 400:
            message = _error_message(response)
            response.close()
            logger.warning("Stage %s rejected request: %s %s", stage, response.status_code, message)
            raise StageError(stage, message, status=response.status_code)
        return StageStream(stage, response)


class StageRunner:
    """Uniform adapter over the four stages."""

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_settings(cls, settings):
        return cls(HttpStreamClient(
            base_url=settings["stage_base_url"],
            token=settings.get("service_token", ""),
            timeout=settings["stage_timeout"],
        ))

    def invoke(self, stage_name, body):
        if stage_name not in STAGES:
            raise ValueError(f"Unknown stage: {stage_name}")
        return self.client.open(f"stages/{stage_name}", body, stage=stage_name)
