"""Bookmark classification over an Ollama-compatible chat API.

The model is asked for a small JSON object ``{"tags": [...], "summary": "..."}``.
Models do not always comply, so parsing is lenient: the first ``{...}`` block
is tried as JSON, then a regex pulls a ``tags: [...]`` list out of free text,
and anything else yields the ``uncategorized`` sentinel.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

import httpx

from app.models.bookmark import UNCATEGORIZED

logger = logging.getLogger(__name__)

MAX_TAGS = 5

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)
_TAGS_LIST_RE = re.compile(r"tags.*?\[(.*?)\]", re.DOTALL | re.IGNORECASE)

SYSTEM_PROMPT = (
    "You categorize bookmarks saved by a job seeker. "
    "Reply with JSON only, shaped as "
    '{"tags": ["tag1", "tag2"], "summary": "one sentence"}. '
    f"Use at most {MAX_TAGS} short lowercase tags such as "
    '"interview-prep", "salary", "resume", "networking", "company-research".'
)


class ClassificationError(Exception):
    """Raised when the classification service cannot produce an answer."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    tags: list[str] = field(default_factory=list)
    summary: str | None = None

    @property
    def is_uncategorized(self) -> bool:
        return not self.tags or UNCATEGORIZED in self.tags


def normalize_tags(raw: object) -> list[str]:
    """Lowercase, strip, drop blanks and duplicates, keep the first MAX_TAGS."""
    if not isinstance(raw, list):
        return []
    tags: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        tag = item.strip().strip("\"'").strip().lower()
        if tag and tag not in tags:
            tags.append(tag)
        if len(tags) >= MAX_TAGS:
            break
    return tags


def parse_classification(text: str) -> ClassificationResult:
    """Extract tags and summary from a model reply."""
    match = _JSON_BLOCK_RE.search(text)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            tags = normalize_tags(data.get("tags"))
            summary = data.get("summary")
            if not isinstance(summary, str) or not summary.strip():
                summary = None
            if tags:
                return ClassificationResult(tags=tags, summary=summary)

    match = _TAGS_LIST_RE.search(text)
    if match:
        items = [part.strip() for part in match.group(1).split(",")]
        tags = normalize_tags(items)
        if tags:
            return ClassificationResult(tags=tags)

    logger.warning("Could not parse tags from classifier reply (%d chars)", len(text))
    return ClassificationResult(tags=[UNCATEGORIZED])


class ClassificationService:
    """Thin async client for the classification model."""

    __slots__ = ("base_url", "model", "_timeout")

    def __init__(self, base_url: str, model: str = "llama3.2", timeout: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = timeout

    async def health_check(self) -> bool:
        """True if the service answers its model listing endpoint."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                return response.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False
        except Exception:
            logger.exception("Classification health check failed")
            return False

    async def classify(
        self, url: str, title: str, description: str | None = None
    ) -> ClassificationResult:
        prompt = f"URL: {url}\nTitle: {title}"
        if description:
            prompt += f"\nDescription: {description}"

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "format": "json",
            "stream": False,
            "options": {"temperature": 0.2},
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.ConnectError as exc:
            raise ClassificationError(
                f"Cannot connect to classifier at {self.base_url}: {exc}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise ClassificationError(
                f"Classifier request timed out after {self._timeout}s: {exc}"
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ClassificationError(
                f"Classifier returned HTTP {status}",
                retryable=status >= 500 or status in (408, 429),
            ) from exc
        except httpx.TransportError as exc:
            raise ClassificationError(f"Classifier network error: {exc}") from exc
        except ValueError as exc:
            raise ClassificationError(f"Classifier sent a malformed body: {exc}") from exc

        if not isinstance(data, dict):
            raise ClassificationError(
                f"Classifier sent a malformed reply: expected an object, got {type(data).__name__}"
            )
        message = data.get("message") or {}
        if not isinstance(message, dict):
            raise ClassificationError(
                f"Classifier sent a malformed message: {type(message).__name__}"
            )
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise ClassificationError(
                f"Classifier sent malformed content: {type(content).__name__}"
            )
        if not content.strip():
            return ClassificationResult(tags=[UNCATEGORIZED])
        return parse_classification(content)
