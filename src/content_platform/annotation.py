# -*- coding: utf-8 -*-
"""
Anthropic Messages API client for markup annotation.

Two instruction profiles are used:
- interactive tagging: adds ``data-tag`` attributes to interactive elements
- phishing-cue tagging: adds ``data-cue`` attributes and a leading
  ``DIFFICULTY:<1|2|3>`` marker line

Raw responses are post-processed by the module-level helpers below
(fence stripping, markup isolation, difficulty parsing, label extraction),
which are pure and tested on their own.
"""
import json
import logging
import re
from dataclasses import dataclass, field

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import settings
from .errors import ExternalServiceError
from .jinja_env import render_prompt

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

TAG_ATTRIBUTE = "data-tag"
CUE_ATTRIBUTE = "data-cue"
CUE_CATEGORIES = ["visual", "language", "technical", "error"]

DEFAULT_DIFFICULTY = 2
TOPIC_EXCERPT_CHARS = 10_000

_FENCE_PATTERN = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\n?(.*?)\n?```", re.DOTALL)
_DIFFICULTY_PATTERN = re.compile(r"\A\s*DIFFICULTY\s*:[ \t]*([^\n]*)(?:\n|\Z)", re.IGNORECASE)
_DIFFICULTY_VALUE = re.compile(r"([123])(?!\d)")
_ROOT_CLOSERS = ("</html>", "</body>")
_JSON_ARRAY = re.compile(r"\[.*?\]", re.DOTALL)


class RetryableError(Exception):
    """Transient annotation service failure that triggers a retry."""


@dataclass
class InteractiveAnnotation:
    """Document with ``data-tag`` attributes and the labels found in it."""

    document: str
    labels: list[str] = field(default_factory=list)


@dataclass
class PhishingAnnotation:
    """Email body with ``data-cue`` attributes, its cues and difficulty."""

    document: str
    cues: list[str] = field(default_factory=list)
    difficulty: int = DEFAULT_DIFFICULTY


# =============================================================================
# Response post-processing
# =============================================================================


def strip_code_fences(text: str) -> str:
    """Unwrap ```html ... ``` blocks and trim the result."""
    return _FENCE_PATTERN.sub(lambda m: m.group(1), text).strip()


def extract_markup(text: str) -> str:
    """
    Isolate the markup when a response mixes prose and HTML.

    The span starts at the first ``<`` and ends at the last ``</html>``,
    else the last ``</body>``, else the last ``>``. Text without any tag is
    returned trimmed.
    """
    start = text.find("<")
    if start < 0:
        return text.strip()

    lowered = text.lower()
    for closer in _ROOT_CLOSERS:
        end = lowered.rfind(closer)
        if end >= start:
            return text[start:end + len(closer)].strip()

    end = text.rfind(">")
    if end < start:
        return text.strip()
    return text[start:end + 1].strip()


def parse_difficulty(text: str) -> tuple[int, str]:
    """
    Read the leading ``DIFFICULTY:X`` marker.

    The marker may also sit inside a code fence. When found, the marker line
    is removed from the returned text; an unparsable or out-of-range value
    yields the default.

    Returns:
        (difficulty, remaining text)
    """
    for candidate in (text, strip_code_fences(text)):
        match = _DIFFICULTY_PATTERN.match(candidate)
        if not match:
            continue
        value = _DIFFICULTY_VALUE.match(match.group(1).strip())
        difficulty = int(value.group(1)) if value else DEFAULT_DIFFICULTY
        return difficulty, candidate[match.end():]
    return DEFAULT_DIFFICULTY, text


def normalize_label(value: str) -> str:
    """Lowercase and hyphenate a label value."""
    return re.sub(r"\s+", "-", value.strip().lower())


def extract_labels(markup: str, attribute: str = TAG_ATTRIBUTE) -> list[str]:
    """Values of ``attribute`` in order of first appearance, de-duplicated."""
    pattern = re.compile(rf"\b{re.escape(attribute)}\s*=\s*([\"'])(.*?)\1", re.DOTALL)
    labels: list[str] = []
    for match in pattern.finditer(markup):
        label = normalize_label(match.group(2))
        if label and label not in labels:
            labels.append(label)
    return labels


# =============================================================================
# Client
# =============================================================================


class AnnotationClient:
    """
    Async client for the Anthropic Messages API.

    Transport errors, HTTP 429 and 5xx responses are retried with exponential
    backoff; anything else that is not a 200 with a text payload raises
    ExternalServiceError.
    """

    def __init__(
            self,
            api_key: str | None = None,
            api_url: str | None = None,
            model: str | None = None,
            max_tokens: int | None = None,
            timeout: int | None = None,
            max_attempts: int | None = None,
            transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Defaults to settings.ANTHROPIC_API_KEY.
            api_url: Defaults to settings.ANTHROPIC_API_URL.
            model: Defaults to settings.ANTHROPIC_MODEL.
            max_tokens: Defaults to settings.ANTHROPIC_MAX_TOKENS.
            timeout: Request timeout in seconds. Defaults to settings.ANNOTATION_TIMEOUT.
            max_attempts: Defaults to settings.RETRY_MAX_ATTEMPTS.
            transport: Optional httpx transport (tests inject a MockTransport).
        """
        self.api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        self.api_url = api_url or settings.ANTHROPIC_API_URL
        self.model = model or settings.ANTHROPIC_MODEL
        self.max_tokens = max_tokens or settings.ANTHROPIC_MAX_TOKENS
        self.timeout = timeout or settings.ANNOTATION_TIMEOUT
        self.max_attempts = max_attempts or settings.RETRY_MAX_ATTEMPTS
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def complete(self, system: str, user: str) -> str:
        """
        Send one message exchange and return the text payload.

        Raises:
            ExternalServiceError: missing key, exhausted retries, non-200
                status or a response without ``content[0].text``
        """
        if not self.api_key:
            raise ExternalServiceError(
                "ANTHROPIC_API_KEY is required. Set it in environment or .env file."
            )

        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": user}],
        }
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        attempts = 0

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:

            @retry(
                retry=retry_if_exception_type(RetryableError),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(
                    min=settings.RETRY_MIN_WAIT, max=settings.RETRY_MAX_WAIT
                ),
                reraise=True,
            )
            async def _inner() -> httpx.Response:
                nonlocal attempts
                attempts += 1
                try:
                    response = await client.post(self.api_url, headers=headers, json=payload)
                except httpx.TransportError as e:
                    logger.warning(
                        f"Annotation request failed (attempt {attempts}/{self.max_attempts}): {e}"
                    )
                    raise RetryableError(str(e)) from e
                if response.status_code == 429 or response.status_code >= 500:
                    logger.warning(
                        f"Annotation service returned {response.status_code} "
                        f"(attempt {attempts}/{self.max_attempts})"
                    )
                    raise RetryableError(f"HTTP {response.status_code}")
                return response

            try:
                response = await _inner()
            except RetryableError as e:
                raise ExternalServiceError(
                    f"Annotation service failed after {attempts} attempts: {e}"
                ) from e

        if response.status_code != 200:
            raise ExternalServiceError(
                f"Annotation service HTTP error {response.status_code}: {response.text[:500]}"
            )

        try:
            data = response.json()
            text = data["content"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError("Unexpected annotation service response format") from e
        if not isinstance(text, str):
            raise ExternalServiceError("Unexpected annotation service response format")

        usage = data.get("usage", {})
        logger.debug(
            "Annotation call complete",
            extra={
                "prompt_length": len(user),
                "response_length": len(text),
                "tokens_in": usage.get("input_tokens", 0),
                "tokens_out": usage.get("output_tokens", 0),
                "attempts": attempts,
            },
        )
        return text

    async def tag_interactive(self, document: str, fragment: bool = False) -> InteractiveAnnotation:
        """
        Add ``data-tag`` attributes to the interactive elements of ``document``.

        With ``fragment`` the response is only unwrapped from code fences:
        a chunk may start or end with plain text that isolating the markup
        would drop.
        """
        system = render_prompt(
            "prompts/interactive_tags.j2", vocabulary=settings.KEYWORD_VOCABULARY
        )
        user = render_prompt("prompts/interactive_tags_request.j2", document=document)

        raw = await self.complete(system, user)
        if fragment:
            markup = strip_code_fences(raw)
            if not markup:
                raise ExternalServiceError("Annotation response was empty")
        else:
            markup = extract_markup(strip_code_fences(raw))
            if "<" not in markup:
                raise ExternalServiceError("Annotation response contained no markup")

        labels = extract_labels(markup, TAG_ATTRIBUTE)
        logger.info(f"Interactive tagging found {len(labels)} labels")
        return InteractiveAnnotation(document=markup, labels=labels)

    async def tag_phishing_cues(
            self, document: str, reference_guide: str | None = None
    ) -> PhishingAnnotation:
        """Mark phishing indicators with ``data-cue`` and rate the email's difficulty."""
        system = render_prompt(
            "prompts/phishing_cues.j2",
            categories=CUE_CATEGORIES,
            reference_guide=reference_guide,
        )
        user = render_prompt("prompts/phishing_cues_request.j2", document=document)

        raw = await self.complete(system, user)
        difficulty, remainder = parse_difficulty(raw)
        markup = extract_markup(strip_code_fences(remainder))
        if "<" not in markup:
            raise ExternalServiceError("Annotation response contained no markup")

        cues = extract_labels(markup, CUE_ATTRIBUTE)
        logger.info(f"Phishing tagging found {len(cues)} cues, difficulty {difficulty}")
        return PhishingAnnotation(document=markup, cues=cues, difficulty=difficulty)

    async def suggest_topics(self, document: str) -> list[str]:
        """
        Ask for the main topics of a document excerpt.

        Returns:
            Normalised topic names, or [] when the response holds no JSON array
        """
        system = render_prompt("prompts/topics.j2")
        user = render_prompt(
            "prompts/topics_request.j2", excerpt=document[:TOPIC_EXCERPT_CHARS]
        )
        raw = await self.complete(system, user)

        match = _JSON_ARRAY.search(raw)
        if not match:
            return []
        try:
            topics = json.loads(match.group(0))
        except ValueError:
            logger.warning("Topic suggestion was not valid JSON")
            return []
        if not isinstance(topics, list):
            return []

        result: list[str] = []
        for topic in topics:
            if isinstance(topic, str):
                name = normalize_label(topic)
                if name and name not in result:
                    result.append(name)
        return result
