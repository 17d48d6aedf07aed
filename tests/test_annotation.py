# -*- coding: utf-8 -*-
"""
Tests for the annotation client and its response post-processing.
"""
import json

import httpx
import pytest

from content_platform.annotation import (
    ANTHROPIC_VERSION,
    AnnotationClient,
    extract_labels,
    extract_markup,
    parse_difficulty,
    strip_code_fences,
)
from content_platform.errors import ExternalServiceError

API_URL = "https://annotation.test/v1/messages"


def _reply(text: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={
            "content": [{"type": "text", "text": text}],
            "usage": {"input_tokens": 10, "output_tokens": 20},
        },
    )


def _client(handler, **kwargs) -> AnnotationClient:
    return AnnotationClient(
        api_key="test-key",
        api_url=API_URL,
        model="test-model",
        max_attempts=kwargs.pop("max_attempts", 3),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestStripCodeFences:
    """Tests for strip_code_fences."""

    def test_html_fence(self):
        assert strip_code_fences("```html\n<p>x</p>\n```") == "<p>x</p>"

    def test_bare_fence(self):
        assert strip_code_fences("```\n<p>x</p>\n```") == "<p>x</p>"

    def test_no_fence(self):
        assert strip_code_fences("  <p>x</p>\n") == "<p>x</p>"

    def test_fence_surrounded_by_prose(self):
        text = "Here you go:\n```html\n<p>x</p>\n```\nDone."
        assert strip_code_fences(text) == "Here you go:\n<p>x</p>\nDone."


class TestExtractMarkup:
    """Tests for extract_markup."""

    def test_prose_around_document(self):
        text = "Sure! Here it is:\n<html><body><p>x</p></body></html>\nI added tags."
        assert extract_markup(text) == "<html><body><p>x</p></body></html>"

    def test_prefers_closing_html_over_body(self):
        text = "<html><body>a</body><!-- c --></html> trailing"
        assert extract_markup(text) == "<html><body>a</body><!-- c --></html>"

    def test_body_without_html(self):
        text = "<body><p>a</p></body> notes"
        assert extract_markup(text) == "<body><p>a</p></body>"

    def test_fragment_uses_last_tag(self):
        text = "Result: <div><p>a</p></div> (done)"
        assert extract_markup(text) == "<div><p>a</p></div>"

    def test_no_markup(self):
        assert extract_markup("  nothing here ") == "nothing here"


class TestParseDifficulty:
    """Tests for parse_difficulty."""

    def test_reads_marker_and_strips_line(self):
        difficulty, rest = parse_difficulty("DIFFICULTY:3\n<html></html>")
        assert difficulty == 3
        assert rest == "<html></html>"

    def test_case_and_spacing(self):
        difficulty, rest = parse_difficulty("  difficulty: 1 \n<p>a</p>")
        assert difficulty == 1
        assert rest == "<p>a</p>"

    def test_missing_marker_defaults_to_two(self):
        difficulty, rest = parse_difficulty("<p>a</p>")
        assert difficulty == 2
        assert rest == "<p>a</p>"

    @pytest.mark.parametrize("value", ["7", "high", "", "12"])
    def test_unparsable_value_defaults_to_two(self, value):
        difficulty, rest = parse_difficulty(f"DIFFICULTY:{value}\n<p>a</p>")
        assert difficulty == 2
        assert rest == "<p>a</p>"

    def test_marker_inside_fence(self):
        difficulty, rest = parse_difficulty("```html\nDIFFICULTY:1\n<p>a</p>\n```")
        assert difficulty == 1
        assert rest == "<p>a</p>"


class TestExtractLabels:
    """Tests for extract_labels."""

    def test_order_of_first_appearance_without_duplicates(self):
        markup = (
            '<input data-tag="phishing"><button data-tag="Password Security">'
            "<select data-tag='phishing'>"
        )
        assert extract_labels(markup) == ["phishing", "password-security"]

    def test_cue_attribute(self):
        markup = '<p data-cue="language:urgency-tactic">Act now</p><a data-cue="technical:spoofed-link">'
        assert extract_labels(markup, "data-cue") == [
            "language:urgency-tactic",
            "technical:spoofed-link",
        ]

    def test_ignores_other_attributes(self):
        assert extract_labels('<div data-tagline="x" class="data-tag">', "data-tag") == []

    def test_skips_empty_values(self):
        assert extract_labels('<input data-tag="  ">') == []


@pytest.mark.asyncio
class TestAnnotationClient:
    """Tests for AnnotationClient over a mocked transport."""

    async def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return _reply("<p>ok</p>")

        await _client(handler, max_tokens=123).complete("system text", "user text")

        assert seen["headers"]["x-api-key"] == "test-key"
        assert seen["headers"]["anthropic-version"] == ANTHROPIC_VERSION
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["max_tokens"] == 123
        assert seen["body"]["system"] == "system text"
        assert seen["body"]["messages"] == [{"role": "user", "content": "user text"}]

    async def test_tag_interactive(self):
        document = "<form><input name='q'></form>"

        def handler(request):
            prompt = json.loads(request.content)["messages"][0]["content"]
            assert document in prompt
            return _reply(
                "```html\n<form><input name='q' data-tag=\"phishing\"></form>\n```\n"
                "I tagged the input."
            )

        result = await _client(handler).tag_interactive(document)

        assert result.document == "<form><input name='q' data-tag=\"phishing\"></form>"
        assert result.labels == ["phishing"]

    async def test_template_syntax_in_document_is_not_rendered(self):
        document = "<div>{{ user.name }} {% raw %}</div>"

        def handler(request):
            prompt = json.loads(request.content)["messages"][0]["content"]
            assert document in prompt
            return _reply(document)

        await _client(handler).tag_interactive(document)

    async def test_fragment_keeps_text_outside_tags(self):
        chunk = "end of a caption</p>\n<p><button>Go</button></p>Caption between blocks"

        def handler(request):
            return _reply("```html\n" + chunk.replace("<button>", '<button data-tag="quiz">') + "\n```")

        result = await _client(handler).tag_interactive(chunk, fragment=True)

        assert result.document.startswith("end of a caption</p>")
        assert result.document.endswith("</p>Caption between blocks")
        assert result.labels == ["quiz"]

    async def test_fragment_may_be_plain_text(self):
        result = await _client(lambda request: _reply("only text")).tag_interactive(
            "only text", fragment=True
        )
        assert result.document == "only text"
        assert result.labels == []

    async def test_empty_fragment_response(self):
        with pytest.raises(ExternalServiceError):
            await _client(lambda request: _reply("``` ```")).tag_interactive("<p>x</p>", fragment=True)

    async def test_tag_phishing_cues(self):
        def handler(request):
            return _reply(
                "DIFFICULTY:1\n<html><body><p data-cue=\"language:urgency-tactic\">Now!</p>"
                "</body></html>"
            )

        result = await _client(handler).tag_phishing_cues("<html><body><p>Now!</p></body></html>")

        assert result.difficulty == 1
        assert result.cues == ["language:urgency-tactic"]
        assert result.document.startswith("<html>")

    async def test_retries_rate_limit_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(429, json={"error": "rate_limited"})
            return _reply("<p>ok</p>")

        result = await _client(handler).complete("s", "u")

        assert result == "<p>ok</p>"
        assert len(calls) == 3

    async def test_gives_up_after_max_attempts(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        with pytest.raises(ExternalServiceError):
            await _client(handler, max_attempts=2).complete("s", "u")
        assert len(calls) == 2

    async def test_transport_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return _reply("<p>ok</p>")

        assert await _client(handler).complete("s", "u") == "<p>ok</p>"
        assert len(calls) == 2

    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "bad request"})

        with pytest.raises(ExternalServiceError):
            await _client(handler).complete("s", "u")
        assert len(calls) == 1

    @pytest.mark.parametrize(
        "body",
        [{}, {"content": []}, {"content": [{"type": "text"}]}, {"content": [{"text": 5}]}],
    )
    async def test_missing_payload(self, body):
        def handler(request):
            return httpx.Response(200, json=body)

        with pytest.raises(ExternalServiceError):
            await _client(handler).complete("s", "u")

    async def test_response_without_markup(self):
        def handler(request):
            return _reply("Sorry, I cannot help with that.")

        with pytest.raises(ExternalServiceError):
            await _client(handler).tag_interactive("<p>x</p>")

    async def test_missing_api_key(self):
        client = AnnotationClient(api_key="", transport=httpx.MockTransport(lambda r: _reply("")))

        assert client.is_configured is False
        with pytest.raises(ExternalServiceError):
            await client.complete("s", "u")

    async def test_suggest_topics(self):
        seen = {}

        def handler(request):
            seen["prompt"] = json.loads(request.content)["messages"][0]["content"]
            return _reply('Topics:\n["Phishing", "password security", 3, "phishing"]')

        topics = await _client(handler).suggest_topics("<p>" + "a" * 20_000 + "</p>")

        assert topics == ["phishing", "password-security"]
        assert "a" * 10_001 not in seen["prompt"]

    async def test_suggest_topics_without_array(self):
        topics = await _client(lambda r: _reply("No topics found.")).suggest_topics("<p>x</p>")
        assert topics == []
