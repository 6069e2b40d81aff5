"""
Tests for the Gemini OCR client.

HTTP calls are mocked; no network access is needed.
"""

import json
import pytest
import numpy as np
import requests
import sys
from pathlib import Path
from unittest.mock import patch, MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pdf2word.config import GeminiConfig, ErrorCode
from pdf2word.utils.ocr_gemini import (
    CellBoxForOcr, GeminiClient, GeminiConfigError, GeminiHttpError, GeminiJsonError,
    map_gemini_error, normalize_json, extract_response_text, parse_openai_response,
    parse_table_cells, parse_page_paragraphs, parse_table_lines, parse_page_text,
    build_table_prompt, build_page_prompt, encode_image,
)


def _gemini_body(text):
    return json.dumps({"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _response(status_code=200, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


@pytest.fixture
def image():
    return np.full((60, 80, 3), 255, dtype=np.uint8)


@pytest.fixture
def client():
    return GeminiClient(GeminiConfig(api_key="secret key", table_timeout_s=12, page_timeout_s=34))


class TestErrorMapping:
    """Test classification of OCR call errors."""

    def test_timeout(self):
        info = map_gemini_error(requests.exceptions.Timeout())

        assert info.code == ErrorCode.GEMINI_TIMEOUT
        assert info.retryable

    def test_status_codes(self):
        assert map_gemini_error(GeminiHttpError(429)).code == ErrorCode.GEMINI_RATE_LIMITED
        assert map_gemini_error(GeminiHttpError(429)).retryable
        assert map_gemini_error(GeminiHttpError(503)).code == ErrorCode.GEMINI_SERVER_ERROR
        assert map_gemini_error(GeminiHttpError(503)).retryable

        info = map_gemini_error(GeminiHttpError(403))
        assert info.code == ErrorCode.GEMINI_HTTP_ERROR
        assert not info.retryable

    def test_malformed_json(self):
        info = map_gemini_error(GeminiJsonError("bad"))

        assert info.code == ErrorCode.GEMINI_JSON_INVALID
        assert info.retryable

    def test_missing_configuration_is_not_retryable(self):
        info = map_gemini_error(GeminiConfigError("Gemini API key is missing."))

        assert info.code == ErrorCode.GEMINI_HTTP_ERROR
        assert not info.retryable

    def test_unknown_error_uses_fallback_message(self):
        info = map_gemini_error(RuntimeError("boom"), "Table OCR failed")

        assert info.code == ErrorCode.GEMINI_TIMEOUT
        assert info.message == "Table OCR failed"
        assert info.retryable


class TestResponseParsing:
    """Test extraction of model text and JSON payloads."""

    def test_normalize_strips_fences(self):
        assert normalize_json('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert normalize_json('  {"a": 1}  ') == '{"a": 1}'

    def test_normalize_blank(self):
        assert normalize_json("") == "{}"
        assert normalize_json("   ") == "{}"

    def test_extract_gemini_text(self):
        assert extract_response_text(_gemini_body("hello")) == "hello"

    def test_extract_openai_text(self):
        body = json.dumps({"choices": [{"message": {"content": "hi"}}]})

        assert extract_response_text(body) == "hi"

    def test_openai_content_parts(self):
        body = json.dumps({"choices": [{"message": {"content": [
            {"type": "text", "text": "a"}, {"type": "text", "text": "b"}
        ]}}]})

        assert parse_openai_response(body) == "ab"

    def test_unknown_shape_returns_body(self):
        assert extract_response_text('{"other": 1}') == '{"other": 1}'

    def test_invalid_body(self):
        with pytest.raises(GeminiJsonError):
            extract_response_text("not json")

    def test_parse_table_cells(self):
        text = json.dumps({"cells": [
            {"id": "a", "text": "1"},
            {"id": "b", "text": None},
            {"id": "", "text": "skipped"},
            "junk",
        ]})

        assert parse_table_cells(text).text_by_id == {"a": "1", "b": ""}

    def test_parse_table_cells_requires_object(self):
        with pytest.raises(GeminiJsonError):
            parse_table_cells("[1, 2]")

    def test_parse_paragraphs(self):
        text = json.dumps({"paragraphs": [
            {"role": "title", "text": "T"}, {"text": "body text"}
        ]})

        paragraphs = parse_page_paragraphs(text).paragraphs

        assert [(p.role, p.text) for p in paragraphs] == [("title", "T"), ("body", "body text")]

    def test_parse_lines(self):
        assert parse_table_lines('{"lines": ["a", null, "b"]}').lines == ["a", "", "b"]
        assert parse_table_lines('{"text": "x\\ny"}').lines == ["x", "y"]
        assert parse_table_lines("{}").lines == []

    def test_parse_page_text(self):
        assert parse_page_text('{"text": "all"}').text == "all"
        assert parse_page_text('{"text": 5}').text == ""


class TestPrompts:

    def test_table_prompt_lists_cells(self):
        prompt = build_table_prompt([CellBoxForOcr("p1_t00_r0_c0", 1, 2, 3, 4)], strict=False)

        assert '"id": "p1_t00_r0_c0"' in prompt
        assert '"x": 1' in prompt
        assert "Every input id must be present" not in prompt

    def test_strict_prompts(self):
        assert "Every input id must be present" in build_table_prompt([], strict=True)
        assert "Output JSON only" in build_page_prompt(strict=True)
        assert "Output JSON only" not in build_page_prompt(strict=False)


class TestEncodeImage:

    def test_png_signature(self, image):
        assert encode_image(image, use_png=True)[:8] == b"\x89PNG\r\n\x1a\n"

    def test_jpeg_signature(self, image):
        assert encode_image(image, use_png=False)[:2] == b"\xff\xd8"

    def test_downscales_long_edge(self):
        import cv2

        big = np.full((100, 400, 3), 255, dtype=np.uint8)
        decoded = cv2.imdecode(
            np.frombuffer(encode_image(big, True, max_long_edge_px=200), np.uint8),
            cv2.IMREAD_COLOR
        )

        assert decoded.shape[:2] == (50, 200)


class TestGeminiClient:
    """Test the REST client with a mocked transport."""

    def test_build_url(self, client):
        url = client.build_url()

        assert url.startswith(
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash:generateContent?key="
        )
        assert url.endswith("key=secret%20key")

    def test_build_url_with_query(self):
        client = GeminiClient(GeminiConfig(api_key="k", endpoint="https://host/x?alt=json"))

        assert client.build_url() == "https://host/x?alt=json&key=k"

    def test_build_url_keeps_existing_key(self):
        client = GeminiClient(GeminiConfig(api_key="k", endpoint="https://host/x?key=other"))

        assert client.build_url() == "https://host/x?key=other"

    def test_missing_key(self, image):
        client = GeminiClient(GeminiConfig(api_key=None))

        with pytest.raises(GeminiConfigError):
            client.recognize_page_as_single_text(image, 1)

    def test_recognize_table_cells(self, client, image):
        body = _gemini_body('```json\n{"cells":[{"id":"c1","text":"42"}]}\n```')

        with patch("pdf2word.utils.ocr_gemini.requests.post", return_value=_response(200, body)) as post:
            result = client.recognize_table_cells(image, [CellBoxForOcr("c1", 0, 0, 10, 10)], False, 1)

        assert result.text_by_id == {"c1": "42"}
        assert result.raw_json == body

        _, kwargs = post.call_args
        assert kwargs["timeout"] == 12
        part = kwargs["json"]["contents"][0]["parts"][1]["inline_data"]
        assert part["mime_type"] == "image/png"

    def test_page_requests_use_jpeg(self, client, image):
        body = _gemini_body('{"paragraphs":[{"role":"body","text":"hello world"}]}')

        with patch("pdf2word.utils.ocr_gemini.requests.post", return_value=_response(200, body)) as post:
            result = client.recognize_page_paragraphs(image, True, 2)

        assert result.paragraphs[0].text == "hello world"
        _, kwargs = post.call_args
        assert kwargs["timeout"] == 34
        assert kwargs["json"]["contents"][0]["parts"][1]["inline_data"]["mime_type"] == "image/jpeg"

    def test_http_error(self, client, image):
        with patch("pdf2word.utils.ocr_gemini.requests.post", return_value=_response(429, "slow down")):
            with pytest.raises(GeminiHttpError) as exc_info:
                client.recognize_table_as_lines(image, 1)

        assert exc_info.value.status_code == 429

    def test_invalid_model_json(self, client, image):
        body = _gemini_body("Sorry, I cannot read this.")

        with patch("pdf2word.utils.ocr_gemini.requests.post", return_value=_response(200, body)):
            with pytest.raises(GeminiJsonError):
                client.recognize_page_as_single_text(image, 1)

    def test_uses_session(self, image):
        session = MagicMock()
        session.post.return_value = _response(200, _gemini_body('{"text":"via session"}'))
        client = GeminiClient(GeminiConfig(api_key="k"), session=session)

        assert client.recognize_page_as_single_text(image, 1).text == "via session"
        session.post.assert_called_once()
