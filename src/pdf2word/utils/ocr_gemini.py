"""
OCR through the Gemini generateContent API.

Provides:
- The OcrClient interface the pipeline depends on
- GeminiClient, the production implementation over requests
- Prompt builders for cell, page, and fallback recognition
- Response text extraction (Gemini and OpenAI-compatible shapes)
- Mapping of transport/format errors to pipeline error codes
"""

import abc
import base64
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from urllib.parse import quote

import numpy as np
import requests

from ..config import GeminiConfig, ErrorCode

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class CellBoxForOcr:
    """A cell id with its box in table image coordinates."""
    cell_id: str
    x: int
    y: int
    w: int
    h: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.cell_id, "x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass
class OcrParagraph:
    role: str = "body"
    text: str = ""


@dataclass
class TableCellsResult:
    text_by_id: Dict[str, str] = field(default_factory=dict)
    raw_json: str = ""


@dataclass
class TableLinesResult:
    lines: List[str] = field(default_factory=list)
    raw_json: str = ""


@dataclass
class PageParagraphsResult:
    paragraphs: List[OcrParagraph] = field(default_factory=list)
    raw_json: str = ""


@dataclass
class PageTextResult:
    text: str = ""
    raw_json: str = ""


# ============================================================================
# Errors
# ============================================================================

class GeminiError(Exception):
    """Base class for OCR service errors."""


class GeminiConfigError(GeminiError):
    """API key or endpoint missing."""


class GeminiHttpError(GeminiError):
    """Non-success HTTP status from the OCR service."""

    def __init__(self, status_code: int, snippet: str = ""):
        self.status_code = status_code
        self.snippet = snippet
        super().__init__(f"HTTP {status_code}: {snippet}")


class GeminiJsonError(GeminiError):
    """The service answered with text that is not the expected JSON."""


@dataclass(frozen=True)
class GeminiErrorInfo:
    code: str
    message: str
    retryable: bool


def error_from_status(status_code: int) -> GeminiErrorInfo:
    if status_code == 429:
        return GeminiErrorInfo(
            ErrorCode.GEMINI_RATE_LIMITED, "OCR service is busy (HTTP 429)", True
        )
    if status_code >= 500:
        return GeminiErrorInfo(
            ErrorCode.GEMINI_SERVER_ERROR,
            f"OCR service temporarily unavailable (HTTP {status_code})",
            True
        )
    return GeminiErrorInfo(
        ErrorCode.GEMINI_HTTP_ERROR,
        f"OCR service returned HTTP {status_code}; check base URL, model, API key or network restrictions",
        False
    )


def map_gemini_error(exc: BaseException, fallback_message: str = "OCR request failed") -> GeminiErrorInfo:
    """
    Classify an exception raised by an OCR call.

    Args:
        exc: Exception raised by the client
        fallback_message: Message used when the error is not recognized

    Returns:
        GeminiErrorInfo with the error code and whether a retry makes sense
    """
    if isinstance(exc, requests.exceptions.Timeout):
        return GeminiErrorInfo(ErrorCode.GEMINI_TIMEOUT, "OCR service request timed out", True)

    if isinstance(exc, GeminiHttpError):
        return error_from_status(exc.status_code)

    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        return error_from_status(exc.response.status_code)

    if isinstance(exc, (GeminiJsonError, json.JSONDecodeError)):
        return GeminiErrorInfo(ErrorCode.GEMINI_JSON_INVALID, f"Malformed OCR response: {exc}", True)

    if isinstance(exc, GeminiConfigError):
        return GeminiErrorInfo(ErrorCode.GEMINI_HTTP_ERROR, str(exc), False)

    return GeminiErrorInfo(ErrorCode.GEMINI_TIMEOUT, fallback_message, True)


# ============================================================================
# Client Interface
# ============================================================================

class OcrClient(abc.ABC):
    """Remote recognition operations used by the pipeline."""

    @abc.abstractmethod
    def recognize_table_cells(
        self,
        image: np.ndarray,
        cells: List[CellBoxForOcr],
        strict_json: bool,
        attempt: int
    ) -> TableCellsResult:
        ...

    @abc.abstractmethod
    def recognize_table_as_lines(self, image: np.ndarray, attempt: int) -> TableLinesResult:
        ...

    @abc.abstractmethod
    def recognize_page_paragraphs(
        self,
        image: np.ndarray,
        strict_json: bool,
        attempt: int
    ) -> PageParagraphsResult:
        ...

    @abc.abstractmethod
    def recognize_page_as_single_text(self, image: np.ndarray, attempt: int) -> PageTextResult:
        ...


# ============================================================================
# Prompts
# ============================================================================

_STRICT_SUFFIX = "Any output that is not pure JSON is treated as a failure."


def build_table_prompt(cells: List[CellBoxForOcr], strict: bool) -> str:
    payload = json.dumps([c.to_dict() for c in cells], ensure_ascii=False)
    lines = [
        "You are an OCR engine.",
        "You receive a table image and a list of cells, each with an id and a rectangle.",
        "Recognize the text inside every rectangle and return JSON.",
        "Output strict JSON only: no explanations, no Markdown, no code fences.",
        "Do not guess or complete text; output an empty string for anything illegible.",
        "Keep the original text exactly: Chinese, Latin letters, digits, punctuation and spaces.",
        "Do not read table ruling lines as characters.",
        'Output format: {"cells":[{"id":"...","text":"..."}, ...]}',
    ]
    if strict:
        lines.append(f"{_STRICT_SUFFIX} Every input id must be present.")
    lines.append(f"cells: {payload}")
    return "\n".join(lines)


def build_page_prompt(strict: bool) -> str:
    lines = [
        "You are an OCR engine. Recognize the body text in the image.",
        "The image may contain blank masked regions (tables); ignore them.",
        "Output the paragraphs in reading order.",
        "Output strict JSON only: no explanations, no Markdown, no code fences.",
        "Do not guess or complete text; use ? for an illegible character or omit the word.",
        "Use \\n for line breaks inside a paragraph.",
        "Mark an obvious heading with role title, everything else with role body.",
        'Output format: {"paragraphs":[{"role":"title|body","text":"..."}, ...]}',
    ]
    if strict:
        lines.append(f"{_STRICT_SUFFIX} Output JSON only.")
    return "\n".join(lines)


def build_table_fallback_prompt() -> str:
    return "\n".join([
        "You are an OCR engine. Recognize the whole table image and output its text line by line.",
        "Output strict JSON only, no explanations.",
        'Output format: {"lines":["...","..."]}',
    ])


def build_page_fallback_prompt() -> str:
    return "\n".join([
        "You are an OCR engine. Recognize all text in the image as a single block of text.",
        "Output strict JSON only, no explanations.",
        'Output format: {"text":"..."}',
    ])


# ============================================================================
# Image Encoding
# ============================================================================

def encode_image(
    image: np.ndarray,
    use_png: bool,
    max_long_edge_px: int = 2800,
    jpeg_quality: int = 90
) -> bytes:
    """
    Encode an image for upload.

    Args:
        image: BGR or grayscale image
        use_png: PNG (lossless, used for tables) or JPEG
        max_long_edge_px: Downscale so the long edge fits; <= 0 disables
        jpeg_quality: JPEG quality, clamped to [60, 95]

    Returns:
        Encoded image bytes
    """
    import cv2

    h, w = image.shape[:2]
    long_edge = max(w, h)
    if max_long_edge_px > 0 and long_edge > max_long_edge_px:
        scale = max_long_edge_px / long_edge
        size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
        image = cv2.resize(image, size, interpolation=cv2.INTER_AREA)

    if use_png:
        ok, buffer = cv2.imencode('.png', image)
    else:
        quality = min(95, max(60, jpeg_quality))
        ok, buffer = cv2.imencode('.jpg', image, [cv2.IMWRITE_JPEG_QUALITY, quality])

    if not ok:
        raise ValueError("Failed to encode image for OCR upload")
    return buffer.tobytes()


# ============================================================================
# Response Parsing
# ============================================================================

def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise GeminiJsonError(f"{e.msg} at position {e.pos}") from e


def parse_openai_response(response_json: str) -> str:
    """Extract the model text from an OpenAI-compatible response body."""
    root = _load_json(response_json)
    if not isinstance(root, dict):
        return response_json

    choices = root.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0] or {}
        content = (choice.get("message") or {}).get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            combined = "".join(
                part.get("text") or "" for part in content if isinstance(part, dict)
            )
            if combined.strip():
                return combined
        if "text" in choice:
            return choice.get("text") or ""

    if "text" in root:
        return root.get("text") or ""

    return response_json


def extract_response_text(response_json: str) -> str:
    """Extract the model text from a Gemini (or OpenAI-compatible) response body."""
    root = _load_json(response_json)
    if isinstance(root, dict):
        candidates = root.get("candidates")
        if isinstance(candidates, list) and candidates:
            parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
            for part in parts:
                if isinstance(part, dict) and "text" in part:
                    return part.get("text") or ""

    return parse_openai_response(response_json)


def normalize_json(text: str) -> str:
    """Strip Markdown code fences; blank text becomes an empty object."""
    if not text or not text.strip():
        return "{}"

    trimmed = text.strip()
    if trimmed.startswith("```"):
        newline = trimmed.find("\n")
        if newline >= 0:
            trimmed = trimmed[newline + 1:]
        end_fence = trimmed.rfind("```")
        if end_fence >= 0:
            trimmed = trimmed[:end_fence]
        trimmed = trimmed.strip()

    return trimmed


def _as_object(text: str) -> Dict[str, Any]:
    data = _load_json(text)
    if not isinstance(data, dict):
        raise GeminiJsonError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_table_cells(text: str, raw_json: str = "") -> TableCellsResult:
    result = TableCellsResult(raw_json=raw_json)
    cells = _as_object(text).get("cells")
    if not isinstance(cells, list):
        return result

    for cell in cells:
        if not isinstance(cell, dict):
            continue
        cell_id = cell.get("id")
        if not isinstance(cell_id, str) or not cell_id.strip():
            continue
        result.text_by_id[cell_id] = cell.get("text") or ""
    return result


def parse_page_paragraphs(text: str, raw_json: str = "") -> PageParagraphsResult:
    result = PageParagraphsResult(raw_json=raw_json)
    paragraphs = _as_object(text).get("paragraphs")
    if not isinstance(paragraphs, list):
        return result

    for para in paragraphs:
        if not isinstance(para, dict):
            continue
        result.paragraphs.append(OcrParagraph(
            role=para.get("role") or "body",
            text=para.get("text") or "",
        ))
    return result


def parse_table_lines(text: str, raw_json: str = "") -> TableLinesResult:
    result = TableLinesResult(raw_json=raw_json)
    data = _as_object(text)
    lines = data.get("lines")
    if isinstance(lines, list):
        result.lines = [str(line) if line is not None else "" for line in lines]
    elif isinstance(data.get("text"), str) and data["text"].strip():
        result.lines = data["text"].split("\n")
    return result


def parse_page_text(text: str, raw_json: str = "") -> PageTextResult:
    data = _as_object(text)
    value = data.get("text")
    return PageTextResult(text=value if isinstance(value, str) else "", raw_json=raw_json)


# ============================================================================
# Gemini Client
# ============================================================================

class GeminiClient(OcrClient):
    """OcrClient over the Gemini generateContent REST endpoint."""

    def __init__(self, config: GeminiConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session

    def recognize_table_cells(self, image, cells, strict_json, attempt):
        prompt = build_table_prompt(cells, strict_json)
        body = self._send(prompt, image, True, self.config.table_timeout_s)
        text = normalize_json(extract_response_text(body))
        return parse_table_cells(text, body)

    def recognize_table_as_lines(self, image, attempt):
        prompt = build_table_fallback_prompt()
        body = self._send(prompt, image, True, self.config.table_timeout_s)
        text = normalize_json(extract_response_text(body))
        return parse_table_lines(text, body)

    def recognize_page_paragraphs(self, image, strict_json, attempt):
        prompt = build_page_prompt(strict_json)
        body = self._send(prompt, image, False, self.config.page_timeout_s)
        text = normalize_json(extract_response_text(body))
        return parse_page_paragraphs(text, body)

    def recognize_page_as_single_text(self, image, attempt):
        prompt = build_page_fallback_prompt()
        body = self._send(prompt, image, False, self.config.page_timeout_s)
        text = normalize_json(extract_response_text(body))
        return parse_page_text(text, body)

    # ------------------------------------------------------------------------

    def build_payload(self, prompt: str, image: np.ndarray, use_png: bool) -> Dict[str, Any]:
        data = encode_image(
            image, use_png, self.config.max_long_edge_px, self.config.jpeg_quality
        )
        return {
            "contents": [{
                "parts": [
                    {"text": prompt},
                    {"inline_data": {
                        "mime_type": "image/png" if use_png else "image/jpeg",
                        "data": base64.b64encode(data).decode('utf-8'),
                    }},
                ]
            }]
        }

    def build_url(self) -> str:
        api_key = (self.config.api_key or "").strip()
        if not api_key:
            raise GeminiConfigError("Gemini API key is missing.")

        endpoint = self.config.resolve_endpoint()
        if not endpoint:
            raise GeminiConfigError("Gemini endpoint is not configured.")

        if "key=" in endpoint:
            return endpoint
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}key={quote(api_key, safe='')}"

    def _send(self, prompt: str, image: np.ndarray, use_png: bool, timeout_s: int) -> str:
        url = self.build_url()
        payload = self.build_payload(prompt, image, use_png)

        post = self.session.post if self.session is not None else requests.post
        response = post(
            url,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            json=payload,
            timeout=timeout_s
        )
        if response.status_code >= 400:
            raise GeminiHttpError(response.status_code, (response.text or "")[:200])

        logger.debug(f"Gemini responded {response.status_code} ({len(response.text)} bytes)")
        return response.text
