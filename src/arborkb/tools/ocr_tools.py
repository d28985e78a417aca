"""
Phase 1 building blocks: image reachability, vision OCR, figure parsing,
language detection and content hashing. Pure helpers plus thin backend
wrappers — persistence lives in services/text_extraction.py.
"""
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Literal, Protocol

import httpx
from langchain_core.messages import HumanMessage, SystemMessage
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_fixed

from arborkb.config import settings
from arborkb.errors import BackendError, EmptyRecognitionError, ResourceUnreachableError
from arborkb.states.state import ExtractedFigure
from arborkb.tools.chat_models import get_chat_model

logger = logging.getLogger(__name__)

FIGURE_BLOCK_RE = re.compile(r"\[FIGURES FOUND\]([\s\S]*?)\[END FIGURES\]")
FIGURE_PLACEHOLDER = "[FIGURE REMOVED]"

_FIGURE_FIELDS = {
    "figure type"       : "type",
    "description"       : "description",
    "caption"           : "caption",
    "scientific content": "scientific_content",
    "location"          : "location",
}

# Closed vocabularies — domain text is Swedish or English
LANGUAGE_FUNCTION_WORDS = {
    "sv": {"och", "det", "att", "i", "en", "av", "är", "för", "på", "med", "som", "till"},
    "en": {"and", "the", "to", "of", "a", "in", "is", "for", "with", "as", "on", "at"},
}

_PROVIDER_DOWNLOAD_ERRORS = ("Timeout while downloading", "invalid_image_url")

OCR_SYSTEM_PROMPT = """You are an expert OCR system for arboricultural literature (tree biology, \
tree risk assessment, wood decay fungi). Transcribe the page image.

- Extract text verbatim without summarization, interpretation or translation
- Maintain original paragraph breaks, lists, and structure
- Preserve all scientific names in their original form
- Keep measurements, ratings, and numerical data unchanged
- Note any handwritten text, annotations, or marginal notes

For every figure, photo, diagram, chart, table or illustration, add a block:
[FIGURES FOUND]
Figure Type: [diagram/photo/chart/table/illustration/map/etc.]
Description: [detailed description of visual content]
Caption: [any visible caption or title]
Scientific Content: [species shown, defects illustrated, measurements, etc.]
Location: [top/middle/bottom/left/right/center]
[END FIGURES]"""


# ── Retry policy for the reachability check ──────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    wait_seconds: float = 2.0
    backoff: Literal["fixed", "exponential"] = "fixed"

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.reachability_attempts,
            wait_seconds=settings.reachability_wait_seconds,
            backoff=settings.reachability_backoff,
        )

    def retrying(self, retry_on: type[BaseException] | tuple) -> Retrying:
        if self.backoff == "exponential":
            wait = wait_exponential(multiplier=self.wait_seconds, max=self.wait_seconds * 8)
        else:
            wait = wait_fixed(self.wait_seconds)
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait,
            retry=retry_if_exception_type(retry_on),
            before_sleep=_log_retry_attempt,
            reraise=True,
        )


def _log_retry_attempt(retry_state):
    logger.warning(
        "Image not reachable yet: %s. Attempt #%d, waiting %.2fs",
        retry_state.outcome.exception(),
        retry_state.attempt_number,
        retry_state.next_action.sleep,
    )


# ── Reachability ──────────────────────────────────────────────────────────────

class ImageVerifier:
    """HEAD-checks an image URL under a bounded retry policy."""

    def __init__(
            self,
            policy: RetryPolicy | None = None,
            timeout: float | None = None,
            transport: httpx.BaseTransport | None = None,
    ):
        self.policy = policy or RetryPolicy.from_settings()
        self.timeout = timeout if timeout is not None else settings.reachability_timeout_seconds
        self.transport = transport

    def _check_once(self, client: httpx.Client, url: str) -> None:
        try:
            response = client.head(url)
            if response.status_code == 405:
                response = client.get(url, headers={"Range": "bytes=0-0"})
        except httpx.TimeoutException as e:
            raise ResourceUnreachableError(f"Timed out fetching image {url}: {e}", timeout=True) from e
        except httpx.TransportError as e:
            raise ResourceUnreachableError(f"Could not connect to image host for {url}: {e}") from e
        if response.status_code >= 400:
            raise ResourceUnreachableError(f"Image not found at {url} (HTTP {response.status_code})")

    def verify(self, url: str) -> None:
        with httpx.Client(timeout=self.timeout, transport=self.transport, follow_redirects=True) as client:
            self.policy.retrying(ResourceUnreachableError)(self._check_once, client, url)
        logger.debug("Image reachable: %s", url)


# ── Recognition backend ───────────────────────────────────────────────────────

class TextRecognizer(Protocol):
    def recognize(self, image_url: str) -> str: ...


class VisionTextRecognizer:
    """Vision chat model transcription. Provider errors become stage errors."""

    def recognize(self, image_url: str) -> str:
        llm = get_chat_model(settings.vision_model, max_tokens=settings.vision_max_tokens)
        messages = [
            SystemMessage(content=OCR_SYSTEM_PROMPT),
            HumanMessage(content=[
                {"type": "text", "text": "Extract all text and identify all figures from this image. "
                                         "Preserve original formatting and language:"},
                {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
            ]),
        ]
        try:
            response = llm.invoke(messages)
        except Exception as e:
            if any(marker in str(e) for marker in _PROVIDER_DOWNLOAD_ERRORS):
                raise ResourceUnreachableError(
                    f"Recognition backend timed out downloading the image: {e}", timeout=True
                ) from e
            raise BackendError(f"Recognition backend error: {e}") from e

        content = response.content
        if isinstance(content, list):
            content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
        return content or ""


# ── Post-processing ───────────────────────────────────────────────────────────

def parse_figure_block(block: str) -> ExtractedFigure:
    fields = {}
    for line in block.strip().splitlines():
        label, sep, value = line.partition(":")
        key = _FIGURE_FIELDS.get(label.strip().lower())
        if sep and key and value.strip():
            fields[key] = value.strip()
    return ExtractedFigure(**fields)


def split_figures(raw_text: str) -> tuple[str, list[ExtractedFigure]]:
    """Returns (text with figure blocks replaced by a placeholder, parsed figures)."""
    figures = [parse_figure_block(m.group(1)) for m in FIGURE_BLOCK_RE.finditer(raw_text)]
    cleaned = FIGURE_BLOCK_RE.sub(FIGURE_PLACEHOLDER, raw_text).strip()
    return cleaned, figures


def estimate_confidence(text: str) -> float:
    return min(0.95, max(0.5, len(text) / 100))


def detect_language(text: str) -> str:
    words = re.findall(r"[^\W\d_]+", text.lower())[:50]
    counts = {
        lang: sum(1 for w in words if w in vocab)
        for lang, vocab in LANGUAGE_FUNCTION_WORDS.items()
    }
    if counts["sv"] > counts["en"]:
        return "sv"
    if counts["en"] > 0:
        return "en"
    return "unknown"


def content_sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def clean_recognized_text(raw_text: str) -> tuple[str, list[ExtractedFigure]]:
    """Split figures out of a recognizer response; empty text is a stage failure."""
    if not raw_text or not raw_text.strip():
        raise EmptyRecognitionError("No text detected in image")
    return split_figures(raw_text)
