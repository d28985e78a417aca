import os
import tempfile
from pathlib import Path

_TEST_DIR = Path(tempfile.mkdtemp(prefix="arborkb-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DIR / 'arborkb.db'}")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("STORAGE_ROOT", str(_TEST_DIR / "storage"))
os.environ.setdefault("STORAGE_PUBLIC_BASE_URL", "http://images.test/storage")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from arborkb.agents.page_pipeline import PipelineStages  # noqa: E402
from arborkb.database import Base, SessionLocal, engine  # noqa: E402
from arborkb.models import (  # noqa: E402,F401
    audit_log, catalog, kb_chunk, kb_image, page_suggestion, processing_queue, queue_page,
)
from arborkb.services.events import EventBus  # noqa: E402
from arborkb.services.structured_extraction import StructuredExtractionStage  # noqa: E402
from arborkb.services.text_extraction import TextExtractionStage  # noqa: E402
from arborkb.services.translation import TranslationStage  # noqa: E402
from arborkb.states.state import RawSuggestion, TranslationResult  # noqa: E402
from arborkb.storage.object_store import LocalObjectStore  # noqa: E402
from arborkb.tools.ocr_tools import ImageVerifier, RetryPolicy  # noqa: E402

SWEDISH_PAGE = (
    "Eken är ett av de viktigaste träden för den biologiska mångfalden i Sverige. "
    "Quercus robur kan bli 35 meter hög och leva i mer än 500 år. "
    "Svampen Fistulina hepatica orsakar brunröta i kärnveden."
)


class FakeRecognizer:
    """Returns canned text keyed by a substring of the image URL; unknown URLs raise."""

    def __init__(self, pages: dict[str, str] | None = None, default: str | None = SWEDISH_PAGE):
        self.pages = pages or {}
        self.default = default
        self.calls: list[str] = []

    def recognize(self, image_url: str) -> str:
        self.calls.append(image_url)
        for key, text in self.pages.items():
            if key in image_url:
                if isinstance(text, Exception):
                    raise text
                return text
        if self.default is None:
            raise AssertionError(f"unexpected recognition call for {image_url}")
        return self.default


class FakeTranslator:
    def __init__(self, confidence: float = 0.92):
        self.confidence = confidence
        self.calls: list[str] = []

    def translate(self, content: str) -> TranslationResult:
        self.calls.append(content)
        return TranslationResult(
            translated_content=f"[en] {content}",
            detected_language="sv",
            confidence=self.confidence,
        )


class FakeExtractor:
    def __init__(self, suggestions: list[RawSuggestion] | None = None):
        self.suggestions = suggestions if suggestions is not None else [
            RawSuggestion(
                target_table="species",
                suggested_data={"scientific_name": "Quercus robur", "common_names": ["ek"]},
                confidence_score=0.95,
                rationale="Quercus robur kan bli 35 meter hög",
            ),
            RawSuggestion(
                target_table="fungi",
                suggested_data={"scientific_name": "Fistulina hepatica", "decay": "brown rot"},
                confidence_score=0.8,
                rationale="orsakar brunröta",
            ),
            RawSuggestion(
                target_table="defects",
                suggested_data={"name": "cavity"},
                confidence_score=0.3,
                rationale="guess",
            ),
        ]
        self.calls: list[str] = []

    def extract(self, content: str) -> list[RawSuggestion]:
        self.calls.append(content)
        return list(self.suggestions)


def image_transport(missing: tuple[str, ...] = ("missing",)) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if any(marker in str(request.url) for marker in missing):
            return httpx.Response(404)
        return httpx.Response(200, headers={"content-type": "image/png"})
    return httpx.MockTransport(handler)


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "storage", "http://images.test/storage")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def translator() -> FakeTranslator:
    return FakeTranslator()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def verifier() -> ImageVerifier:
    return ImageVerifier(policy=RetryPolicy(max_attempts=2, wait_seconds=0), transport=image_transport())


@pytest.fixture
def stages(recognizer, verifier, store, bus, translator, extractor) -> PipelineStages:
    return PipelineStages(
        text=TextExtractionStage(recognizer=recognizer, verifier=verifier, store=store, bus=bus),
        translation=TranslationStage(translator=translator),
        structured=StructuredExtractionStage(extractor=extractor),
    )


@pytest.fixture
def client(db, stages, store):
    from arborkb.main import app
    from arborkb.routes.queue_routes import get_pipeline_stages
    from arborkb.routes.stage_routes import get_structured_stage, get_text_stage, get_translation_stage
    from arborkb.storage.object_store import get_object_store

    app.dependency_overrides[get_pipeline_stages] = lambda: stages
    app.dependency_overrides[get_text_stage] = lambda: stages.text
    app.dependency_overrides[get_translation_stage] = lambda: stages.translation
    app.dependency_overrides[get_structured_stage] = lambda: stages.structured
    app.dependency_overrides[get_object_store] = lambda: store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
