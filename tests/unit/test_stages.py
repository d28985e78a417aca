import pytest
from sqlalchemy.exc import IntegrityError

from arborkb.config import settings
from arborkb.dao import kb_dao, queue_dao
from arborkb.errors import ConfigurationError, InvalidRequestError, PrerequisiteError, ResourceUnreachableError
from arborkb.models.kb_chunk import KbChunk
from arborkb.models.page_suggestion import PageSuggestion, SuggestionType
from arborkb.services import queue_coordinator
from arborkb.services.events import SuggestionSeed
from arborkb.services.queue_coordinator import UploadedImage

EXTERNAL_URL = "http://images.test/external/page-7.png"


def _uploaded_batch(db, store, bus, names=("p1.png",), source_id="src-1"):
    uploads = [UploadedImage(name, f"image {name}".encode(), "image/png") for name in names]
    (batch,) = queue_coordinator.register_upload(db, store, source_id, uploads, batch_size=10, bus=bus)
    return batch


def test_extraction_writes_image_chunk_and_page_stamp(db, store, bus, stages) -> None:
    batch = _uploaded_batch(db, store, bus)
    seeds = []
    bus.subscribe(lambda event: seeds.append(event) if isinstance(event, SuggestionSeed) else None)

    image = kb_dao.get_image(db, "src-1", 1)
    result = stages.text.run(db, "src-1", 1, image.uri)

    chunk = kb_dao.get_chunk(db, result["chunk_id"])
    assert result["chunk_created"]
    assert result["detected_language"] == "sv"
    assert chunk.content_sha256 == result["content_hash"]
    assert chunk.meta["processing_phase"] == "phase1_extraction"
    assert image.meta["ocr_processed"] is True
    assert image.meta["original_filename"] == "p1.png"

    page = queue_dao.get_pages(db, batch.id)[0]
    assert page.phase1_completed_at is not None
    assert page.extracted_text.startswith("Eken")
    assert [s.chunk_id for s in seeds] == [chunk.id]


def test_rerunning_extraction_replaces_the_chunk_in_place(db, store, bus, stages, recognizer) -> None:
    stages.text.run(db, "ext-src", 7, EXTERNAL_URL)
    first = kb_dao.get_chunk_for_slot(db, "ext-src", 7)
    first_id = first.id

    recognizer.default = "Ny text efter omskanning av sidan, med mer innehåll än förut och det är bra."
    result = stages.text.run(db, "ext-src", 7, EXTERNAL_URL)

    assert result["chunk_id"] == first_id
    assert not result["chunk_created"]
    assert db.query(KbChunk).filter_by(source_id="ext-src").count() == 1
    assert kb_dao.get_chunk(db, first_id).content.startswith("Ny text")
    assert kb_dao.get_chunk(db, first_id).content_en is None


def test_identical_text_on_two_pages_shares_a_hash(db, stages) -> None:
    a = stages.text.run(db, "ext-src", 1, EXTERNAL_URL)
    b = stages.text.run(db, "other-src", 4, EXTERNAL_URL)

    assert a["chunk_id"] != b["chunk_id"]
    assert a["content_hash"] == b["content_hash"]


def test_extraction_refuses_bad_input_before_any_call(db, stages, recognizer) -> None:
    with pytest.raises(InvalidRequestError):
        stages.text.run(db, "", 1, EXTERNAL_URL)
    with pytest.raises(InvalidRequestError):
        stages.text.run(db, "ext-src", "3", EXTERNAL_URL)
    assert recognizer.calls == []


def test_missing_credentials_fail_before_network_or_database(db, stages, recognizer, monkeypatch) -> None:
    monkeypatch.setattr(settings, "openai_api_key", None)

    with pytest.raises(ConfigurationError):
        stages.text.run(db, "ext-src", 1, EXTERNAL_URL)

    assert recognizer.calls == []
    assert db.query(KbChunk).count() == 0


def test_unreachable_image_writes_nothing(db, stages, recognizer) -> None:
    with pytest.raises(ResourceUnreachableError):
        stages.text.run(db, "ext-src", 1, "http://images.test/missing/page.png")

    assert recognizer.calls == []
    assert kb_dao.get_image(db, "ext-src", 1) is None


def test_short_text_passes_through_translation(db, stages, recognizer, translator) -> None:
    recognizer.default = "Quercus robur"
    extracted = stages.text.run(db, "ext-src", 1, EXTERNAL_URL)

    result = stages.translation.run(db, extracted["chunk_id"], "ext-src")

    assert translator.calls == []
    assert result["translated_content"] == "Quercus robur"
    assert result["confidence"] == 1.0
    assert kb_dao.get_chunk(db, extracted["chunk_id"]).content_en == "Quercus robur"


def test_translation_records_language_and_stamps_phase_two(db, store, bus, stages, translator) -> None:
    batch = _uploaded_batch(db, store, bus)
    extracted = stages.text.run(db, "src-1", 1, kb_dao.get_image(db, "src-1", 1).uri)

    result = stages.translation.run(db, extracted["chunk_id"], "src-1")

    chunk = kb_dao.get_chunk(db, extracted["chunk_id"])
    assert len(translator.calls) == 1
    assert result["unpreserved_terms"] == []
    assert chunk.lang == "en"
    assert chunk.src_lang == "sv"
    assert chunk.content_en.startswith("[en] Eken")
    page = queue_dao.get_pages(db, batch.id)[0]
    assert page.phase2_completed_at >= page.phase1_completed_at


def test_structured_extraction_requires_translation_first(db, store, bus, stages, extractor) -> None:
    _uploaded_batch(db, store, bus)
    extracted = stages.text.run(db, "src-1", 1, kb_dao.get_image(db, "src-1", 1).uri)

    with pytest.raises(PrerequisiteError):
        stages.structured.run(db, extracted["chunk_id"], "src-1")

    assert extractor.calls == []
    assert db.query(PageSuggestion).count() == 0


def test_structured_extraction_needs_a_queue_page(db, stages) -> None:
    extracted = stages.text.run(db, "ext-src", 1, EXTERNAL_URL)
    stages.translation.run(db, extracted["chunk_id"], "ext-src")

    with pytest.raises(PrerequisiteError):
        stages.structured.run(db, extracted["chunk_id"], "ext-src")


def test_structured_extraction_persists_only_confident_valid_suggestions(db, store, bus, stages) -> None:
    batch = _uploaded_batch(db, store, bus)
    extracted = stages.text.run(db, "src-1", 1, kb_dao.get_image(db, "src-1", 1).uri)
    stages.translation.run(db, extracted["chunk_id"], "src-1")

    result = stages.structured.run(db, extracted["chunk_id"], "src-1")

    suggestions = kb_dao.list_suggestions(db, batch.id)
    assert result["suggestions_generated"] == 2
    assert result["suggestions_dropped"] == 1
    assert {s.target_table for s in suggestions} == {"species", "fungi"}
    assert all(s.confidence_score >= 0.5 for s in suggestions)
    assert {s["confidence_band"] for s in result["suggestions"]} == {"explicit", "clear"}


def test_chunk_of_another_source_is_rejected(db, stages) -> None:
    extracted = stages.text.run(db, "ext-src", 1, EXTERNAL_URL)

    with pytest.raises(InvalidRequestError):
        stages.translation.run(db, extracted["chunk_id"], "someone-else")


def test_suggestions_below_the_confidence_floor_are_refused_by_the_database(db, bus) -> None:
    batch = queue_coordinator.create_batch(db, "src-1", "Manual batch", 1, bus=bus)
    db.add(PageSuggestion(
        queue_id=batch.id,
        page_number=1,
        suggestion_type=SuggestionType.DEFECT,
        target_table="defects",
        suggested_data={"name": "cavity"},
        confidence_score=0.3,
    ))

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()
    assert db.query(PageSuggestion).count() == 0
