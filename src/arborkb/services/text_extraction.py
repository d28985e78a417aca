"""
Phase 1 — OCR one page image into a kb_chunks row.

Order of work: credentials → input → URL resolution → reachability →
recognition → one transaction writing image metadata, the chunk and the
page's phase-1 stamp. Any failure before the transaction leaves the
database untouched.
"""
import logging
import time
from datetime import datetime

from sqlalchemy.orm import Session

from arborkb.config import settings
from arborkb.dao import kb_dao, queue_dao
from arborkb.dao.queue_dao import PageClaim
from arborkb.errors import InvalidRequestError, StaleResultError
from arborkb.services.events import EventBus, SuggestionSeed, event_bus
from arborkb.storage.object_store import ObjectStore, get_object_store
from arborkb.tools.chat_models import ensure_stage_configured
from arborkb.tools.ocr_tools import (
    ImageVerifier, TextRecognizer, VisionTextRecognizer,
    clean_recognized_text, content_sha256, detect_language, estimate_confidence,
)

logger = logging.getLogger(__name__)


class TextExtractionStage:
    def __init__(
            self,
            recognizer: TextRecognizer | None = None,
            verifier: ImageVerifier | None = None,
            store: ObjectStore | None = None,
            bus: EventBus | None = None,
    ):
        self.recognizer = recognizer or VisionTextRecognizer()
        self.verifier = verifier or ImageVerifier()
        self._store = store
        self.bus = bus or event_bus

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = get_object_store()
        return self._store

    def run(
            self,
            db: Session,
            source_id: str,
            page: int,
            image_url: str,
            claim: PageClaim | None = None,
    ) -> dict:
        ensure_stage_configured()
        if not isinstance(source_id, str) or not source_id.strip():
            raise InvalidRequestError("sourceId is required and must be a string")
        if not isinstance(image_url, str) or not image_url.strip():
            raise InvalidRequestError("imageUrl is required and must be a string")
        if isinstance(page, bool) or not isinstance(page, int) or page < 0:
            raise InvalidRequestError("page must be a non-negative number")

        started = time.monotonic()
        url = self.store.resolve_url(image_url)
        self.verifier.verify(url)
        raw_text = self.recognizer.recognize(url)
        text, figures = clean_recognized_text(raw_text)

        confidence = estimate_confidence(text)
        language = detect_language(text)
        digest = content_sha256(text)
        now = datetime.utcnow()
        figure_dicts = [f.model_dump(exclude_none=True) for f in figures]

        queue_page = self._target_page(db, source_id, page, claim)
        image = kb_dao.get_image(db, source_id, page)
        if image is None:
            image, _ = kb_dao.upsert_image(db, source_id, page, uri=image_url, meta={"registered_by": "ocr"})
        kb_dao.merge_image_meta(
            image,
            ocr_processed=True,
            ocr_confidence=confidence,
            ocr_language=language,
            text_length=len(text),
            content_hash=digest,
            figures=figure_dicts,
            ocr_completed_at=now.isoformat(),
        )
        if figures and not image.caption:
            image.caption = figures[0].caption or figures[0].description or None

        chunk, created = kb_dao.upsert_chunk(
            db,
            source_id=source_id,
            page=page,
            content=text,
            src_content=raw_text,
            lang=language,
            content_sha256=digest,
            image_ids=[image.id],
            meta={
                "processing_phase"   : "phase1_extraction",
                "ocr_confidence"     : confidence,
                "figures_count"      : len(figures),
                "phase1_completed_at": now.isoformat(),
            },
        )

        if queue_page is not None:
            stamped = queue_dao.stamp_phase(
                db, queue_page.id, 1, claim=claim,
                extracted_text=text[:settings.extracted_text_preview_chars],
                ocr_confidence=confidence,
                figures_extracted=figure_dicts,
            )
            if not stamped:
                db.rollback()
                raise StaleResultError(
                    f"Page {queue_page.id} was reset while OCR for {source_id}/{page} was running; result discarded"
                )
        db.commit()

        logger.info(
            "OCR %s page %d: %d chars, lang=%s, confidence=%.2f, figures=%d, chunk=%s (%s)",
            source_id, page, len(text), language, confidence, len(figures), chunk.id,
            "created" if created else "replaced",
        )
        if len(text) >= settings.suggestion_seed_min_length:
            self.bus.publish(SuggestionSeed(source_id, page, chunk.id, len(text), language))

        return {
            "chunk_id"          : chunk.id,
            "chunk_created"     : created,
            "text"              : text,
            "confidence"        : confidence,
            "detected_language" : language,
            "content_hash"      : digest,
            "figures_extracted" : len(figures),
            "processing_time_ms": int((time.monotonic() - started) * 1000),
        }

    @staticmethod
    def _target_page(db: Session, source_id: str, page: int, claim: PageClaim | None):
        if claim is None:
            return queue_dao.find_page_for_slot(db, source_id, page)
        queue_page = queue_dao.get_page(db, claim.page_id)
        if queue_page is None:
            raise StaleResultError(f"Page {claim.page_id} was deleted while it was being processed")
        return queue_page
