"""
Phase 2 — normalize a chunk's text into the target language.
Never creates a chunk; a failure leaves phase2 unstamped so the page
resumes here without repeating OCR.
"""
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from arborkb.config import settings
from arborkb.dao import kb_dao
from arborkb.dao.queue_dao import PageClaim
from arborkb.errors import InvalidRequestError
from arborkb.services.stage_guard import check_page_ready, page_for_chunk, resolve_chunk, stamp_or_raise
from arborkb.states.state import TranslationResult
from arborkb.tools.chat_models import ensure_stage_configured
from arborkb.tools.translation_tools import LLMTranslator, Translator, find_unpreserved_terms

logger = logging.getLogger(__name__)


class TranslationStage:
    def __init__(self, translator: Translator | None = None):
        self.translator = translator or LLMTranslator()

    def run(
            self,
            db: Session,
            chunk_id: int,
            source_id: str | None = None,
            content: str | None = None,
            original_language: str | None = None,
            claim: PageClaim | None = None,
    ) -> dict:
        ensure_stage_configured()
        chunk = resolve_chunk(db, chunk_id, source_id)
        text = (content if content is not None else chunk.content or "").strip()
        if not text:
            raise InvalidRequestError("content is required and must be non-empty")
        queue_page = page_for_chunk(db, chunk, claim)
        check_page_ready(queue_page, 2, claim)
        page_id = queue_page.id if queue_page else None

        if len(text) < settings.min_translation_length:
            result = TranslationResult(
                translated_content=text,
                detected_language=settings.target_language,
                confidence=1.0,
            )
            logger.info("Chunk %d shorter than %d chars, passed through untranslated",
                        chunk.id, settings.min_translation_length)
        else:
            result = self.translator.translate(text)

        unpreserved = find_unpreserved_terms(text, result.translated_content)
        if unpreserved:
            logger.warning("Chunk %d translation dropped or altered terms: %s", chunk.id, unpreserved[:10])

        now = datetime.utcnow()
        chunk.content_en = result.translated_content
        chunk.lang = settings.target_language
        chunk.src_lang = result.detected_language or original_language or chunk.src_lang
        kb_dao.merge_chunk_meta(
            chunk,
            processing_phase="phase2_translation",
            translation_confidence=result.confidence,
            original_language=chunk.src_lang,
            unpreserved_terms=unpreserved,
            translation_completed_at=now.isoformat(),
        )
        db.flush()
        stamp_or_raise(db, queue_page, 2, claim)
        db.commit()

        logger.info("Translated chunk %d (%s → %s, confidence=%.2f, page=%s)",
                    chunk.id, chunk.src_lang, settings.target_language, result.confidence, page_id)
        return {
            "chunk_id"          : chunk.id,
            "translated_content": result.translated_content,
            "detected_language" : result.detected_language,
            "confidence"        : result.confidence,
            "unpreserved_terms" : unpreserved,
        }
