"""
Phase 3 — mine translated text for suggestions and queue them for curation.

Suggestions are linked to the page by (queue_id, page_number), so a chunk
without a queue page cannot be processed here. Phase 3 is stamped even when
nothing qualifies: an empty result is a recorded outcome.
"""
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from arborkb.config import settings
from arborkb.dao import kb_dao
from arborkb.dao.kb_dao import CATALOG_NAME_FIELDS
from arborkb.dao.queue_dao import PageClaim
from arborkb.errors import InvalidRequestError, PrerequisiteError
from arborkb.models.page_suggestion import PageSuggestion, SuggestionStatus
from arborkb.services.stage_guard import check_page_ready, page_for_chunk, resolve_chunk, stamp_or_raise
from arborkb.tools.chat_models import ensure_stage_configured
from arborkb.tools.extraction_tools import (
    LLMStructuredExtractor, StructuredExtractor, ValidatedSuggestion,
    confidence_band, validate_suggestions,
)

logger = logging.getLogger(__name__)


def attach_potential_matches(db: Session, suggestion: ValidatedSuggestion) -> ValidatedSuggestion:
    if suggestion.target_table not in CATALOG_NAME_FIELDS:
        return suggestion
    _, _, name_key = CATALOG_NAME_FIELDS[suggestion.target_table]
    matches = kb_dao.find_catalog_matches(
        db, suggestion.target_table, suggestion.suggested_data.get(name_key, ""), settings.fuzzy_match_limit
    )
    if matches:
        suggestion.suggested_data["potential_matches"] = matches
        label = suggestion.suggestion_type.value
        suggestion.rationale = f"{suggestion.rationale} | Found {len(matches)} potential {label} matches.".lstrip(" |")
    return suggestion


class StructuredExtractionStage:
    def __init__(self, extractor: StructuredExtractor | None = None):
        self.extractor = extractor or LLMStructuredExtractor()

    def run(
            self,
            db: Session,
            chunk_id: int,
            source_id: str | None = None,
            content: str | None = None,
            claim: PageClaim | None = None,
    ) -> dict:
        ensure_stage_configured()
        chunk = resolve_chunk(db, chunk_id, source_id)
        text = (content if content is not None else chunk.content_en or chunk.content or "").strip()
        if not text:
            raise InvalidRequestError("content is required and must be non-empty")
        queue_page = page_for_chunk(db, chunk, claim)
        if queue_page is None:
            raise PrerequisiteError(f"No queue page maps to {chunk.source_id} page {chunk.page}; "
                                    "suggestions need a page to attach to")
        check_page_ready(queue_page, 3, claim)
        queue_id, page_number = queue_page.queue_id, queue_page.page_number

        raw = self.extractor.extract(text)
        outcome = validate_suggestions(raw, settings.min_suggestion_confidence)
        accepted = [attach_potential_matches(db, s) for s in outcome.accepted]

        # a rerun replaces what curators have not looked at yet
        replaced = kb_dao.delete_suggestions(db, queue_id, page_number, only_pending=True)
        db.add_all([
            PageSuggestion(
                queue_id         = queue_id,
                page_number      = page_number,
                chunk_id         = chunk.id,
                suggestion_type  = s.suggestion_type,
                target_table     = s.target_table,
                suggested_data   = s.suggested_data,
                confidence_score = s.confidence_score,
                status           = SuggestionStatus.PENDING,
                notes            = s.rationale,
            )
            for s in accepted
        ])
        now = datetime.utcnow()
        kb_dao.merge_chunk_meta(
            chunk,
            processing_phase="phase3_extraction",
            suggestions_generated=len(accepted),
            suggestion_confidences=[s.confidence_score for s in accepted],
            suggestions_dropped={"below_floor": outcome.below_floor, "malformed": outcome.malformed},
            extraction_completed_at=now.isoformat(),
        )
        db.flush()
        stamp_or_raise(db, queue_page, 3, claim)
        db.commit()

        logger.info(
            "Structured extraction for %s page %d: %d accepted, %d below floor, %d malformed, %d replaced",
            chunk.source_id, chunk.page, len(accepted), outcome.below_floor, outcome.malformed, replaced,
        )
        return {
            "chunk_id"             : chunk.id,
            "suggestions_generated": len(accepted),
            "suggestions_dropped"  : outcome.below_floor + outcome.malformed,
            "suggestions"          : [
                {
                    "target_table"    : s.target_table,
                    "suggestion_type" : s.suggestion_type.value,
                    "confidence_score": s.confidence_score,
                    "confidence_band" : confidence_band(s.confidence_score),
                    "suggested_data"  : s.suggested_data,
                    "rationale"       : s.rationale,
                }
                for s in accepted
            ],
        }
