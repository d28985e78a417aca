"""
Page pipeline — LangGraph StateGraph over one claimed page.
Nodes: extract_text → translate → extract_structured
The entry node is the page's first missing phase, so a retried page resumes
where it failed. A node that fails records the error and routes to END;
the coordinator decides what the page's final status is.
"""
import logging
from dataclasses import dataclass, field

from langgraph.graph import StateGraph, START, END
from sqlalchemy.orm import Session

from arborkb.dao import queue_dao
from arborkb.dao.queue_dao import PageClaim
from arborkb.errors import ResourceUnreachableError, StageError, StaleResultError
from arborkb.services.structured_extraction import StructuredExtractionStage
from arborkb.services.text_extraction import TextExtractionStage
from arborkb.services.translation import TranslationStage
from arborkb.states.state import PageState

logger = logging.getLogger(__name__)

STAGE_EXTRACTION = "extraction"
STAGE_TRANSLATION = "translation"
STAGE_STRUCTURED = "structured_extraction"

_NODE_FOR_STAGE = {
    STAGE_EXTRACTION : "extract_text",
    STAGE_TRANSLATION: "translate",
    STAGE_STRUCTURED : "extract_structured",
}


@dataclass
class PipelineStages:
    """The three stage handlers; swap any of them for a fake in tests."""
    text: TextExtractionStage = field(default_factory=TextExtractionStage)
    translation: TranslationStage = field(default_factory=TranslationStage)
    structured: StructuredExtractionStage = field(default_factory=StructuredExtractionStage)


def _claim(state: PageState) -> PageClaim:
    return PageClaim(page_id=state["page_id"], attempt=state["attempt"])


def _failure(stage: str, error: StageError) -> dict:
    if isinstance(error, StaleResultError):
        logger.warning("Discarding %s result: %s", stage, error.message)
        return {"stale": True}
    logger.error("Stage %s failed for page: %s", stage, error.message)
    return {"error": {"stage": stage, "type": error.error_type, "message": error.message}}


def _mark_stage(db: Session, state: PageState, stage: str) -> None:
    queue_dao.set_current_stage(db, state["batch_id"], stage)
    db.commit()


def node_extract_text(state: PageState, db: Session, stages: PipelineStages) -> dict:
    """Phase 1: OCR the slot's stored image."""
    _mark_stage(db, state, STAGE_EXTRACTION)
    if not state.get("image_uri"):
        return _failure(STAGE_EXTRACTION, ResourceUnreachableError(
            f"No stored image for {state['source_id']} page {state['source_page']}"
        ))
    try:
        result = stages.text.run(db, state["source_id"], state["source_page"], state["image_uri"], claim=_claim(state))
    except StageError as e:
        db.rollback()
        return _failure(STAGE_EXTRACTION, e)
    return {
        "chunk_id"         : result["chunk_id"],
        "detected_language": result["detected_language"],
        "completed_stage"  : STAGE_EXTRACTION,
    }


def node_translate(state: PageState, db: Session, stages: PipelineStages) -> dict:
    """Phase 2: translate the chunk in place."""
    _mark_stage(db, state, STAGE_TRANSLATION)
    try:
        result = stages.translation.run(
            db, state["chunk_id"], state["source_id"],
            original_language=state.get("detected_language"), claim=_claim(state),
        )
    except StageError as e:
        db.rollback()
        return _failure(STAGE_TRANSLATION, e)
    return {"detected_language": result["detected_language"], "completed_stage": STAGE_TRANSLATION}


def node_extract_structured(state: PageState, db: Session, stages: PipelineStages) -> dict:
    """Phase 3: suggestions for curation."""
    _mark_stage(db, state, STAGE_STRUCTURED)
    try:
        result = stages.structured.run(db, state["chunk_id"], state["source_id"], claim=_claim(state))
    except StageError as e:
        db.rollback()
        return _failure(STAGE_STRUCTURED, e)
    return {"suggestions_created": result["suggestions_generated"], "completed_stage": STAGE_STRUCTURED}


def _route_entry(state: PageState) -> str:
    return _NODE_FOR_STAGE[state.get("resume_from") or STAGE_EXTRACTION]


def _continue_to(next_node: str):
    def route(state: PageState) -> str:
        if state.get("error") or state.get("stale"):
            return END
        return next_node
    return route


def build_page_pipeline(db: Session, stages: PipelineStages):
    """Build and compile the page StateGraph with DB session and stage handlers injected."""
    graph = StateGraph(PageState)

    graph.add_node("extract_text", lambda state: node_extract_text(state, db, stages))
    graph.add_node("translate", lambda state: node_translate(state, db, stages))
    graph.add_node("extract_structured", lambda state: node_extract_structured(state, db, stages))

    graph.add_conditional_edges(START, _route_entry, ["extract_text", "translate", "extract_structured"])
    graph.add_conditional_edges("extract_text", _continue_to("translate"), ["translate", END])
    graph.add_conditional_edges("translate", _continue_to("extract_structured"), ["extract_structured", END])
    graph.add_edge("extract_structured", END)

    return graph.compile()
