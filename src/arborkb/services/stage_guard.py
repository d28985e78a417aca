"""
Checks shared by the chunk-addressed stages (translation, structured
extraction): input resolution, phase ordering and the attempt guard.
"""
from sqlalchemy.orm import Session

from arborkb.dao import kb_dao, queue_dao
from arborkb.dao.queue_dao import PageClaim
from arborkb.errors import InvalidRequestError, NotFoundError, PrerequisiteError, StaleResultError
from arborkb.models.kb_chunk import KbChunk
from arborkb.models.processing_queue import ProcessingStatus
from arborkb.models.queue_page import QueuePage


def resolve_chunk(db: Session, chunk_id, source_id: str | None) -> KbChunk:
    """Validate chunkId and load the chunk it names."""
    if isinstance(chunk_id, bool) or not isinstance(chunk_id, int):
        raise InvalidRequestError("chunkId is required and must be a number")
    chunk = kb_dao.get_chunk(db, chunk_id)
    if chunk is None:
        raise NotFoundError(f"Chunk {chunk_id} not found")
    if source_id is not None and chunk.source_id != source_id:
        raise InvalidRequestError(f"Chunk {chunk_id} does not belong to source {source_id}")
    return chunk


def page_for_chunk(db: Session, chunk: KbChunk, claim: PageClaim | None) -> QueuePage | None:
    if claim is not None:
        return queue_dao.get_page(db, claim.page_id)
    return queue_dao.find_page_for_slot(db, chunk.source_id, chunk.page)


def check_page_ready(queue_page: QueuePage | None, phase: int, claim: PageClaim | None) -> None:
    """Refuse before any backend call when the previous phase is missing or the claim is gone."""
    if queue_page is None:
        if claim is not None:
            raise StaleResultError(f"Page {claim.page_id} was deleted while it was being processed")
        return
    if claim is not None and (queue_page.attempt != claim.attempt
                              or queue_page.status != ProcessingStatus.PROCESSING):
        raise StaleResultError(f"Page {queue_page.id} is no longer claimed by attempt {claim.attempt}")
    if getattr(queue_page, queue_dao.PHASE_COLUMNS[phase - 1]) is None:
        raise PrerequisiteError(
            f"Page {queue_page.id} has not completed phase {phase - 1}; run it before phase {phase}"
        )


def stamp_or_raise(db: Session, queue_page: QueuePage | None, phase: int, claim: PageClaim | None, **values) -> None:
    """Stamp the page; roll back the caller's writes and explain why when the guard refuses."""
    if queue_page is None:
        return
    page_id = queue_page.id
    if queue_dao.stamp_phase(db, page_id, phase, claim=claim, **values):
        return
    db.rollback()
    check_page_ready(queue_dao.get_page(db, page_id), phase, claim)
    raise StaleResultError(f"Page {page_id} changed while phase {phase} was running; result discarded")

