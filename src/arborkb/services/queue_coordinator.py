"""
Queue coordinator — owns the batch/page state machine.

Page:  pending → processing → completed | error
       error → pending (retry), completed → pending (reprocess),
       processing → paused (hold), paused → pending (resume)
Batch: derived from its pages by recompute_batch(), never edited by hand.

Retry-style operations are status-guarded in SQL, so calling them twice
has no effect beyond the first call. Events are published only after the
commit that caused them.
"""
import logging
import posixpath
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from arborkb.agents.page_pipeline import (
    PipelineStages, STAGE_EXTRACTION, STAGE_STRUCTURED, STAGE_TRANSLATION, build_page_pipeline,
)
from arborkb.dao import kb_dao, queue_dao
from arborkb.dao.queue_dao import PageClaim
from arborkb.errors import NotFoundError, QueueStateError
from arborkb.models.kb_image import KbImage
from arborkb.models.processing_queue import ProcessingQueue, ProcessingStatus
from arborkb.models.queue_page import QueuePage
from arborkb.services.audit_service import log_event
from arborkb.services.events import BatchChanged, EventBus, PageChanged, QueueWake, event_bus
from arborkb.storage.object_store import ObjectStore, build_image_path, is_absolute_url

logger = logging.getLogger(__name__)

_MAX_CLAIM_ATTEMPTS = 5

_default_stages: PipelineStages | None = None


def get_default_stages() -> PipelineStages:
    global _default_stages
    if _default_stages is None:
        _default_stages = PipelineStages()
    return _default_stages


@dataclass
class UploadedImage:
    filename: str
    data: bytes
    content_type: str | None = None


# ── Helpers ───────────────────────────────────────────────────────────────────

def _require_batch(db: Session, batch_id: int) -> ProcessingQueue:
    batch = queue_dao.get_batch(db, batch_id)
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found")
    return batch


def _require_page(db: Session, page_id: int) -> QueuePage:
    page = queue_dao.get_page(db, page_id)
    if page is None:
        raise NotFoundError(f"Page {page_id} not found")
    return page


def _slots(batch: ProcessingQueue) -> list[int]:
    return [batch.page_offset + n for n in range(1, batch.total_pages + 1)]


def _publish_batch(bus: EventBus, batch: ProcessingQueue) -> None:
    bus.publish(BatchChanged(
        batch_id=batch.id,
        status=batch.status.value,
        processed_pages=batch.processed_pages,
        total_pages=batch.total_pages,
        progress_percentage=batch.progress_percentage,
    ))


def _image_meta(upload: UploadedImage, batch_index: int) -> dict:
    return {
        "original_filename": upload.filename,
        "size"             : len(upload.data),
        "content_type"     : upload.content_type,
        "batch"            : batch_index,
        "uploaded_at"      : datetime.utcnow().isoformat(),
        "ocr_processed"    : False,
    }


# ── Aggregation ───────────────────────────────────────────────────────────────

def derive_batch_status(counts: dict[ProcessingStatus, int], total: int, started: bool) -> ProcessingStatus:
    if total > 0 and counts[ProcessingStatus.COMPLETED] == total:
        return ProcessingStatus.COMPLETED
    if counts[ProcessingStatus.PROCESSING]:
        return ProcessingStatus.PROCESSING
    if counts[ProcessingStatus.PENDING]:
        return ProcessingStatus.PROCESSING if started else ProcessingStatus.PENDING
    if counts[ProcessingStatus.ERROR]:
        return ProcessingStatus.ERROR
    if counts[ProcessingStatus.PAUSED]:
        return ProcessingStatus.PAUSED
    return ProcessingStatus.PENDING


def recompute_batch(db: Session, batch_id: int, commit: bool = True) -> ProcessingQueue:
    """Rewrite every derived batch column from the current page rows."""
    batch = _require_batch(db, batch_id)
    counts = queue_dao.page_status_counts(db, batch_id)
    total = batch.total_pages
    completed = counts[ProcessingStatus.COMPLETED]
    errors = counts[ProcessingStatus.ERROR]
    now = datetime.utcnow()

    status = derive_batch_status(counts, total, started=batch.started_at is not None)
    batch.status = status
    batch.processed_pages = min(completed, total)
    batch.progress_percentage = round(completed * 100 / total) if total else 0
    batch.error_message = f"{errors} pages failed to process" if errors else None

    if status == ProcessingStatus.COMPLETED:
        batch.completed_at = batch.completed_at or now
        batch.current_stage = "completed"
        batch.estimated_completion = None
    else:
        batch.completed_at = None
        if status == ProcessingStatus.ERROR:
            batch.current_stage = "error"

    if batch.started_at and completed:
        elapsed = max((now - batch.started_at).total_seconds(), 1.0)
        batch.processing_speed = round(completed / (elapsed / 60), 2)
        remaining = counts[ProcessingStatus.PENDING] + counts[ProcessingStatus.PROCESSING]
        if remaining and status != ProcessingStatus.COMPLETED:
            batch.estimated_completion = now + timedelta(seconds=elapsed / completed * remaining)
        else:
            batch.estimated_completion = None

    if commit:
        db.commit()
    return batch


def get_stats(db: Session, batch_id: int | None = None) -> dict:
    """Counts per page status, always read from queue_pages."""
    if batch_id is not None:
        _require_batch(db, batch_id)
    counts = queue_dao.page_status_counts(db, batch_id)
    stats = {status.value: count for status, count in counts.items()}
    stats["total"] = sum(counts.values())
    if batch_id is None:
        stats["batches"] = {status.value: count for status, count in queue_dao.batch_status_counts(db).items()}
    return stats


# ── Registration ──────────────────────────────────────────────────────────────

def create_batch(
        db: Session,
        source_id: str,
        name: str,
        page_count: int,
        page_offset: int | None = None,
        batch_index: int | None = None,
        actor: str = "system",
        bus: EventBus = event_bus,
) -> ProcessingQueue:
    """Batch row plus pages 1..page_count, all pending, in one commit."""
    if not source_id or not source_id.strip():
        raise ValueError("source_id is required")
    if page_count < 1:
        raise ValueError("page_count must be at least 1")
    try:
        batch = queue_dao.add_batch_with_pages(
            db,
            source_id=source_id,
            name=name,
            page_count=page_count,
            page_offset=page_offset if page_offset is not None else queue_dao.next_page_offset(db, source_id),
            batch_index=batch_index if batch_index is not None else queue_dao.next_batch_index(db, source_id),
        )
        log_event(db, "BATCH_CREATED", "batch", batch.id, actor,
                  {"source_id": source_id, "pages": page_count, "page_offset": batch.page_offset}, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Created batch %d '%s' for %s with %d pages", batch.id, name, source_id, page_count)
    _publish_batch(bus, batch)
    bus.publish(QueueWake(batch.id, "batch created"))
    return batch


def register_upload(
        db: Session,
        store: ObjectStore,
        source_id: str,
        files: list[UploadedImage],
        batch_size: int,
        actor: str = "system",
        bus: EventBus = event_bus,
) -> list[ProcessingQueue]:
    """
    Store page images and register them as batches of at most batch_size
    pages, named "Batch i of N". Files are processed in the order given.
    """
    if not files:
        raise ValueError("at least one file is required")
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    groups = [files[i:i + batch_size] for i in range(0, len(files), batch_size)]
    batches = []
    for i, group in enumerate(groups, start=1):
        batch_index = queue_dao.next_batch_index(db, source_id)
        page_offset = queue_dao.next_page_offset(db, source_id)
        overwritten = []
        stale_uris = []
        try:
            for k, upload in enumerate(group, start=1):
                slot = page_offset + k
                path = build_image_path(source_id, batch_index, slot, upload.filename)
                existing = kb_dao.get_image(db, source_id, slot)
                old_uri = existing.uri if existing else None
                store.put(path, upload.data, upload.content_type)
                _, replaced = kb_dao.upsert_image(db, source_id, slot, path, _image_meta(upload, batch_index))
                if replaced:
                    overwritten.append(slot)
                    if old_uri and old_uri != path and not is_absolute_url(old_uri):
                        stale_uris.append(old_uri)
            batch = queue_dao.add_batch_with_pages(
                db, source_id, f"Batch {i} of {len(groups)}", len(group), page_offset, batch_index,
            )
            log_event(db, "BATCH_CREATED", "batch", batch.id, actor,
                      {"source_id": source_id, "pages": len(group), "overwritten_slots": overwritten},
                      commit=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        for uri in (store.remove(stale_uris) if stale_uris else []):
            logger.warning("Replaced image %s of %s could not be removed", uri, source_id)
        logger.info("Uploaded %d pages for %s as batch %d (%s)", len(group), source_id, batch.id, batch.batch_name)
        batches.append(batch)
        _publish_batch(bus, batch)
    bus.publish(QueueWake(None, "upload registered"))
    return batches


def upload_page_image(
        db: Session,
        store: ObjectStore,
        source_id: str,
        page: int,
        upload: UploadedImage,
        actor: str = "system",
) -> tuple[KbImage, bool]:
    """Put one image into slot (source_id, page), overwriting whatever is there."""
    if page < 1:
        raise ValueError("page must be at least 1")
    existing = kb_dao.get_image(db, source_id, page)
    owner = queue_dao.find_page_for_slot(db, source_id, page)
    batch_index = owner.batch.batch_index if owner else ((existing.meta or {}).get("batch", 1) if existing else 1)
    old_uri = existing.uri if existing else None

    path = build_image_path(source_id, batch_index, page, upload.filename)
    store.put(path, upload.data, upload.content_type)
    try:
        image, overwritten = kb_dao.upsert_image(db, source_id, page, path, _image_meta(upload, batch_index))
        if overwritten:
            log_event(db, "IMAGE_OVERWRITTEN", "image", f"{source_id}/{page}", actor,
                      {"previous_uri": old_uri, "uri": path}, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    if old_uri and old_uri != path and not is_absolute_url(old_uri):
        failed = store.remove([old_uri])
        if failed:
            logger.warning("Previous image %s for %s/%d could not be removed", old_uri, source_id, page)
    logger.info("Stored image for %s page %d (%s)", source_id, page, "overwritten" if overwritten else "new")
    return image, overwritten


# ── Operator transitions ──────────────────────────────────────────────────────

def _page_transition(
        db: Session,
        page_id: int,
        allowed_from: list[ProcessingStatus],
        to_status: ProcessingStatus,
        event_type: str,
        actor: str,
        bus: EventBus,
        clear_phases: bool = False,
        wake: bool = True,
) -> bool:
    page = _require_page(db, page_id)
    previous, batch_id = page.status, page.queue_id
    if previous == to_status:
        return False
    if previous not in allowed_from:
        allowed = ", ".join(s.value for s in allowed_from)
        raise QueueStateError(f"Page {page_id} is {previous.value}; expected one of: {allowed}")

    touched = queue_dao.transition_pages(db, allowed_from, to_status, page_ids=[page_id], clear_phases=clear_phases)
    if not touched:
        db.rollback()
        logger.info("Page %d changed state concurrently; %s skipped", page_id, event_type)
        return False
    log_event(db, event_type, "page", page_id, actor, {"previous_status": previous.value}, commit=False)
    batch = recompute_batch(db, batch_id, commit=False)
    db.commit()

    bus.publish(PageChanged(page_id, batch_id, to_status.value))
    _publish_batch(bus, batch)
    if wake and to_status == ProcessingStatus.PENDING:
        bus.publish(QueueWake(batch_id, event_type.lower()))
    return True


def retry_page(db: Session, page_id: int, actor: str = "system", bus: EventBus = event_bus) -> bool:
    """error → pending. A page already pending is left alone and no wake is sent."""
    return _page_transition(db, page_id, [ProcessingStatus.ERROR], ProcessingStatus.PENDING,
                            "PAGE_RETRIED", actor, bus)


def reprocess_page(db: Session, page_id: int, actor: str = "system", bus: EventBus = event_bus) -> bool:
    """completed → pending with every phase cleared, so OCR runs again."""
    return _page_transition(db, page_id, [ProcessingStatus.COMPLETED], ProcessingStatus.PENDING,
                            "PAGE_REPROCESSED", actor, bus, clear_phases=True)


def pause_page(db: Session, page_id: int, actor: str = "system", bus: EventBus = event_bus) -> bool:
    """processing → paused. The in-flight stage call finishes but its result is discarded."""
    return _page_transition(db, page_id, [ProcessingStatus.PROCESSING], ProcessingStatus.PAUSED,
                            "PAGE_PAUSED", actor, bus)


def resume_page(db: Session, page_id: int, actor: str = "system", bus: EventBus = event_bus) -> bool:
    return _page_transition(db, page_id, [ProcessingStatus.PAUSED], ProcessingStatus.PENDING,
                            "PAGE_RESUMED", actor, bus)


def retry_all_errors(db: Session, batch_id: int, actor: str = "system", bus: EventBus = event_bus) -> int:
    """Every page currently in error goes back to pending. Returns the number requeued."""
    _require_batch(db, batch_id)
    requeued = queue_dao.transition_pages(db, [ProcessingStatus.ERROR], ProcessingStatus.PENDING, batch_id=batch_id)
    if not requeued:
        db.rollback()
        return 0
    log_event(db, "ERRORS_RETRIED", "batch", batch_id, actor, {"requeued": requeued}, commit=False)
    batch = recompute_batch(db, batch_id, commit=False)
    db.commit()
    logger.info("Requeued %d failed pages in batch %d", requeued, batch_id)
    _publish_batch(bus, batch)
    bus.publish(QueueWake(batch_id, "errors retried"))
    return requeued


def force_restart(db: Session, batch_id: int, actor: str = "system", bus: EventBus = event_bus) -> int:
    """
    Requeue every unfinished page of a completed or stalled batch; completed
    pages are kept. A worker still holding one of the stalled pages will have
    its result discarded by the attempt guard.
    """
    batch = _require_batch(db, batch_id)
    counts = queue_dao.page_status_counts(db, batch_id)
    if counts[ProcessingStatus.COMPLETED] >= batch.total_pages:
        raise QueueStateError(f"Batch {batch_id} has no unfinished pages")
    if batch.status not in (ProcessingStatus.COMPLETED, ProcessingStatus.PROCESSING):
        raise QueueStateError(
            f"Batch {batch_id} is {batch.status.value}; force restart applies to completed or stalled batches"
        )
    requeued = queue_dao.transition_pages(
        db,
        [ProcessingStatus.PROCESSING, ProcessingStatus.ERROR, ProcessingStatus.PAUSED],
        ProcessingStatus.PENDING,
        batch_id=batch_id,
    )
    batch.completed_at = None
    batch.started_at = batch.started_at or datetime.utcnow()
    log_event(db, "BATCH_FORCE_RESTARTED", "batch", batch_id, actor,
              {"requeued": requeued, "already_pending": counts[ProcessingStatus.PENDING]}, commit=False)
    batch = recompute_batch(db, batch_id, commit=False)
    db.commit()
    logger.info("Force-restarted batch %d: %d pages requeued", batch_id, requeued)
    _publish_batch(bus, batch)
    bus.publish(QueueWake(batch_id, "force restart"))
    return requeued


def restart_entire_batch(
        db: Session,
        batch_id: int,
        confirm: bool,
        actor: str = "system",
        bus: EventBus = event_bus,
) -> dict:
    """
    Destructive: drop the chunks and suggestions of the batch and reset every
    page to a fresh pending row. Stored images are kept; they are the input.
    """
    if not confirm:
        raise ValueError("restarting an entire batch discards all of its results; pass confirm=true")
    batch = _require_batch(db, batch_id)
    slots = _slots(batch)
    try:
        suggestions = kb_dao.delete_suggestions(db, batch_id)
        chunks = kb_dao.delete_chunks_for_slots(db, batch.source_id, slots)
        for page in slots:
            image = kb_dao.get_image(db, batch.source_id, page)
            if image is not None:
                kb_dao.merge_image_meta(image, ocr_processed=False)
        pages_reset = queue_dao.reset_pages(db, batch_id)
        batch.status = ProcessingStatus.PENDING
        batch.processed_pages = 0
        batch.progress_percentage = 0
        batch.error_message = None
        batch.current_stage = None
        batch.current_page = None
        batch.current_file = None
        batch.processing_speed = None
        batch.started_at = None
        batch.completed_at = None
        batch.estimated_completion = None
        summary = {"pages_reset": pages_reset, "chunks_deleted": chunks, "suggestions_deleted": suggestions}
        log_event(db, "BATCH_RESTARTED", "batch", batch_id, actor, summary, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Restarted batch %d from scratch: %s", batch_id, summary)
    _publish_batch(bus, batch)
    bus.publish(QueueWake(batch_id, "batch restarted"))
    return summary


def delete_batch(
        db: Session,
        batch_id: int,
        store: ObjectStore,
        purge_images: bool = True,
        actor: str = "system",
) -> dict:
    """
    Remove a batch with its pages, chunks and suggestions. With purge_images
    the slot images go too, blobs first. Without it the images are left for
    the orphan reconciler.
    """
    batch = _require_batch(db, batch_id)
    source_id, slots = batch.source_id, _slots(batch)
    blobs_failed: list[str] = []
    images = 0
    if purge_images:
        slot_set = set(slots)
        uris = [
            img.uri for img in kb_dao.list_images(db, source_id)
            if img.page in slot_set and not is_absolute_url(img.uri)
        ]
        blobs_failed = store.remove(uris) if uris else []
        for uri in blobs_failed:
            logger.warning("Blob %s of deleted batch %d could not be removed", uri, batch_id)
    try:
        suggestions = kb_dao.delete_suggestions(db, batch_id)
        chunks = kb_dao.delete_chunks_for_slots(db, source_id, slots)
        if purge_images:
            images = kb_dao.delete_images_for_slots(db, source_id, slots)
        pages = queue_dao.delete_pages(db, batch_id)
        queue_dao.delete_batch(db, batch_id)
        summary = {
            "pages_deleted"      : pages,
            "chunks_deleted"     : chunks,
            "suggestions_deleted": suggestions,
            "images_deleted"     : images,
            "blobs_failed"       : blobs_failed,
        }
        log_event(db, "BATCH_DELETED", "batch", batch_id, actor, summary, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Deleted batch %d of %s: %s", batch_id, source_id, summary)
    return summary


# ── Driving the pipeline ──────────────────────────────────────────────────────

def _resume_point(db: Session, page: QueuePage, source_id: str) -> tuple[str, int | None]:
    chunk = kb_dao.get_chunk_for_slot(db, source_id, page.source_page)
    if page.phase1_completed_at is None or chunk is None:
        return STAGE_EXTRACTION, chunk.id if chunk else None
    if page.phase2_completed_at is None:
        return STAGE_TRANSLATION, chunk.id
    return STAGE_STRUCTURED, chunk.id


def _claim_next(db: Session, batch_id: int | None) -> QueuePage | None:
    for _ in range(_MAX_CLAIM_ATTEMPTS):
        page = queue_dao.next_pending_page(db, batch_id)
        if page is None:
            return None
        if queue_dao.claim_page(db, page.id):
            return page
        db.rollback()
    return None


def process_next_page(
        db: Session,
        batch_id: int | None = None,
        stages: PipelineStages | None = None,
        bus: EventBus = event_bus,
) -> dict | None:
    """
    Claim the oldest pending page, run it through the remaining stages and
    record the outcome. Returns None when there is nothing to do.
    """
    page = _claim_next(db, batch_id)
    if page is None:
        return None

    batch = page.batch
    source_page = batch.page_offset + page.page_number
    image = kb_dao.get_image(db, batch.source_id, source_page)
    batch.started_at = batch.started_at or datetime.utcnow()
    batch.status = ProcessingStatus.PROCESSING
    batch.completed_at = None
    batch.current_page = page.page_number
    batch.current_file = posixpath.basename(image.uri) if image else None
    db.commit()

    claim = PageClaim(page_id=page.id, attempt=page.attempt)
    batch_id, page_number = batch.id, page.page_number
    resume_from, chunk_id = _resume_point(db, page, batch.source_id)
    bus.publish(PageChanged(page.id, batch_id, ProcessingStatus.PROCESSING.value))
    logger.info("Processing batch %d page %d (attempt %d) from %s", batch_id, page_number, claim.attempt, resume_from)

    graph = build_page_pipeline(db, stages or get_default_stages())
    try:
        result = graph.invoke({
            "page_id"            : claim.page_id,
            "attempt"            : claim.attempt,
            "batch_id"           : batch_id,
            "source_id"          : batch.source_id,
            "source_page"        : source_page,
            "image_uri"          : image.uri if image else None,
            "resume_from"        : resume_from,
            "chunk_id"           : chunk_id,
            "suggestions_created": 0,
            "stale"              : False,
            "error"              : None,
        })
    except Exception as e:
        logger.exception("Page pipeline crashed for batch %d page %d: %s", batch_id, page_number, e)
        db.rollback()
        result = {"error": {"stage": "pipeline", "type": "InternalError", "message": str(e)}}

    outcome = {"page_id": claim.page_id, "batch_id": batch_id, "page_number": page_number}
    if result.get("stale"):
        return {**outcome, "status": "discarded"}

    error = result.get("error")
    if error:
        status = ProcessingStatus.ERROR
        message = f"[{error['stage']}] {error['type']}: {error['message']}"
    else:
        status, message = ProcessingStatus.COMPLETED, None

    if not queue_dao.finish_claimed_page(db, claim, status, message):
        db.rollback()
        logger.warning("Page %d was reset while running; %s outcome discarded", claim.page_id, status.value)
        return {**outcome, "status": "discarded"}
    batch = recompute_batch(db, batch_id, commit=False)
    db.commit()

    bus.publish(PageChanged(claim.page_id, batch_id, status.value))
    _publish_batch(bus, batch)
    return {
        **outcome,
        "status"             : status.value,
        "error"              : message,
        "suggestions_created": result.get("suggestions_created", 0),
    }


def process_batch(db: Session, batch_id: int, stages: PipelineStages | None = None,
                  bus: EventBus = event_bus) -> list[dict]:
    """Run a batch's pending pages one after another."""
    _require_batch(db, batch_id)
    results = []
    while (result := process_next_page(db, batch_id, stages, bus)) is not None:
        results.append(result)
    return results


def drain_queue(db: Session, max_pages: int, stages: PipelineStages | None = None,
                bus: EventBus = event_bus) -> int:
    processed = 0
    while processed < max_pages and process_next_page(db, None, stages, bus) is not None:
        processed += 1
    return processed


# ── Startup recovery ──────────────────────────────────────────────────────────

def recover_inflight(db: Session) -> int:
    """Return pages a dead worker left in processing to pending."""
    stuck_batches = {
        row.queue_id for row in db.query(QueuePage.queue_id).filter(QueuePage.status == ProcessingStatus.PROCESSING)
    }
    recovered = queue_dao.recover_inflight_pages(db)
    for batch_id in stuck_batches:
        recompute_batch(db, batch_id, commit=False)
    db.commit()
    if recovered:
        logger.warning("Recovered %d in-flight pages across %d batches", recovered, len(stuck_batches))
    return recovered


def resume_pending_batches(db: Session, bus: EventBus = event_bus) -> list[int]:
    """Re-derive batches that still own pending pages and wake the worker for them."""
    batches = queue_dao.batches_with_pending_pages(
        db, [ProcessingStatus.COMPLETED, ProcessingStatus.ERROR, ProcessingStatus.PROCESSING, ProcessingStatus.PENDING]
    )
    for batch in batches:
        recompute_batch(db, batch.id, commit=False)
    db.commit()
    for batch in batches:
        _publish_batch(bus, batch)
        bus.publish(QueueWake(batch.id, "pending pages resumed"))
    return [b.id for b in batches]
