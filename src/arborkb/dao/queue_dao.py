"""
Data access for processing_queue / queue_pages.

Every page mutation is scoped by primary key or by a status guard in the
WHERE clause, and reports how many rows it actually touched. Callers own
the transaction: nothing here commits.
"""
from dataclasses import dataclass
from datetime import datetime
from sqlalchemy import func
from sqlalchemy.orm import Session
from arborkb.models.processing_queue import ProcessingQueue, ProcessingStatus
from arborkb.models.queue_page import QueuePage
import logging

logger = logging.getLogger(__name__)

PHASE_COLUMNS = {
    1: "phase1_completed_at",
    2: "phase2_completed_at",
    3: "phase3_completed_at",
}


@dataclass(frozen=True)
class PageClaim:
    """Identity of one processing attempt. Writes from an older attempt are discarded."""
    page_id: int
    attempt: int


# ── Batches ───────────────────────────────────────────────────────────────────

def get_batch(db: Session, batch_id: int) -> ProcessingQueue | None:
    return db.query(ProcessingQueue).filter_by(id=batch_id).first()


def list_batches(db: Session, source_id: str | None = None, limit: int = 100) -> list[ProcessingQueue]:
    q = db.query(ProcessingQueue)
    if source_id:
        q = q.filter_by(source_id=source_id)
    return q.order_by(ProcessingQueue.created_at.desc(), ProcessingQueue.id.desc()).limit(limit).all()


def next_batch_index(db: Session, source_id: str) -> int:
    current = db.query(func.max(ProcessingQueue.batch_index)).filter(ProcessingQueue.source_id == source_id).scalar()
    return (current or 0) + 1


def next_page_offset(db: Session, source_id: str) -> int:
    """First free source slot after every page already registered for the source."""
    current = (
        db.query(func.max(ProcessingQueue.page_offset + ProcessingQueue.total_pages))
        .filter(ProcessingQueue.source_id == source_id)
        .scalar()
    )
    return current or 0


def add_batch_with_pages(
        db: Session,
        source_id: str,
        name: str,
        page_count: int,
        page_offset: int,
        batch_index: int,
) -> ProcessingQueue:
    batch = ProcessingQueue(
        source_id   = source_id,
        batch_name  = name,
        batch_index = batch_index,
        page_offset = page_offset,
        total_pages = page_count,
        status      = ProcessingStatus.PENDING,
    )
    db.add(batch)
    db.flush()
    db.add_all([
        QueuePage(queue_id=batch.id, page_number=n, status=ProcessingStatus.PENDING)
        for n in range(1, page_count + 1)
    ])
    db.flush()
    return batch


def batches_with_pending_pages(db: Session, statuses: list[ProcessingStatus]) -> list[ProcessingQueue]:
    return (
        db.query(ProcessingQueue)
        .filter(ProcessingQueue.status.in_(statuses))
        .filter(ProcessingQueue.pages.any(QueuePage.status == ProcessingStatus.PENDING))
        .all()
    )


# ── Pages ─────────────────────────────────────────────────────────────────────

def get_page(db: Session, page_id: int) -> QueuePage | None:
    return db.query(QueuePage).filter_by(id=page_id).first()


def get_pages(db: Session, batch_id: int) -> list[QueuePage]:
    return db.query(QueuePage).filter_by(queue_id=batch_id).order_by(QueuePage.page_number).all()


def find_page_for_slot(db: Session, source_id: str, source_page: int) -> QueuePage | None:
    """Most recent batch page that maps onto image/chunk slot (source_id, source_page)."""
    return (
        db.query(QueuePage)
        .join(ProcessingQueue, QueuePage.queue_id == ProcessingQueue.id)
        .filter(ProcessingQueue.source_id == source_id)
        .filter(ProcessingQueue.page_offset + QueuePage.page_number == source_page)
        .order_by(ProcessingQueue.created_at.desc(), ProcessingQueue.id.desc())
        .first()
    )


def next_pending_page(db: Session, batch_id: int | None = None) -> QueuePage | None:
    q = (
        db.query(QueuePage)
        .join(ProcessingQueue, QueuePage.queue_id == ProcessingQueue.id)
        .filter(QueuePage.status == ProcessingStatus.PENDING)
        .filter(ProcessingQueue.status != ProcessingStatus.PAUSED)
    )
    if batch_id is not None:
        q = q.filter(QueuePage.queue_id == batch_id)
    return q.order_by(ProcessingQueue.created_at, ProcessingQueue.id, QueuePage.page_number).first()


def page_status_counts(db: Session, batch_id: int | None = None) -> dict[ProcessingStatus, int]:
    q = db.query(QueuePage.status, func.count(QueuePage.id))
    if batch_id is not None:
        q = q.filter(QueuePage.queue_id == batch_id)
    rows = q.group_by(QueuePage.status).all()
    counts = {status: 0 for status in ProcessingStatus}
    for status, count in rows:
        counts[status] = count
    return counts


def batch_status_counts(db: Session) -> dict[ProcessingStatus, int]:
    rows = db.query(ProcessingQueue.status, func.count(ProcessingQueue.id)).group_by(ProcessingQueue.status).all()
    counts = {status: 0 for status in ProcessingStatus}
    for status, count in rows:
        counts[status] = count
    return counts


def claim_page(db: Session, page_id: int) -> bool:
    """pending → processing, bumping the attempt counter. False if someone else got there first."""
    touched = (
        db.query(QueuePage)
        .filter(QueuePage.id == page_id, QueuePage.status == ProcessingStatus.PENDING)
        .update(
            {
                QueuePage.status       : ProcessingStatus.PROCESSING,
                QueuePage.attempt      : QueuePage.attempt + 1,
                QueuePage.error_message: None,
                QueuePage.processed_at : None,
            },
            synchronize_session=False,
        )
    )
    return touched == 1


def transition_pages(
        db: Session,
        from_statuses: list[ProcessingStatus],
        to_status: ProcessingStatus,
        batch_id: int | None = None,
        page_ids: list[int] | None = None,
        clear_phases: bool = False,
        error_message: str | None = None,
        processed_at: datetime | None = None,
) -> int:
    """Guarded bulk status change. Only rows currently in from_statuses are touched."""
    q = db.query(QueuePage).filter(QueuePage.status.in_(from_statuses))
    if batch_id is not None:
        q = q.filter(QueuePage.queue_id == batch_id)
    if page_ids is not None:
        q = q.filter(QueuePage.id.in_(page_ids))
    values = {
        QueuePage.status       : to_status,
        QueuePage.error_message: error_message,
        QueuePage.processed_at : processed_at,
    }
    if clear_phases:
        values.update({
            QueuePage.phase1_completed_at: None,
            QueuePage.phase2_completed_at: None,
            QueuePage.phase3_completed_at: None,
        })
    return q.update(values, synchronize_session=False)


def finish_claimed_page(
        db: Session,
        claim: PageClaim,
        status: ProcessingStatus,
        error_message: str | None = None,
) -> bool:
    """processing → completed|error for the claiming attempt only."""
    touched = (
        db.query(QueuePage)
        .filter(
            QueuePage.id == claim.page_id,
            QueuePage.attempt == claim.attempt,
            QueuePage.status == ProcessingStatus.PROCESSING,
        )
        .update(
            {
                QueuePage.status       : status,
                QueuePage.error_message: error_message,
                QueuePage.processed_at : datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    return touched == 1


def stamp_phase(
        db: Session,
        page_id: int,
        phase: int,
        claim: PageClaim | None = None,
        **values,
) -> bool:
    """
    Stamp phaseN_completed_at (plus any extra column values) on a page.
    Phase N>1 requires phase N-1 to be stamped already; phase 1 clears later
    phases because their output was derived from the previous text.
    With a claim, the page must still be processing under that attempt.
    """
    q = db.query(QueuePage).filter(QueuePage.id == page_id)
    if phase > 1:
        q = q.filter(getattr(QueuePage, PHASE_COLUMNS[phase - 1]).isnot(None))
    if claim is not None:
        q = q.filter(QueuePage.attempt == claim.attempt, QueuePage.status == ProcessingStatus.PROCESSING)

    update = {getattr(QueuePage, k): v for k, v in values.items()}
    update[getattr(QueuePage, PHASE_COLUMNS[phase])] = datetime.utcnow()
    if phase == 1:
        update[QueuePage.phase2_completed_at] = None
        update[QueuePage.phase3_completed_at] = None
    elif phase == 2:
        update[QueuePage.phase3_completed_at] = None
    return q.update(update, synchronize_session=False) == 1


def recover_inflight_pages(db: Session) -> int:
    """Pages a dead worker left in processing go back to pending."""
    return transition_pages(db, [ProcessingStatus.PROCESSING], ProcessingStatus.PENDING)


def delete_pages(db: Session, batch_id: int) -> int:
    return db.query(QueuePage).filter_by(queue_id=batch_id).delete(synchronize_session="fetch")


def set_current_stage(db: Session, batch_id: int, stage: str, page_number: int | None = None,
                      current_file: str | None = None) -> None:
    values = {ProcessingQueue.current_stage: stage}
    if page_number is not None:
        values[ProcessingQueue.current_page] = page_number
    if current_file is not None:
        values[ProcessingQueue.current_file] = current_file
    db.query(ProcessingQueue).filter_by(id=batch_id).update(values, synchronize_session=False)


def delete_batch(db: Session, batch_id: int) -> int:
    return db.query(ProcessingQueue).filter_by(id=batch_id).delete(synchronize_session="fetch")


def reset_pages(db: Session, batch_id: int) -> int:
    """Every page of the batch back to a fresh pending row; the attempt counter keeps counting."""
    return (
        db.query(QueuePage)
        .filter(QueuePage.queue_id == batch_id)
        .update(
            {
                QueuePage.status             : ProcessingStatus.PENDING,
                QueuePage.error_message      : None,
                QueuePage.processed_at       : None,
                QueuePage.extracted_text     : None,
                QueuePage.ocr_confidence     : None,
                QueuePage.figures_extracted  : None,
                QueuePage.phase1_completed_at: None,
                QueuePage.phase2_completed_at: None,
                QueuePage.phase3_completed_at: None,
            },
            synchronize_session=False,
        )
    )
