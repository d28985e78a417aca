"""
Processing queue routes.
POST   /queue/batches                       — register a batch of N pending pages
POST   /queue/uploads                       — store images and register them as batches
GET    /queue/batches                       — list batches
GET    /queue/batches/{id}                  — batch detail with its pages
DELETE /queue/batches/{id}                  — delete batch (admin)
POST   /queue/batches/{id}/process          — run the batch's pending pages in background
POST   /queue/process-next                  — run the oldest pending page now
POST   /queue/batches/{id}/retry-errors     — requeue every failed page
POST   /queue/batches/{id}/force-restart    — requeue unfinished pages of a stalled batch
POST   /queue/batches/{id}/restart          — wipe and restart the whole batch (admin, confirm)
GET    /queue/batches/{id}/suggestions      — suggestions produced for the batch's pages
POST   /queue/pages/{id}/retry|reprocess|pause|resume
GET    /queue/stats                         — page counts per status
POST   /queue/resume-pending                — wake batches that still own pending pages
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from arborkb.agents.page_pipeline import PipelineStages
from arborkb.auth import AuthContext, get_auth_context, require_role
from arborkb.config import settings
from arborkb.dao import kb_dao, queue_dao
from arborkb.database import SessionLocal, get_db
from arborkb.errors import QueueStateError
from arborkb.models.processing_queue import ProcessingQueue
from arborkb.models.queue_page import QueuePage
from arborkb.services import queue_coordinator
from arborkb.services.queue_coordinator import UploadedImage
from arborkb.storage.object_store import ObjectStore, get_object_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/queue", tags=["Queue"])


class CreateBatchRequest(BaseModel):
    source_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    page_count: int = Field(..., ge=1)


class RestartRequest(BaseModel):
    confirm: bool = False


def get_pipeline_stages() -> PipelineStages:
    return queue_coordinator.get_default_stages()


def _batch_dict(b: ProcessingQueue) -> dict:
    return {
        "id"                  : b.id,
        "source_id"           : b.source_id,
        "batch_name"          : b.batch_name,
        "batch_index"         : b.batch_index,
        "page_offset"         : b.page_offset,
        "total_pages"         : b.total_pages,
        "processed_pages"     : b.processed_pages,
        "progress_percentage" : b.progress_percentage,
        "status"              : b.status.value,
        "current_stage"       : b.current_stage,
        "current_page"        : b.current_page,
        "current_file"        : b.current_file,
        "processing_speed"    : b.processing_speed,
        "error_message"       : b.error_message,
        "started_at"          : str(b.started_at) if b.started_at else None,
        "completed_at"        : str(b.completed_at) if b.completed_at else None,
        "estimated_completion": str(b.estimated_completion) if b.estimated_completion else None,
        "created_at"          : str(b.created_at),
    }


def _page_dict(p: QueuePage) -> dict:
    return {
        "id"                 : p.id,
        "page_number"        : p.page_number,
        "status"             : p.status.value,
        "attempt"            : p.attempt,
        "error_message"      : p.error_message,
        "ocr_confidence"     : p.ocr_confidence,
        "figures_extracted"  : p.figures_extracted or [],
        "phase1_completed_at": str(p.phase1_completed_at) if p.phase1_completed_at else None,
        "phase2_completed_at": str(p.phase2_completed_at) if p.phase2_completed_at else None,
        "phase3_completed_at": str(p.phase3_completed_at) if p.phase3_completed_at else None,
        "processed_at"       : str(p.processed_at) if p.processed_at else None,
    }


def _process_batch_job(batch_id: int, stages: PipelineStages):
    """Background task: runs with its own session, the request's is already closed."""
    db: Session = SessionLocal()
    try:
        results = queue_coordinator.process_batch(db, batch_id, stages)
        logger.info("[Queue] Batch %d run finished: %d pages handled", batch_id, len(results))
    except Exception as e:
        logger.exception("[Queue] Batch %d run failed: %s", batch_id, e)
    finally:
        db.close()


# ── Batches ───────────────────────────────────────────────────────────────────

@router.post("/batches", status_code=201)
def create_batch(
    req: CreateBatchRequest,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
):
    try:
        batch = queue_coordinator.create_batch(db, req.source_id, req.name, req.page_count, actor=auth.current_user)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _batch_dict(batch)


@router.post("/uploads", status_code=201)
def upload_images(
    source_id: str = Form(...),
    files: list[UploadFile] = File(...),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    auth: AuthContext = Depends(get_auth_context),
):
    """Files are registered in the order sent, at most UPLOAD_BATCH_SIZE per batch."""
    uploads = [UploadedImage(f.filename or "page", f.file.read(), f.content_type) for f in files]
    try:
        batches = queue_coordinator.register_upload(
            db, store, source_id, uploads, settings.upload_batch_size, actor=auth.current_user
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"batches": [_batch_dict(b) for b in batches], "files": len(uploads)}


@router.get("/batches")
def list_batches(
    source_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return [_batch_dict(b) for b in queue_dao.list_batches(db, source_id, limit)]


@router.get("/batches/{batch_id}")
def get_batch(batch_id: int, db: Session = Depends(get_db)):
    batch = queue_dao.get_batch(db, batch_id)
    if not batch:
        raise HTTPException(status_code=404, detail="Batch not found")
    return {**_batch_dict(batch), "pages": [_page_dict(p) for p in queue_dao.get_pages(db, batch_id)]}


@router.delete("/batches/{batch_id}")
def delete_batch(
    batch_id: int,
    purge_images: bool = Query(True),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    auth: AuthContext = Depends(get_auth_context),
):
    require_role(auth)
    return queue_coordinator.delete_batch(db, batch_id, store, purge_images, actor=auth.current_user)


@router.post("/batches/{batch_id}/process", status_code=202)
def process_batch(
    batch_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    stages: PipelineStages = Depends(get_pipeline_stages),
):
    batch = queue_dao.get_batch(db, batch_id)
    if not batch:
        raise HTTPException(status_code=404, detail="Batch not found")
    background_tasks.add_task(_process_batch_job, batch_id, stages)
    return {"message": "Batch processing started", "batch_id": batch_id}


@router.post("/process-next")
def process_next(
    batch_id: int | None = Query(None),
    db: Session = Depends(get_db),
    stages: PipelineStages = Depends(get_pipeline_stages),
):
    result = queue_coordinator.process_next_page(db, batch_id, stages)
    if result is None:
        return {"processed": False, "message": "No pending pages"}
    return {"processed": True, **result}


@router.post("/batches/{batch_id}/retry-errors")
def retry_errors(batch_id: int, db: Session = Depends(get_db), auth: AuthContext = Depends(get_auth_context)):
    requeued = queue_coordinator.retry_all_errors(db, batch_id, actor=auth.current_user)
    return {"batch_id": batch_id, "requeued": requeued}


@router.post("/batches/{batch_id}/force-restart")
def force_restart(batch_id: int, db: Session = Depends(get_db), auth: AuthContext = Depends(get_auth_context)):
    try:
        requeued = queue_coordinator.force_restart(db, batch_id, actor=auth.current_user)
    except QueueStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"batch_id": batch_id, "requeued": requeued}


@router.post("/batches/{batch_id}/restart")
def restart_batch(
    batch_id: int,
    req: RestartRequest,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
):
    """Destructive. Needs the admin role and an explicit {"confirm": true}."""
    require_role(auth)
    try:
        summary = queue_coordinator.restart_entire_batch(db, batch_id, req.confirm, actor=auth.current_user)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"batch_id": batch_id, **summary}


@router.get("/batches/{batch_id}/suggestions")
def list_batch_suggestions(
    batch_id: int,
    page_number: int | None = Query(None),
    db: Session = Depends(get_db),
):
    if not queue_dao.get_batch(db, batch_id):
        raise HTTPException(status_code=404, detail="Batch not found")
    return [
        {
            "id"              : s.id,
            "page_number"     : s.page_number,
            "chunk_id"        : s.chunk_id,
            "suggestion_type" : s.suggestion_type.value,
            "target_table"    : s.target_table,
            "suggested_data"  : s.suggested_data,
            "confidence_score": s.confidence_score,
            "status"          : s.status.value,
            "notes"           : s.notes,
            "created_at"      : str(s.created_at),
        }
        for s in kb_dao.list_suggestions(db, batch_id, page_number)
    ]


# ── Pages ─────────────────────────────────────────────────────────────────────

_PAGE_ACTIONS = {
    "retry"    : queue_coordinator.retry_page,
    "reprocess": queue_coordinator.reprocess_page,
    "pause"    : queue_coordinator.pause_page,
    "resume"   : queue_coordinator.resume_page,
}


@router.post("/pages/{page_id}/{action}")
def page_action(
    page_id: int,
    action: str,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
):
    if action not in _PAGE_ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown page action '{action}'")
    try:
        changed = _PAGE_ACTIONS[action](db, page_id, actor=auth.current_user)
    except QueueStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    page = queue_dao.get_page(db, page_id)
    return {"page_id": page_id, "changed": changed, "status": page.status.value}


# ── Stats ─────────────────────────────────────────────────────────────────────

@router.get("/stats")
def stats(batch_id: int | None = Query(None), db: Session = Depends(get_db)):
    return queue_coordinator.get_stats(db, batch_id)


@router.post("/resume-pending")
def resume_pending(db: Session = Depends(get_db)):
    resumed = queue_coordinator.resume_pending_batches(db)
    return {"resumed_batches": resumed}
