"""
Data access for kb_images, kb_chunks, page_suggestions and the canonical
catalog tables. Callers own the transaction.
"""
import difflib
from sqlalchemy import select
from sqlalchemy.orm import Session
from arborkb.models.catalog import Species, Defect, Fungus
from arborkb.models.kb_chunk import KbChunk
from arborkb.models.kb_image import KbImage
from arborkb.models.page_suggestion import PageSuggestion, SuggestionStatus
from arborkb.models.processing_queue import ProcessingQueue
import logging

logger = logging.getLogger(__name__)

# target_table → (catalog model, name column, suggested_data key)
CATALOG_NAME_FIELDS = {
    "species": (Species, Species.scientific_name, "scientific_name"),
    "defects": (Defect, Defect.name, "name"),
    "fungi"  : (Fungus, Fungus.scientific_name, "scientific_name"),
}


# ── Images ────────────────────────────────────────────────────────────────────

def get_image(db: Session, source_id: str, page: int) -> KbImage | None:
    return db.query(KbImage).filter_by(source_id=source_id, page=page).first()


def list_images(db: Session, source_id: str) -> list[KbImage]:
    return db.query(KbImage).filter_by(source_id=source_id).order_by(KbImage.page).all()


def upsert_image(
        db: Session,
        source_id: str,
        page: int,
        uri: str,
        meta: dict,
        caption: str | None = None,
) -> tuple[KbImage, bool]:
    """Insert or overwrite the image in slot (source_id, page). Returns (image, overwritten)."""
    image = get_image(db, source_id, page)
    overwritten = image is not None
    if image is None:
        image = KbImage(source_id=source_id, page=page, uri=uri, meta=meta, caption=caption)
        db.add(image)
    else:
        image.uri = uri
        image.meta = meta
        image.caption = caption
    db.flush()
    return image, overwritten


def merge_image_meta(image: KbImage, **values) -> None:
    # reassign so the JSON column is seen as dirty
    image.meta = {**(image.meta or {}), **values}


def find_orphan_images(db: Session) -> list[KbImage]:
    """Images whose source has no batch row at all."""
    batch_sources = select(ProcessingQueue.source_id).distinct()
    return (
        db.query(KbImage)
        .filter(KbImage.source_id.not_in(batch_sources))
        .order_by(KbImage.source_id, KbImage.page)
        .all()
    )


def delete_orphan_image(db: Session, source_id: str, page: int) -> int:
    """Delete the slot only if it is still orphaned — a batch may have been registered since."""
    batch_sources = select(ProcessingQueue.source_id).distinct()
    return (
        db.query(KbImage)
        .filter(KbImage.source_id == source_id, KbImage.page == page)
        .filter(KbImage.source_id.not_in(batch_sources))
        .delete(synchronize_session="fetch")
    )


def delete_images_for_slots(db: Session, source_id: str, pages: list[int]) -> int:
    if not pages:
        return 0
    return (
        db.query(KbImage)
        .filter(KbImage.source_id == source_id, KbImage.page.in_(pages))
        .delete(synchronize_session="fetch")
    )


# ── Chunks ────────────────────────────────────────────────────────────────────

def get_chunk(db: Session, chunk_id: int) -> KbChunk | None:
    return db.query(KbChunk).filter_by(id=chunk_id).first()


def get_chunk_for_slot(db: Session, source_id: str, page: int) -> KbChunk | None:
    return db.query(KbChunk).filter_by(source_id=source_id, page=page).first()


def upsert_chunk(
        db: Session,
        source_id: str,
        page: int,
        content: str,
        src_content: str,
        lang: str,
        content_sha256: str,
        image_ids: list[int],
        meta: dict,
) -> tuple[KbChunk, bool]:
    """
    One chunk per (source_id, page). A repeat extraction replaces the text and
    keeps the id; translation output derived from the old text is dropped.
    Returns (chunk, created).
    """
    chunk = get_chunk_for_slot(db, source_id, page)
    created = chunk is None
    if created:
        chunk = KbChunk(source_id=source_id, page=page)
        db.add(chunk)
    chunk.content = content
    chunk.src_content = src_content
    chunk.src_lang = lang
    chunk.lang = lang
    chunk.content_en = None
    chunk.content_sha256 = content_sha256
    chunk.image_ids = image_ids
    chunk.meta = meta
    db.flush()
    return chunk, created


def merge_chunk_meta(chunk: KbChunk, **values) -> None:
    chunk.meta = {**(chunk.meta or {}), **values}


def delete_chunks_for_slots(db: Session, source_id: str, pages: list[int]) -> int:
    if not pages:
        return 0
    return (
        db.query(KbChunk)
        .filter(KbChunk.source_id == source_id, KbChunk.page.in_(pages))
        .delete(synchronize_session="fetch")
    )


# ── Suggestions ───────────────────────────────────────────────────────────────

def list_suggestions(db: Session, queue_id: int, page_number: int | None = None) -> list[PageSuggestion]:
    q = db.query(PageSuggestion).filter_by(queue_id=queue_id)
    if page_number is not None:
        q = q.filter_by(page_number=page_number)
    return q.order_by(PageSuggestion.page_number, PageSuggestion.confidence_score.desc()).all()


def delete_suggestions(
        db: Session,
        queue_id: int,
        page_number: int | None = None,
        only_pending: bool = False,
) -> int:
    q = db.query(PageSuggestion).filter(PageSuggestion.queue_id == queue_id)
    if page_number is not None:
        q = q.filter(PageSuggestion.page_number == page_number)
    if only_pending:
        q = q.filter(PageSuggestion.status == SuggestionStatus.PENDING)
    return q.delete(synchronize_session="fetch")


# ── Catalog lookup ────────────────────────────────────────────────────────────

def find_catalog_matches(db: Session, target_table: str, name: str, limit: int = 3) -> list[dict]:
    """
    Substring match first (case-insensitive), then close spellings via difflib,
    capped at `limit` candidates.
    """
    if target_table not in CATALOG_NAME_FIELDS or not name or not name.strip():
        return []
    model, column, _ = CATALOG_NAME_FIELDS[target_table]
    needle = name.strip()

    rows = (
        db.query(model.id, column)
        .filter(column.ilike(f"%{needle}%"))
        .order_by(column)
        .limit(limit)
        .all()
    )
    matches = [{"id": row[0], "name": row[1]} for row in rows]
    if len(matches) >= limit:
        return matches

    seen = {m["id"] for m in matches}
    candidates = {row[1].lower(): row for row in db.query(model.id, column).all() if row[0] not in seen}
    for close in difflib.get_close_matches(needle.lower(), list(candidates), n=limit - len(matches), cutoff=0.8):
        row = candidates[close]
        matches.append({"id": row[0], "name": row[1]})
    return matches
