"""
Orphan reconciliation: images whose source no longer has any batch.

Blobs are removed before rows, so a crash in between leaves a row pointing
at nothing, which the next run finds and deletes again. Running cleanup
repeatedly converges on zero orphans.
"""
import logging

from sqlalchemy.orm import Session

from arborkb.dao import kb_dao
from arborkb.services.audit_service import log_event
from arborkb.storage.object_store import ObjectStore, is_absolute_url

logger = logging.getLogger(__name__)


def find_orphans(db: Session) -> list[dict]:
    return [
        {
            "source_id"   : image.source_id,
            "page"        : image.page,
            "uri"         : image.uri,
            "batch_number": (image.meta or {}).get("batch"),
        }
        for image in kb_dao.find_orphan_images(db)
    ]


def cleanup(db: Session, store: ObjectStore, records: list[dict] | None = None, actor: str = "system") -> list[dict]:
    """
    Delete the given orphans (all current ones when records is None).
    A record that stopped being an orphan in the meantime is skipped.
    Returns the records whose rows were removed.
    """
    current = {(r["source_id"], r["page"]) for r in find_orphans(db)}
    if records is None:
        records = find_orphans(db)
    stale = [r for r in records if (r["source_id"], r["page"]) not in current]
    for record in stale:
        logger.info("Image %s/%s is no longer orphaned; kept", record["source_id"], record["page"])
    records = [r for r in records if (r["source_id"], r["page"]) in current]
    if not records:
        return []

    failed = set(store.remove([r["uri"] for r in records if r.get("uri") and not is_absolute_url(r["uri"])]))
    for uri in failed:
        logger.warning("Could not remove orphan blob %s; the row is deleted anyway", uri)

    removed = []
    try:
        for record in records:
            if kb_dao.delete_orphan_image(db, record["source_id"], record["page"]):
                removed.append(record)
            else:
                logger.info("Image %s/%s is no longer orphaned; kept", record["source_id"], record["page"])
        if removed:
            log_event(db, "ORPHANS_CLEANED", "image", None, actor,
                      {"removed": len(removed), "blobs_failed": sorted(failed)}, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Orphan cleanup removed %d of %d candidate images", len(removed), len(records))
    return removed
