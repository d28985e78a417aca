"""
Maintenance and audit routes.
GET  /maintenance/orphans    — images whose source has no batch
POST /maintenance/cleanup    — delete orphans, blobs first (admin)
GET  /maintenance/audit-log  — operator action trail
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from arborkb.auth import AuthContext, get_auth_context, require_role
from arborkb.database import get_db
from arborkb.services import orphan_reconciler
from arborkb.services.audit_service import get_audit_logs
from arborkb.storage.object_store import ObjectStore, get_object_store

router = APIRouter(prefix="/maintenance", tags=["Maintenance"])


@router.get("/orphans")
def list_orphans(db: Session = Depends(get_db)):
    orphans = orphan_reconciler.find_orphans(db)
    return {"count": len(orphans), "orphans": orphans}


@router.post("/cleanup")
def cleanup_orphans(
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    auth: AuthContext = Depends(get_auth_context),
):
    require_role(auth)
    removed = orphan_reconciler.cleanup(db, store, actor=auth.current_user)
    return {"removed_count": len(removed), "removed": removed}


@router.get("/audit-log")
def list_audit_log(
    entity_id: str | None = Query(None),
    event_type: str | None = Query(None),
    limit: int = Query(100, le=500),
    db: Session = Depends(get_db),
):
    logs = get_audit_logs(db, entity_id=entity_id, event_type=event_type, limit=limit)
    return [
        {
            "id": l.id,
            "event_type": l.event_type,
            "entity_type": l.entity_type,
            "entity_id": l.entity_id,
            "actor": l.actor,
            "detail": l.detail,
            "created_at": str(l.created_at),
        }
        for l in logs
    ]
