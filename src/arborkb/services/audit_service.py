import logging
from sqlalchemy.orm import Session
from arborkb.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def log_event(
        db: Session,
        event_type: str,
        entity_type: str | None = None,
        entity_id: str | int | None = None,
        actor: str = "system",
        detail: dict | None = None,
        commit: bool = True,
) -> AuditLog:
    """
    Record an operator action on the queue.
    Pass commit=False to write the entry inside the caller's transaction,
    so the action and its audit row land together.

    Usage:
        log_event(db, "PAGE_RETRIED", "page", page_id, actor=auth.current_user,
                  detail={"previous_status": "error"})
    """
    entry = AuditLog(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        actor=actor,
        detail=detail,
    )
    db.add(entry)
    if commit:
        db.commit()
    logger.info("AUDIT [%s] entity=%s/%s actor=%s", event_type, entity_type, entity_id, actor)
    return entry


def get_audit_logs(
        db: Session,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
) -> list[AuditLog]:
    q = db.query(AuditLog)
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)
    if event_type:
        q = q.filter(AuditLog.event_type == event_type)
    return q.order_by(AuditLog.id.desc()).limit(limit).all()
