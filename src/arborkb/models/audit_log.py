from sqlalchemy import Column, Integer, String, DateTime, JSON, func
from arborkb.database import Base


class AuditLog(Base):
    """
    INSERT-only record of operator actions on the queue (retries, restarts,
    deletions, orphan cleanup). On MySQL, triggers from database.py reject
    UPDATE and DELETE.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(128), nullable=False, index=True)  # PAGE_RETRIED, BATCH_RESTARTED, etc.
    entity_type = Column(String(64), nullable=True)               # batch | page | image | orphan
    entity_id = Column(String(128), nullable=True)
    actor = Column(String(128), nullable=True)                    # user id from the auth context or "system"
    detail = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
