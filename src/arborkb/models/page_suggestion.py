import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, Enum, JSON,
    ForeignKeyConstraint, CheckConstraint,
)
from arborkb.database import Base


class SuggestionType(str, enum.Enum):
    SPECIES    = "species"
    DEFECT     = "defect"
    FUNGUS     = "fungus"
    MITIGATION = "mitigation"
    FEATURE    = "feature"
    OTHER      = "other"


class SuggestionStatus(str, enum.Enum):
    PENDING  = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PageSuggestion(Base):
    """Candidate fact for human curation, linked to the page it came from."""
    __tablename__ = "page_suggestions"
    __table_args__ = (
        ForeignKeyConstraint(
            ["queue_id", "page_number"],
            ["queue_pages.queue_id", "queue_pages.page_number"],
            ondelete="CASCADE",
        ),
        CheckConstraint("confidence_score >= 0.5 AND confidence_score <= 1", name="ck_suggestion_confidence"),
    )

    id               = Column(Integer, primary_key=True, autoincrement=True)
    queue_id         = Column(Integer, nullable=False, index=True)
    page_number      = Column(Integer, nullable=False)
    chunk_id         = Column(Integer, nullable=True)
    suggestion_type  = Column(Enum(SuggestionType), nullable=False)
    target_table     = Column(String(64), nullable=False)
    suggested_data   = Column(JSON, nullable=False)
    confidence_score = Column(Float, nullable=False)
    status           = Column(Enum(SuggestionStatus), nullable=False, default=SuggestionStatus.PENDING)
    notes            = Column(Text, nullable=True)     # extraction rationale
    reviewed_by      = Column(String(128), nullable=True)
    reviewed_at      = Column(DateTime, nullable=True)
    applied_at       = Column(DateTime, nullable=True)
    created_at       = Column(DateTime, default=datetime.utcnow)
