from datetime import datetime
from sqlalchemy import Column, Integer, Float, Text, DateTime, Enum, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from arborkb.database import Base
from arborkb.models.processing_queue import ProcessingStatus


class QueuePage(Base):
    """
    One page image inside a batch. Phase timestamps only ever move forward:
    phase1 (OCR) <= phase2 (translation) <= phase3 (structured extraction).
    """
    __tablename__ = "queue_pages"
    __table_args__ = (UniqueConstraint("queue_id", "page_number", name="uq_queue_page_number"),)

    id                  = Column(Integer, primary_key=True, autoincrement=True)
    queue_id            = Column(Integer, ForeignKey("processing_queue.id", ondelete="CASCADE"), nullable=False, index=True)
    page_number         = Column(Integer, nullable=False)
    status              = Column(Enum(ProcessingStatus), nullable=False, default=ProcessingStatus.PENDING, index=True)
    attempt             = Column(Integer, nullable=False, default=0)   # bumped on every claim, guards stale results
    error_message       = Column(Text, nullable=True)
    extracted_text      = Column(Text, nullable=True)                  # preview only, full text lives in kb_chunks
    ocr_confidence      = Column(Float, nullable=True)
    figures_extracted   = Column(JSON, nullable=True)
    phase1_completed_at = Column(DateTime, nullable=True)
    phase2_completed_at = Column(DateTime, nullable=True)
    phase3_completed_at = Column(DateTime, nullable=True)
    processed_at        = Column(DateTime, nullable=True)
    created_at          = Column(DateTime, default=datetime.utcnow)

    batch = relationship("ProcessingQueue", back_populates="pages")

    @property
    def source_page(self) -> int:
        """Image/chunk slot of this page within its source document."""
        return self.batch.page_offset + self.page_number
