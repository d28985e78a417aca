# arborkb/models/processing_queue.py
import enum
from datetime import datetime
from sqlalchemy import Column, String, Integer, Float, Text, DateTime, Enum
from sqlalchemy.orm import relationship
from arborkb.database import Base


class ProcessingStatus(str, enum.Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    PAUSED     = "paused"
    COMPLETED  = "completed"
    ERROR      = "error"


class ProcessingQueue(Base):
    """One batch of page images registered for a source document."""
    __tablename__ = "processing_queue"

    id                   = Column(Integer, primary_key=True, autoincrement=True)
    source_id            = Column(String(128), nullable=False, index=True)
    batch_name           = Column(String(256), nullable=False)
    batch_index          = Column(Integer, nullable=False, default=1)    # n in {source}/batch-{n}/...
    page_offset          = Column(Integer, nullable=False, default=0)    # page k lives in source slot offset + k
    total_pages          = Column(Integer, nullable=False)
    processed_pages      = Column(Integer, nullable=False, default=0)
    progress_percentage  = Column(Integer, nullable=False, default=0)
    status               = Column(Enum(ProcessingStatus), nullable=False, default=ProcessingStatus.PENDING)
    current_stage        = Column(String(64), nullable=True)
    current_page         = Column(Integer, nullable=True)
    current_file         = Column(String(512), nullable=True)
    processing_speed     = Column(Float, nullable=True)                  # pages per minute
    error_message        = Column(Text, nullable=True)
    started_at           = Column(DateTime, nullable=True)
    completed_at         = Column(DateTime, nullable=True)
    estimated_completion = Column(DateTime, nullable=True)
    created_at           = Column(DateTime, default=datetime.utcnow)
    updated_at           = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    pages = relationship(
        "QueuePage",
        back_populates="batch",
        order_by="QueuePage.page_number",
        passive_deletes=True,
    )
