from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, UniqueConstraint
from arborkb.database import Base


class KbImage(Base):
    """
    Stored page image. (source_id, page) is the upsert key — uploading to an
    occupied slot overwrites the row and the object behind `uri`.
    """
    __tablename__ = "kb_images"
    __table_args__ = (UniqueConstraint("source_id", "page", name="uq_kb_image_slot"),)

    id         = Column(Integer, primary_key=True, autoincrement=True)
    source_id  = Column(String(128), nullable=False, index=True)
    page       = Column(Integer, nullable=False)
    uri        = Column(String(1024), nullable=False)      # object-store path, not a URL
    caption    = Column(Text, nullable=True)
    meta       = Column(JSON, nullable=True)               # original_filename, size, batch, uploaded_at, ocr_*
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
