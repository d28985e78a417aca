from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, UniqueConstraint
from arborkb.database import Base


class KbChunk(Base):
    """
    Durable text record of one source page. Created by OCR, then updated in place
    by translation and structured extraction.
    """
    __tablename__ = "kb_chunks"
    __table_args__ = (UniqueConstraint("source_id", "page", name="uq_kb_chunk_slot"),)

    id             = Column(Integer, primary_key=True, autoincrement=True)
    source_id      = Column(String(128), nullable=False, index=True)
    page           = Column(Integer, nullable=False)
    content        = Column(Text, nullable=False)
    src_content    = Column(Text, nullable=True)            # OCR text before figure blocks were stripped
    content_en     = Column(Text, nullable=True)
    src_lang       = Column(String(16), nullable=True)
    lang           = Column(String(16), nullable=True)
    content_sha256 = Column(String(64), nullable=False, index=True)
    image_ids      = Column(JSON, nullable=True)
    species_ids    = Column(JSON, nullable=True)            # set by curation
    defect_ids     = Column(JSON, nullable=True)            # set by curation
    meta           = Column(JSON, nullable=True)
    created_at     = Column(DateTime, default=datetime.utcnow)
    updated_at     = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
