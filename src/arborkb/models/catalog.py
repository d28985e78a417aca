"""
Canonical knowledge-base records. The pipeline only reads these, to attach
potential matches to new suggestions; curation owns the writes.
"""
from sqlalchemy import Column, Integer, String, Text, JSON
from arborkb.database import Base


class Species(Base):
    __tablename__ = "species"

    id              = Column(Integer, primary_key=True, autoincrement=True)
    scientific_name = Column(String(256), nullable=False, unique=True)
    common_names    = Column(JSON, nullable=True)
    family          = Column(String(128), nullable=True)
    genus           = Column(String(128), nullable=True)


class Defect(Base):
    __tablename__ = "defects"

    id          = Column(Integer, primary_key=True, autoincrement=True)
    name        = Column(String(256), nullable=False, unique=True)
    category    = Column(String(128), nullable=True)
    description = Column(Text, nullable=True)


class Fungus(Base):
    __tablename__ = "fungi"

    id              = Column(Integer, primary_key=True, autoincrement=True)
    scientific_name = Column(String(256), nullable=False, unique=True)
    common_names    = Column(JSON, nullable=True)
    decay           = Column(String(128), nullable=True)
