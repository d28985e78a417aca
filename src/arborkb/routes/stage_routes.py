"""
Stage functions, callable directly by the ingestion UI.
POST /functions/process-ocr              — OCR one image into a chunk
POST /functions/translate-content        — translate a chunk in place
POST /functions/extract-structured-data  — suggestions from a chunk
GET  /functions/health                   — liveness

Failures are raised as StageError and rendered by the app-level handler as
{"success": false, "error": {type, message, timestamp}}.
"""
from functools import lru_cache

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from arborkb.database import get_db
from arborkb.services.structured_extraction import StructuredExtractionStage
from arborkb.services.text_extraction import TextExtractionStage
from arborkb.services.translation import TranslationStage

router = APIRouter(prefix="/functions", tags=["Stages"])


class OCRRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    image_url: str = Field(..., alias="imageUrl")
    source_id: str = Field(..., alias="sourceId")
    page: int = Field(..., ge=0)


class TranslateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    chunk_id: int = Field(..., alias="chunkId")
    source_id: str | None = Field(None, alias="sourceId")
    content: str | None = None
    original_language: str | None = Field(None, alias="originalLanguage")


class ExtractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    chunk_id: int = Field(..., alias="chunkId")
    source_id: str | None = Field(None, alias="sourceId")
    content: str | None = None


# Stage handlers are built once; tests swap them via dependency_overrides.

@lru_cache
def get_text_stage() -> TextExtractionStage:
    return TextExtractionStage()


@lru_cache
def get_translation_stage() -> TranslationStage:
    return TranslationStage()


@lru_cache
def get_structured_stage() -> StructuredExtractionStage:
    return StructuredExtractionStage()


@router.post("/process-ocr")
def process_ocr(
    req: OCRRequest,
    db: Session = Depends(get_db),
    stage: TextExtractionStage = Depends(get_text_stage),
):
    result = stage.run(db, req.source_id, req.page, req.image_url)
    return {"success": True, **result}


@router.post("/translate-content")
def translate_content(
    req: TranslateRequest,
    db: Session = Depends(get_db),
    stage: TranslationStage = Depends(get_translation_stage),
):
    result = stage.run(db, req.chunk_id, req.source_id, req.content, req.original_language)
    return {"success": True, **result}


@router.post("/extract-structured-data")
def extract_structured_data(
    req: ExtractRequest,
    db: Session = Depends(get_db),
    stage: StructuredExtractionStage = Depends(get_structured_stage),
):
    result = stage.run(db, req.chunk_id, req.source_id, req.content)
    return {"success": True, **result}


@router.get("/health")
def stage_health():
    return {"success": True, "status": "ok"}
