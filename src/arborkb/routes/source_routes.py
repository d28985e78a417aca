"""
Per-source image slots.
PUT /sources/{source_id}/pages/{page}/image  — upload or overwrite one slot
GET /sources/{source_id}/images              — list a source's stored images
"""
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from arborkb.auth import AuthContext, get_auth_context
from arborkb.dao import kb_dao
from arborkb.database import get_db
from arborkb.models.kb_image import KbImage
from arborkb.services import queue_coordinator
from arborkb.services.queue_coordinator import UploadedImage
from arborkb.storage.object_store import ObjectStore, get_object_store

router = APIRouter(prefix="/sources", tags=["Sources"])


def _image_dict(image: KbImage, store: ObjectStore) -> dict:
    return {
        "id"        : image.id,
        "source_id" : image.source_id,
        "page"      : image.page,
        "uri"       : image.uri,
        "url"       : store.resolve_url(image.uri),
        "caption"   : image.caption,
        "meta"      : image.meta or {},
        "updated_at": str(image.updated_at) if image.updated_at else None,
    }


@router.put("/{source_id}/pages/{page}/image")
def put_page_image(
    source_id: str,
    page: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    auth: AuthContext = Depends(get_auth_context),
):
    upload = UploadedImage(file.filename or "page", file.file.read(), file.content_type)
    try:
        image, overwritten = queue_coordinator.upload_page_image(
            db, store, source_id, page, upload, actor=auth.current_user
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {**_image_dict(image, store), "overwritten": overwritten}


@router.get("/{source_id}/images")
def list_source_images(
    source_id: str,
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    return [_image_dict(img, store) for img in kb_dao.list_images(db, source_id)]
