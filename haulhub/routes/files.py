import os
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from slugify import slugify

from ..auth.security import get_current_user
from ..config import settings
from ..errors import ValidationError
from ..models.models import User
from ..schemas.common import ok
from ..schemas.files import UploadRequest, UploadResponse
from ..storage.local_provider import LocalStorageProvider
from ..storage.provider import StorageProvider


router = APIRouter(prefix="/files", tags=["files"])

CATEGORIES = {"documents", "photos"}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def get_storage() -> StorageProvider:
    return LocalStorageProvider()


def canonical_key(user_id, category: str, original_name: str) -> str:
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    safe_name = slugify(os.path.splitext(original_name)[0]) or "file"
    ext = os.path.splitext(original_name)[1].lower()
    return f"/{slugify(category)}/{user_id}/{today}_{uuid.uuid4().hex[:8]}_{safe_name}{ext}"


@router.post("/upload-url")
def upload_url(
    req: UploadRequest,
    user: User = Depends(get_current_user),
    storage: StorageProvider = Depends(get_storage),
):
    if req.category not in CATEGORIES:
        raise ValidationError.for_fields({"category": f"must be one of {sorted(CATEGORIES)}"})
    key = canonical_key(user.id, req.category, req.original_name)
    expires = settings.upload_url_ttl_seconds
    url = storage.generate_upload_url(key, req.content_type, expires_s=expires)
    resp = UploadResponse(key=key, upload_url=url, uri=storage.reference_uri(key), expires_in=expires)
    return ok(resp.model_dump())


@router.put("/local/{key:path}")
async def local_upload(
    key: str,
    request: Request,
    user: User = Depends(get_current_user),
    storage: StorageProvider = Depends(get_storage),
):
    # Keys are issued per user by /files/upload-url
    if f"/{user.id}/" not in f"/{key}":
        raise HTTPException(status_code=403, detail="Forbidden")
    body = await request.body()
    if not body:
        raise ValidationError.for_fields({"body": "empty upload"})
    if len(body) > MAX_UPLOAD_BYTES:
        raise ValidationError.for_fields({"body": f"at most {MAX_UPLOAD_BYTES} bytes"})
    storage.copy_in(body, key)
    return ok({"key": key, "uri": storage.reference_uri(key), "size": len(body)})


@router.get("/local/{key:path}")
def local_download(
    key: str,
    user: User = Depends(get_current_user),
    storage: StorageProvider = Depends(get_storage),
):
    if not storage.exists(key):
        raise HTTPException(status_code=404, detail="File not found")
    return Response(content=storage.read(key), media_type="application/octet-stream")
