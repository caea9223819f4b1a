"""
Health check and image uploads (user avatars, organization logos).

``router`` is mounted at /api/v1, ``uploads_router`` at /api/v1/uploads.
"""

from __future__ import annotations

import logging
import mimetypes
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, get_current_user, get_current_user_id
from auth.models import User
from organizations.service import require_org_member, set_organization_image
from storage import get_storage
from storage.images import organization_logo_key, process_image_upload, user_image_key

logger = logging.getLogger(__name__)

router = APIRouter()
uploads_router = APIRouter(tags=["uploads"])


@router.get("/health")
async def health_check() -> Dict[str, str]:
    return {"status": "ok"}


def _crop(x: Optional[int], y: Optional[int], width: Optional[int], height: Optional[int]):
    values = (x, y, width, height)
    if all(v is None for v in values):
        return None
    if any(v is None for v in values):
        raise HTTPException(status_code=400, detail="Crop needs x, y, width and height")
    return values


async def _process(file: UploadFile, crop) -> Any:
    if not file.filename:
        raise HTTPException(status_code=400, detail="No file provided")
    data = await file.read()
    try:
        return process_image_upload(data, crop=crop, max_size=512)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _delete_quietly(key: Optional[str]) -> None:
    if not key:
        return
    try:
        get_storage().delete(key)
    except Exception:
        logger.exception("Failed to delete replaced image %s", key)


@uploads_router.post("/user-image")
async def upload_user_image(
    file: UploadFile = File(...),
    crop_x: Optional[int] = Form(None),
    crop_y: Optional[int] = Form(None),
    crop_width: Optional[int] = Form(None),
    crop_height: Optional[int] = Form(None),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Replace the current user's avatar."""
    image = await _process(file, _crop(crop_x, crop_y, crop_width, crop_height))
    key = user_image_key(str(user.id), image.extension)
    get_storage().put(key, image.data, image.content_type)

    previous = user.image_key
    user.image_key = key
    await session.flush()
    _delete_quietly(previous)
    return {"objectKey": key, "url": get_storage().url(key)}


@uploads_router.post("/organizations/{slug}/logo")
async def upload_organization_logo(
    slug: str,
    file: UploadFile = File(...),
    crop_x: Optional[int] = Form(None),
    crop_y: Optional[int] = Form(None),
    crop_width: Optional[int] = Form(None),
    crop_height: Optional[int] = Form(None),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await require_org_member(session, slug, user_id, min_role="admin")
    image = await _process(file, _crop(crop_x, crop_y, crop_width, crop_height))
    key = organization_logo_key(str(org.id), image.extension)
    get_storage().put(key, image.data, image.content_type)

    previous = await set_organization_image(session, org, key)
    _delete_quietly(previous)
    return {"objectKey": key, "url": get_storage().url(key)}


@uploads_router.get("/{key:path}")
async def serve_upload(key: str) -> Response:
    """Serve a stored object (local backend URLs point here)."""
    try:
        data = get_storage().get(key)
    except (FileNotFoundError, ValueError):
        raise HTTPException(status_code=404, detail="File not found")
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type, headers={"Cache-Control": "public, max-age=3600"})
