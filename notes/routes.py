"""
Note API routes — CRUD, search, sharing, favorites, images, comments and
the activity feed.

Route prefix: /api/v1/notes
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, get_current_user_id
from database.helpers import to_uuid
from database.models import NoteComment, Organization, OrganizationNote
from notes import comments as comment_service
from notes import service as note_service
from notes.activity import get_note_activity_logs, serialize_activity
from organizations.service import require_org_member

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notes"])


class NoteCreateRequest(BaseModel):
    title: str
    content: str
    is_public: bool = True


class NoteUpdateRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


class SharingRequest(BaseModel):
    is_public: bool


class AccessRequest(BaseModel):
    user_id: str


class CommentRequest(BaseModel):
    content: str = Field(..., max_length=comment_service.COMMENT_MAX_LENGTH)
    parent_id: Optional[str] = None


async def _org_note(
    session: AsyncSession,
    slug: str,
    note_id: str,
    user_id: str,
    *,
    record_view: bool = False,
) -> Tuple[Organization, OrganizationNote]:
    org, _ = await require_org_member(session, slug, user_id)
    note = await note_service.get_note(session, org.id, note_id, user_id, record_view=record_view)
    return org, note


def _crop(x: Optional[int], y: Optional[int], width: Optional[int], height: Optional[int]):
    values = (x, y, width, height)
    if all(v is None for v in values):
        return None
    if any(v is None for v in values):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Crop needs x, y, width and height")
    return values


async def _read_upload(file: UploadFile) -> bytes:
    data = await file.read()
    if not data:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Uploaded file is empty")
    return data


# ── Collection ─────────────────────────────────────────────────────────


@router.get("/{slug}")
async def list_notes(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    org, _ = await require_org_member(session, slug, user_id)
    notes = await note_service.list_notes(session, org.id, user_id)
    return [note_service.serialize_note(n) for n in notes]


@router.post("/{slug}", status_code=201)
async def create_note(
    slug: str,
    body: NoteCreateRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await require_org_member(session, slug, user_id)
    note = await note_service.create_note(
        session,
        organization_id=org.id,
        user_id=user_id,
        title=body.title,
        content=body.content,
        is_public=body.is_public,
    )
    return note_service.serialize_note(note)


@router.get("/{slug}/search")
async def search_notes(
    slug: str,
    q: str = Query("", max_length=200),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    org, _ = await require_org_member(session, slug, user_id)
    return await note_service.search_notes(session, org.id, user_id, q)


@router.get("/{slug}/favorites")
async def list_favorites(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    org, _ = await require_org_member(session, slug, user_id)
    notes = await note_service.list_favorite_notes(session, org.id, user_id)
    return [note_service.serialize_note(n, is_favorite=True) for n in notes]


# ── Single note ────────────────────────────────────────────────────────


@router.get("/{slug}/{note_id}")
async def get_note(
    slug: str,
    note_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id, record_view=True)
    return note_service.serialize_note(note)


@router.patch("/{slug}/{note_id}")
async def update_note(
    slug: str,
    note_id: str,
    body: NoteUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    changes = await note_service.update_note(session, note, user_id, title=body.title, content=body.content)
    return {**note_service.serialize_note(note), "changes": changes}


@router.delete("/{slug}/{note_id}")
async def delete_note(
    slug: str,
    note_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    await note_service.delete_note(session, note, user_id)
    return {"status": "deleted", "note_id": note_id}


@router.patch("/{slug}/{note_id}/sharing")
async def update_sharing(
    slug: str,
    note_id: str,
    body: SharingRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    await note_service.set_note_public(session, note, user_id, body.is_public)
    return note_service.serialize_note(note)


@router.get("/{slug}/{note_id}/access")
async def list_access(
    slug: str,
    note_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    _, note = await _org_note(session, slug, note_id, user_id)
    return await note_service.list_note_access(session, note.id)


@router.post("/{slug}/{note_id}/access", status_code=201)
async def grant_access(
    slug: str,
    note_id: str,
    body: AccessRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    await note_service.grant_note_access(session, note, user_id, body.user_id)
    return {"status": "granted", "user_id": body.user_id}


@router.delete("/{slug}/{note_id}/access/{target_user_id}")
async def revoke_access(
    slug: str,
    note_id: str,
    target_user_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    revoked = await note_service.revoke_note_access(session, note, user_id, target_user_id)
    return {"status": "revoked" if revoked else "unchanged", "user_id": target_user_id}


@router.post("/{slug}/{note_id}/favorite")
async def toggle_favorite(
    slug: str,
    note_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    return {"isFavorite": await note_service.toggle_favorite(session, note, user_id)}


@router.get("/{slug}/{note_id}/activity")
async def note_activity(
    slug: str,
    note_id: str,
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    _, note = await _org_note(session, slug, note_id, user_id)
    logs = await get_note_activity_logs(session, note.id, limit)
    return [serialize_activity(log) for log in logs]


# ── Images ─────────────────────────────────────────────────────────────


@router.post("/{slug}/{note_id}/images", status_code=201)
async def upload_note_image(
    slug: str,
    note_id: str,
    file: UploadFile = File(...),
    alt_text: Optional[str] = Form(None),
    crop_x: Optional[int] = Form(None),
    crop_y: Optional[int] = Form(None),
    crop_width: Optional[int] = Form(None),
    crop_height: Optional[int] = Form(None),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    data = await _read_upload(file)
    try:
        image = await note_service.add_note_image(
            session,
            note,
            data,
            alt_text=alt_text,
            crop=_crop(crop_x, crop_y, crop_width, crop_height),
        )
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))
    return {"id": str(image.id), "objectKey": image.object_key}


@router.delete("/{slug}/{note_id}/images/{image_id}")
async def delete_note_image(
    slug: str,
    note_id: str,
    image_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    await note_service.delete_note_image(session, note, image_id)
    return {"status": "deleted", "image_id": image_id}


# ── Comments ───────────────────────────────────────────────────────────


@router.get("/{slug}/{note_id}/comments")
async def list_comments(
    slug: str,
    note_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    _, note = await _org_note(session, slug, note_id, user_id)
    return await comment_service.list_comments(session, note.id)


@router.post("/{slug}/{note_id}/comments", status_code=201)
async def add_comment(
    slug: str,
    note_id: str,
    body: CommentRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    comment = await comment_service.add_comment(session, note, user_id, body.content, parent_id=body.parent_id)
    return comment_service.serialize_comment(comment)


@router.post("/{slug}/{note_id}/comments/{comment_id}/images", status_code=201)
async def upload_comment_image(
    slug: str,
    note_id: str,
    comment_id: str,
    file: UploadFile = File(...),
    alt_text: Optional[str] = Form(None),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    try:
        comment = await session.get(NoteComment, to_uuid(comment_id))
    except ValueError:
        comment = None
    if comment is None or comment.note_id != note.id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Comment not found")
    if str(comment.user_id) != str(user_id):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Only the comment author can attach images")
    image = await comment_service.add_comment_image(
        session, note, comment, await _read_upload(file), alt_text=alt_text
    )
    return {"id": str(image.id), "objectKey": image.object_key}


@router.delete("/{slug}/{note_id}/comments/{comment_id}")
async def delete_comment(
    slug: str,
    note_id: str,
    comment_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    _, note = await _org_note(session, slug, note_id, user_id)
    await comment_service.delete_comment(session, note, comment_id, user_id)
    return {"status": "deleted", "comment_id": comment_id}
