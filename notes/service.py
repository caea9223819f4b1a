"""
Note service — create, read, update, delete, search, sharing, favorites
and image attachments for organization notes.

Every write records a note activity entry and notifies connected
integrations through ``NoteHooks``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.helpers import get_membership, to_uuid
from database.models import (
    NoteAccess,
    NoteActivityLog,
    NoteComment,
    NoteCommentImage,
    NoteIntegrationConnection,
    OrganizationNote,
    OrganizationNoteFavorite,
    OrganizationNoteImage,
)
from integrations.events import NoteHooks, note_hooks
from notes.activity import log_note_activity
from organizations.roles import has_role
from storage import get_storage
from storage.images import note_image_key, process_image_upload
from utils.errors import ForbiddenError, NotFoundError, ServiceError

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 100
CONTENT_MAX_LENGTH = 10000
SEARCH_LIMIT = 10
SEARCH_SNIPPET_LENGTH = 100


def validate_note_fields(title: str, content: str) -> Tuple[str, str]:
    title = (title or "").strip()
    if not 1 <= len(title) <= TITLE_MAX_LENGTH:
        raise ServiceError(f"Title must be between 1 and {TITLE_MAX_LENGTH} characters")
    if not 1 <= len(content or "") <= CONTENT_MAX_LENGTH:
        raise ServiceError(f"Content must be between 1 and {CONTENT_MAX_LENGTH} characters")
    return title, content


def escape_like(value: str) -> str:
    """Make ``%`` and ``_`` in user input match literally in a LIKE pattern."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def visible_to(user_id: uuid.UUID):
    """SQL condition: the note is public, owned by the user, or shared with them."""
    return or_(
        OrganizationNote.is_public.is_(True),
        OrganizationNote.created_by_id == user_id,
        exists().where(NoteAccess.note_id == OrganizationNote.id, NoteAccess.user_id == user_id),
    )


def serialize_note(note: OrganizationNote, *, is_favorite: Optional[bool] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(note.id),
        "title": note.title,
        "content": note.content,
        "isPublic": note.is_public,
        "organizationId": str(note.organization_id),
        "createdById": str(note.created_by_id) if note.created_by_id else None,
        "createdAt": note.created_at.isoformat() if note.created_at else None,
        "updatedAt": note.updated_at.isoformat() if note.updated_at else None,
    }
    if "images" in note.__dict__:
        storage = get_storage()
        data["images"] = [
            {"id": str(img.id), "altText": img.alt_text, "url": storage.url(img.object_key)} for img in note.images
        ]
    if is_favorite is not None:
        data["isFavorite"] = is_favorite
    return data


async def can_view_note(session: AsyncSession, note: OrganizationNote, user_id: str | uuid.UUID) -> bool:
    uid = to_uuid(user_id)
    if note.is_public or note.created_by_id == uid:
        return True
    result = await session.execute(
        select(NoteAccess.id).where(NoteAccess.note_id == note.id, NoteAccess.user_id == uid)
    )
    return result.first() is not None


async def get_note(
    session: AsyncSession,
    organization_id: str | uuid.UUID,
    note_id: str | uuid.UUID,
    user_id: str | uuid.UUID,
    *,
    record_view: bool = False,
) -> OrganizationNote:
    """Load a note the user may see; hidden notes are reported as missing."""
    try:
        nid = to_uuid(note_id)
    except ValueError:
        raise NotFoundError("Note not found")
    result = await session.execute(
        select(OrganizationNote)
        .where(OrganizationNote.id == nid, OrganizationNote.organization_id == to_uuid(organization_id))
        .options(selectinload(OrganizationNote.images))
    )
    note = result.scalar_one_or_none()
    if note is None or not await can_view_note(session, note, user_id):
        raise NotFoundError("Note not found")
    if record_view:
        await log_note_activity(session, note_id=note.id, user_id=user_id, action="viewed")
    return note


async def list_notes(
    session: AsyncSession,
    organization_id: str | uuid.UUID,
    user_id: str | uuid.UUID,
) -> List[OrganizationNote]:
    result = await session.execute(
        select(OrganizationNote)
        .where(OrganizationNote.organization_id == to_uuid(organization_id), visible_to(to_uuid(user_id)))
        .order_by(OrganizationNote.updated_at.desc())
    )
    return list(result.scalars().all())


async def create_note(
    session: AsyncSession,
    *,
    organization_id: str | uuid.UUID,
    user_id: str | uuid.UUID,
    title: str,
    content: str,
    is_public: bool = True,
    hooks: Optional[NoteHooks] = None,
) -> OrganizationNote:
    title, content = validate_note_fields(title, content)
    note = OrganizationNote(
        title=title,
        content=content,
        is_public=is_public,
        organization_id=to_uuid(organization_id),
        created_by_id=to_uuid(user_id),
    )
    session.add(note)
    await session.flush()

    await log_note_activity(session, note_id=note.id, user_id=user_id, action="created")
    (hooks or note_hooks).after_note_created(session, note.id, user_id)
    return note


async def update_note(
    session: AsyncSession,
    note: OrganizationNote,
    user_id: str | uuid.UUID,
    *,
    title: Optional[str] = None,
    content: Optional[str] = None,
    hooks: Optional[NoteHooks] = None,
) -> Dict[str, bool]:
    """Apply a title/content edit and return which fields actually changed."""
    new_title, new_content = validate_note_fields(
        note.title if title is None else title,
        note.content if content is None else content,
    )
    previous = {"title": note.title, "content": note.content}
    changes = {
        "titleChanged": new_title != note.title,
        "contentChanged": new_content != note.content,
    }
    if not any(changes.values()):
        return changes

    note.title = new_title
    note.content = new_content
    await session.flush()

    await log_note_activity(session, note_id=note.id, user_id=user_id, action="updated", metadata=changes)
    (hooks or note_hooks).after_note_updated(
        session, note.id, user_id, previous, {"title": new_title, "content": new_content}
    )
    return changes


async def delete_note(
    session: AsyncSession,
    note: OrganizationNote,
    user_id: str | uuid.UUID,
    *,
    hooks: Optional[NoteHooks] = None,
) -> None:
    """Only the creator or an organization admin may delete a note."""
    uid = to_uuid(user_id)
    if note.created_by_id != uid:
        membership = await get_membership(session, uid, note.organization_id)
        if membership is None or not has_role(membership.role, "admin"):
            raise ForbiddenError("Only the note creator or an admin can delete this note")

    await (hooks or note_hooks).before_note_deleted(session, note.id, uid)

    image_keys = list(
        (await session.execute(select(OrganizationNoteImage.object_key).where(OrganizationNoteImage.note_id == note.id)))
        .scalars()
        .all()
    )
    comment_ids = select(NoteComment.id).where(NoteComment.note_id == note.id).scalar_subquery()
    image_keys += list(
        (await session.execute(select(NoteCommentImage.object_key).where(NoteCommentImage.comment_id.in_(comment_ids))))
        .scalars()
        .all()
    )

    for model, condition in (
        (NoteCommentImage, NoteCommentImage.comment_id.in_(comment_ids)),
        (NoteComment, NoteComment.note_id == note.id),
        (OrganizationNoteImage, OrganizationNoteImage.note_id == note.id),
        (NoteAccess, NoteAccess.note_id == note.id),
        (OrganizationNoteFavorite, OrganizationNoteFavorite.note_id == note.id),
        (NoteActivityLog, NoteActivityLog.note_id == note.id),
        (NoteIntegrationConnection, NoteIntegrationConnection.note_id == note.id),
        (OrganizationNote, OrganizationNote.id == note.id),
    ):
        await session.execute(delete(model).where(condition))
    session.expunge(note)

    storage = get_storage()
    for key in image_keys:
        try:
            storage.delete(key)
        except Exception:
            logger.exception("Failed to delete stored image %s", key)
    logger.info("Note %s deleted by %s", note.id, uid)


async def search_notes(
    session: AsyncSession,
    organization_id: str | uuid.UUID,
    user_id: str | uuid.UUID,
    query: str,
) -> List[Dict[str, Any]]:
    query = (query or "").strip()
    if not query:
        return []
    pattern = f"%{escape_like(query)}%"
    result = await session.execute(
        select(OrganizationNote)
        .where(
            OrganizationNote.organization_id == to_uuid(organization_id),
            or_(
                OrganizationNote.title.ilike(pattern, escape="\\"),
                OrganizationNote.content.ilike(pattern, escape="\\"),
            ),
            visible_to(to_uuid(user_id)),
        )
        .order_by(OrganizationNote.updated_at.desc())
        .limit(SEARCH_LIMIT)
    )
    return [
        {
            "id": str(note.id),
            "title": note.title,
            "content": (
                note.content[:SEARCH_SNIPPET_LENGTH] + "..."
                if len(note.content or "") > SEARCH_SNIPPET_LENGTH
                else note.content
            ),
            "updatedAt": note.updated_at.isoformat() if note.updated_at else None,
        }
        for note in result.scalars().all()
    ]


# ── Sharing ─────────────────────────────────────────────────────────────


def _require_owner_or_admin(note: OrganizationNote, uid: uuid.UUID, role: Optional[str]) -> None:
    if note.created_by_id != uid and not (role and has_role(role, "admin")):
        raise ForbiddenError("Only the note creator or an admin can change sharing")


async def set_note_public(
    session: AsyncSession,
    note: OrganizationNote,
    user_id: str | uuid.UUID,
    is_public: bool,
) -> OrganizationNote:
    uid = to_uuid(user_id)
    membership = await get_membership(session, uid, note.organization_id)
    _require_owner_or_admin(note, uid, membership.role if membership else None)
    if note.is_public != is_public:
        note.is_public = is_public
        await session.flush()
        await log_note_activity(
            session, note_id=note.id, user_id=uid, action="sharing_changed", metadata={"isPublic": is_public}
        )
    return note


async def grant_note_access(
    session: AsyncSession,
    note: OrganizationNote,
    user_id: str | uuid.UUID,
    target_user_id: str | uuid.UUID,
) -> NoteAccess:
    uid, target = to_uuid(user_id), to_uuid(target_user_id)
    membership = await get_membership(session, uid, note.organization_id)
    _require_owner_or_admin(note, uid, membership.role if membership else None)
    if await get_membership(session, target, note.organization_id) is None:
        raise ServiceError("User is not a member of this organization")

    result = await session.execute(
        select(NoteAccess).where(NoteAccess.note_id == note.id, NoteAccess.user_id == target)
    )
    access = result.scalar_one_or_none()
    if access is not None:
        return access

    access = NoteAccess(note_id=note.id, user_id=target)
    session.add(access)
    await session.flush()
    await log_note_activity(session, note_id=note.id, user_id=uid, action="access_granted", target_user_id=target)
    return access


async def revoke_note_access(
    session: AsyncSession,
    note: OrganizationNote,
    user_id: str | uuid.UUID,
    target_user_id: str | uuid.UUID,
) -> bool:
    uid, target = to_uuid(user_id), to_uuid(target_user_id)
    membership = await get_membership(session, uid, note.organization_id)
    _require_owner_or_admin(note, uid, membership.role if membership else None)

    result = await session.execute(
        delete(NoteAccess).where(NoteAccess.note_id == note.id, NoteAccess.user_id == target)
    )
    if not result.rowcount:
        return False
    await log_note_activity(session, note_id=note.id, user_id=uid, action="access_revoked", target_user_id=target)
    return True


async def list_note_access(session: AsyncSession, note_id: str | uuid.UUID) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(NoteAccess)
        .where(NoteAccess.note_id == to_uuid(note_id))
        .options(selectinload(NoteAccess.user))
        .order_by(NoteAccess.created_at)
    )
    return [
        {
            "userId": str(access.user_id),
            "name": access.user.name,
            "username": access.user.username,
            "grantedAt": access.created_at.isoformat() if access.created_at else None,
        }
        for access in result.scalars().all()
    ]


# ── Favorites ───────────────────────────────────────────────────────────


async def toggle_favorite(session: AsyncSession, note: OrganizationNote, user_id: str | uuid.UUID) -> bool:
    """Flip the favorite flag; returns the new state."""
    uid = to_uuid(user_id)
    result = await session.execute(
        delete(OrganizationNoteFavorite).where(
            OrganizationNoteFavorite.note_id == note.id,
            OrganizationNoteFavorite.user_id == uid,
        )
    )
    if result.rowcount:
        return False
    session.add(OrganizationNoteFavorite(note_id=note.id, user_id=uid))
    await session.flush()
    return True


async def list_favorite_notes(
    session: AsyncSession,
    organization_id: str | uuid.UUID,
    user_id: str | uuid.UUID,
) -> List[OrganizationNote]:
    uid = to_uuid(user_id)
    result = await session.execute(
        select(OrganizationNote)
        .join(OrganizationNoteFavorite, OrganizationNoteFavorite.note_id == OrganizationNote.id)
        .where(
            OrganizationNoteFavorite.user_id == uid,
            OrganizationNote.organization_id == to_uuid(organization_id),
            visible_to(uid),
        )
        .order_by(OrganizationNoteFavorite.created_at.desc())
    )
    return list(result.scalars().all())


# ── Images ──────────────────────────────────────────────────────────────


async def add_note_image(
    session: AsyncSession,
    note: OrganizationNote,
    data: bytes,
    *,
    alt_text: Optional[str] = None,
    crop: Optional[Tuple[int, int, int, int]] = None,
) -> OrganizationNoteImage:
    processed = process_image_upload(data, crop=crop)
    key = note_image_key(str(note.organization_id), str(note.id), processed.extension)
    get_storage().put(key, processed.data, processed.content_type)

    image = OrganizationNoteImage(note_id=note.id, alt_text=alt_text, object_key=key)
    session.add(image)
    await session.flush()
    return image


async def delete_note_image(session: AsyncSession, note: OrganizationNote, image_id: str | uuid.UUID) -> None:
    try:
        iid = to_uuid(image_id)
    except ValueError:
        raise NotFoundError("Image not found")
    result = await session.execute(
        select(OrganizationNoteImage).where(
            OrganizationNoteImage.id == iid,
            OrganizationNoteImage.note_id == note.id,
        )
    )
    image = result.scalar_one_or_none()
    if image is None:
        raise NotFoundError("Image not found")
    key = image.object_key
    await session.delete(image)
    await session.flush()
    get_storage().delete(key)
