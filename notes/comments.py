"""
Comment threads on notes: replies, TipTap mentions and image attachments.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.helpers import get_membership, to_uuid
from database.models import NoteComment, NoteCommentImage, OrganizationNote
from notes.activity import display_name, log_note_activity
from organizations.roles import has_role
from storage import get_storage
from storage.images import comment_image_key, process_image_upload
from utils.errors import ForbiddenError, NotFoundError, ServiceError

logger = logging.getLogger(__name__)

COMMENT_MAX_LENGTH = 10000

_TAG = re.compile(r"<[a-zA-Z][^>]*>")
_MENTION_TYPE = re.compile(r"""data-type\s*=\s*["']mention["']""")
_DATA_ID = re.compile(r"""data-id\s*=\s*["']([^"']+)["']""")


def extract_mentions(content: str) -> List[str]:
    """User ids mentioned with TipTap markup, in order of first appearance."""
    mentioned: List[str] = []
    for tag in _TAG.findall(content or ""):
        if not _MENTION_TYPE.search(tag):
            continue
        match = _DATA_ID.search(tag)
        if match and match.group(1) not in mentioned:
            mentioned.append(match.group(1))
    return mentioned


def serialize_comment(comment: NoteComment) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(comment.id),
        "content": comment.content,
        "noteId": str(comment.note_id),
        "parentId": str(comment.parent_id) if comment.parent_id else None,
        "mentions": extract_mentions(comment.content),
        "createdAt": comment.created_at.isoformat() if comment.created_at else None,
        "updatedAt": comment.updated_at.isoformat() if comment.updated_at else None,
    }
    if "user" in comment.__dict__ and comment.user is not None:
        data["user"] = {
            "id": str(comment.user.id),
            "name": display_name(comment.user),
            "username": comment.user.username,
        }
    if "images" in comment.__dict__:
        storage = get_storage()
        data["images"] = [
            {"id": str(img.id), "altText": img.alt_text, "url": storage.url(img.object_key)}
            for img in comment.images
        ]
    return data


async def list_comments(session: AsyncSession, note_id: str | uuid.UUID) -> List[Dict[str, Any]]:
    """Top-level comments oldest first, each with its replies nested."""
    result = await session.execute(
        select(NoteComment)
        .where(NoteComment.note_id == to_uuid(note_id))
        .options(selectinload(NoteComment.user), selectinload(NoteComment.images))
        .order_by(NoteComment.created_at)
    )
    comments = list(result.scalars().all())

    by_parent: Dict[Optional[uuid.UUID], List[Dict[str, Any]]] = {}
    for comment in comments:
        by_parent.setdefault(comment.parent_id, []).append(serialize_comment(comment))

    def _nest(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for item in items:
            item["replies"] = _nest(by_parent.get(uuid.UUID(item["id"]), []))
        return items

    return _nest(by_parent.get(None, []))


async def add_comment(
    session: AsyncSession,
    note: OrganizationNote,
    user_id: str | uuid.UUID,
    content: str,
    *,
    parent_id: Optional[str | uuid.UUID] = None,
    images: Sequence[Tuple[bytes, Optional[str]]] = (),
) -> NoteComment:
    """
    Add a comment (or a reply when ``parent_id`` is given).

    ``images`` are ``(data, alt_text)`` pairs stored under the comment.
    """
    content = (content or "").strip()
    if not content and not images:
        raise ServiceError("Comment cannot be empty")
    if len(content) > COMMENT_MAX_LENGTH:
        raise ServiceError(f"Comment must be at most {COMMENT_MAX_LENGTH} characters")

    parent_uuid = None
    if parent_id:
        parent = await session.get(NoteComment, to_uuid(parent_id))
        if parent is None or parent.note_id != note.id:
            raise ServiceError("Parent comment not found on this note")
        parent_uuid = parent.id

    comment = NoteComment(content=content, note_id=note.id, user_id=to_uuid(user_id), parent_id=parent_uuid)
    session.add(comment)
    await session.flush()

    for data, alt_text in images:
        await add_comment_image(session, note, comment, data, alt_text=alt_text)

    await log_note_activity(
        session,
        note_id=note.id,
        user_id=user_id,
        action="comment_added",
        comment_id=comment.id,
        metadata={"parentId": str(parent_uuid)} if parent_uuid else None,
    )
    mentions = extract_mentions(content)
    if mentions:
        logger.debug("Comment %s mentions %s", comment.id, ", ".join(mentions))
    return comment


async def add_comment_image(
    session: AsyncSession,
    note: OrganizationNote,
    comment: NoteComment,
    data: bytes,
    *,
    alt_text: Optional[str] = None,
) -> NoteCommentImage:
    try:
        processed = process_image_upload(data)
    except ValueError as exc:
        raise ServiceError(str(exc)) from exc
    key = comment_image_key(str(note.organization_id), str(note.id), str(comment.id), processed.extension)
    get_storage().put(key, processed.data, processed.content_type)
    image = NoteCommentImage(comment_id=comment.id, alt_text=alt_text, object_key=key)
    session.add(image)
    await session.flush()
    return image


async def delete_comment(
    session: AsyncSession,
    note: OrganizationNote,
    comment_id: str | uuid.UUID,
    user_id: str | uuid.UUID,
) -> None:
    """The author or an organization admin may delete; replies go with it."""
    uid = to_uuid(user_id)
    try:
        cid = to_uuid(comment_id)
    except ValueError:
        raise NotFoundError("Comment not found")
    result = await session.execute(
        select(NoteComment)
        .where(NoteComment.id == cid, NoteComment.note_id == note.id)
        .options(selectinload(NoteComment.images), selectinload(NoteComment.replies))
    )
    comment = result.scalar_one_or_none()
    if comment is None:
        raise NotFoundError("Comment not found")
    if comment.user_id != uid:
        membership = await get_membership(session, uid, note.organization_id)
        if membership is None or not has_role(membership.role, "admin"):
            raise ForbiddenError("Only the comment author or an admin can delete this comment")

    # collect the whole reply subtree so its images can be removed too
    subtree = [comment]
    frontier = [comment.id]
    while frontier:
        children = (
            await session.execute(
                select(NoteComment)
                .where(NoteComment.parent_id.in_(frontier))
                .options(selectinload(NoteComment.images), selectinload(NoteComment.replies))
            )
        ).scalars().all()
        subtree.extend(children)
        frontier = [child.id for child in children]

    keys = [img.object_key for c in subtree for img in c.images]
    for c in reversed(subtree):
        await session.delete(c)
    await session.flush()

    storage = get_storage()
    for key in keys:
        try:
            storage.delete(key)
        except Exception:
            logger.exception("Failed to delete stored comment image %s", key)

    await log_note_activity(session, note_id=note.id, user_id=uid, action="comment_deleted", comment_id=cid)
