"""
Tests for comment threads and mention extraction.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from conftest import add_member, make_user
from database.models import NoteComment
from notes import comments as comment_service
from notes import service as note_service
from notes.activity import format_activity_message, get_note_activity_logs
from utils.errors import ForbiddenError, NotFoundError, ServiceError


async def _note(session, org, user):
    hooks = MagicMock()
    hooks.before_note_deleted = AsyncMock()
    return await note_service.create_note(
        session, organization_id=org.id, user_id=user.id, title="Spec", content="Body", hooks=hooks
    )


class TestExtractMentions:
    def test_finds_mention_ids_in_order(self):
        html = (
            '<p>Hey <span data-type="mention" data-id="u1" data-label="Ann">@Ann</span> and '
            "<span data-id='u2' data-type='mention'>@Bob</span> and again "
            '<span data-type="mention" data-id="u1">@Ann</span></p>'
        )
        assert comment_service.extract_mentions(html) == ["u1", "u2"]

    def test_ignores_non_mention_tags(self):
        assert comment_service.extract_mentions('<a data-id="x" href="#">link</a>') == []

    def test_empty(self):
        assert comment_service.extract_mentions("") == []


class TestComments:
    @pytest.mark.asyncio
    async def test_nested_listing(self, session, org, owner):
        note = await _note(session, org, owner)
        root = await comment_service.add_comment(session, note, owner.id, "root")
        reply = await comment_service.add_comment(session, note, owner.id, "reply", parent_id=root.id)

        tree = await comment_service.list_comments(session, note.id)

        assert len(tree) == 1
        assert tree[0]["id"] == str(root.id)
        assert [r["id"] for r in tree[0]["replies"]] == [str(reply.id)]
        assert tree[0]["user"]["name"] == "Olive Owner"

    @pytest.mark.asyncio
    async def test_reply_activity_message(self, session, org, owner):
        note = await _note(session, org, owner)
        root = await comment_service.add_comment(session, note, owner.id, "root")
        await comment_service.add_comment(session, note, owner.id, "reply", parent_id=root.id)

        messages = {format_activity_message(log) for log in await get_note_activity_logs(session, note.id)}
        assert "Olive Owner added a comment" in messages
        assert "Olive Owner replied to a comment" in messages

    @pytest.mark.asyncio
    async def test_empty_comment_rejected(self, session, org, owner):
        note = await _note(session, org, owner)
        with pytest.raises(ServiceError):
            await comment_service.add_comment(session, note, owner.id, "   ")

    @pytest.mark.asyncio
    async def test_parent_must_belong_to_note(self, session, org, owner):
        first = await _note(session, org, owner)
        second = await _note(session, org, owner)
        parent = await comment_service.add_comment(session, first, owner.id, "root")
        with pytest.raises(ServiceError):
            await comment_service.add_comment(session, second, owner.id, "x", parent_id=parent.id)

    @pytest.mark.asyncio
    async def test_delete_removes_reply_subtree(self, session, org, owner):
        note = await _note(session, org, owner)
        root = await comment_service.add_comment(session, note, owner.id, "root")
        child = await comment_service.add_comment(session, note, owner.id, "child", parent_id=root.id)
        await comment_service.add_comment(session, note, owner.id, "grandchild", parent_id=child.id)

        await comment_service.delete_comment(session, note, root.id, owner.id)

        count = await session.execute(select(func.count()).select_from(NoteComment))
        assert count.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_only_author_or_admin_deletes(self, session, org, owner):
        author = await make_user(session, "mia")
        other = await make_user(session, "max")
        await add_member(session, org, author)
        await add_member(session, org, other)
        note = await _note(session, org, author)
        comment = await comment_service.add_comment(session, note, author.id, "mine")

        with pytest.raises(ForbiddenError):
            await comment_service.delete_comment(session, note, comment.id, other.id)
        await comment_service.delete_comment(session, note, comment.id, owner.id)

    @pytest.mark.asyncio
    async def test_unknown_comment(self, session, org, owner):
        note = await _note(session, org, owner)
        with pytest.raises(NotFoundError):
            await comment_service.delete_comment(session, note, "nope", owner.id)
