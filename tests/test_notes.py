"""
Tests for the note service: validation, visibility, sharing, favorites,
search and deletion.
"""

import io
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image
from sqlalchemy import func, select

from conftest import add_member, make_user
from database.models import NoteAccess, NoteActivityLog, NoteComment, OrganizationNote
from notes import comments as comment_service
from notes import service as note_service
from notes.activity import format_activity_message, get_note_activity_logs
from utils.errors import ForbiddenError, NotFoundError, ServiceError


def _hooks():
    hooks = MagicMock()
    hooks.before_note_deleted = AsyncMock()
    return hooks


def _png(width=40, height=30) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), "red").save(buf, format="PNG")
    return buf.getvalue()


async def _note(session, org, user, *, title="Plan", content="Body", is_public=True, hooks=None):
    return await note_service.create_note(
        session,
        organization_id=org.id,
        user_id=user.id,
        title=title,
        content=content,
        is_public=is_public,
        hooks=hooks or _hooks(),
    )


class TestValidation:
    def test_title_is_trimmed(self):
        assert note_service.validate_note_fields("  Hello ", "x") == ("Hello", "x")

    @pytest.mark.parametrize(
        "title,content",
        [("", "body"), ("   ", "body"), ("t" * 101, "body"), ("ok", ""), ("ok", "c" * 10001)],
    )
    def test_rejects_out_of_range(self, title, content):
        with pytest.raises(ServiceError):
            note_service.validate_note_fields(title, content)

    def test_limits_are_inclusive(self):
        note_service.validate_note_fields("t" * 100, "c" * 10000)


class TestCreateAndRead:
    @pytest.mark.asyncio
    async def test_create_logs_activity_and_fires_hook(self, session, org, owner):
        hooks = _hooks()
        note = await _note(session, org, owner, hooks=hooks)

        hooks.after_note_created.assert_called_once_with(session, note.id, owner.id)
        logs = await get_note_activity_logs(session, note.id)
        assert [log.action for log in logs] == ["created"]
        assert format_activity_message(logs[0]) == "Olive Owner created the note"

    @pytest.mark.asyncio
    async def test_private_note_hidden_from_other_members(self, session, org, owner):
        member = await make_user(session, "mia")
        await add_member(session, org, member)
        note = await _note(session, org, owner, is_public=False)

        with pytest.raises(NotFoundError):
            await note_service.get_note(session, org.id, note.id, member.id)
        assert await note_service.list_notes(session, org.id, member.id) == []

    @pytest.mark.asyncio
    async def test_granted_access_makes_private_note_visible(self, session, org, owner):
        member = await make_user(session, "mia")
        await add_member(session, org, member)
        note = await _note(session, org, owner, is_public=False)

        await note_service.grant_note_access(session, note, owner.id, member.id)

        loaded = await note_service.get_note(session, org.id, note.id, member.id)
        assert loaded.id == note.id
        assert [n.id for n in await note_service.list_notes(session, org.id, member.id)] == [note.id]

    @pytest.mark.asyncio
    async def test_bad_note_id_is_not_found(self, session, org, owner):
        with pytest.raises(NotFoundError):
            await note_service.get_note(session, org.id, "not-a-uuid", owner.id)

    @pytest.mark.asyncio
    async def test_record_view_logs_viewed(self, session, org, owner):
        note = await _note(session, org, owner)
        await note_service.get_note(session, org.id, note.id, owner.id, record_view=True)
        actions = {log.action for log in await get_note_activity_logs(session, note.id)}
        assert actions == {"created", "viewed"}


class TestUpdate:
    @pytest.mark.asyncio
    async def test_reports_changed_fields(self, session, org, owner):
        hooks = _hooks()
        note = await _note(session, org, owner, hooks=hooks)

        changes = await note_service.update_note(session, note, owner.id, title="New title", hooks=hooks)

        assert changes == {"titleChanged": True, "contentChanged": False}
        hooks.after_note_updated.assert_called_once_with(
            session,
            note.id,
            owner.id,
            {"title": "Plan", "content": "Body"},
            {"title": "New title", "content": "Body"},
        )

    @pytest.mark.asyncio
    async def test_no_change_skips_hook_and_log(self, session, org, owner):
        hooks = _hooks()
        note = await _note(session, org, owner, hooks=hooks)

        changes = await note_service.update_note(session, note, owner.id, title="Plan", content="Body", hooks=hooks)

        assert changes == {"titleChanged": False, "contentChanged": False}
        hooks.after_note_updated.assert_not_called()
        assert [log.action for log in await get_note_activity_logs(session, note.id)] == ["created"]


class TestSharing:
    @pytest.mark.asyncio
    async def test_member_cannot_change_others_sharing(self, session, org, owner):
        member = await make_user(session, "mia")
        await add_member(session, org, member)
        note = await _note(session, org, owner)

        with pytest.raises(ForbiddenError):
            await note_service.set_note_public(session, note, member.id, False)

    @pytest.mark.asyncio
    async def test_set_private_logs_sharing_change(self, session, org, owner):
        note = await _note(session, org, owner)
        await note_service.set_note_public(session, note, owner.id, False)

        logs = await get_note_activity_logs(session, note.id)
        sharing = [log for log in logs if log.action == "sharing_changed"]
        assert len(sharing) == 1
        assert format_activity_message(sharing[0]) == "Olive Owner made the note private"

    @pytest.mark.asyncio
    async def test_grant_requires_target_membership(self, session, org, owner):
        outsider = await make_user(session, "otto")
        note = await _note(session, org, owner)
        with pytest.raises(ServiceError):
            await note_service.grant_note_access(session, note, owner.id, outsider.id)

    @pytest.mark.asyncio
    async def test_grant_is_idempotent_and_revoke_reports(self, session, org, owner):
        member = await make_user(session, "mia", name="Mia")
        await add_member(session, org, member)
        note = await _note(session, org, owner, is_public=False)

        await note_service.grant_note_access(session, note, owner.id, member.id)
        await note_service.grant_note_access(session, note, owner.id, member.id)
        count = await session.execute(select(func.count()).select_from(NoteAccess))
        assert count.scalar_one() == 1

        assert await note_service.revoke_note_access(session, note, owner.id, member.id) is True
        assert await note_service.revoke_note_access(session, note, owner.id, member.id) is False

        messages = {format_activity_message(log) for log in await get_note_activity_logs(session, note.id)}
        assert "Olive Owner granted access to Mia" in messages
        assert "Olive Owner revoked access from Mia" in messages


class TestFavoritesAndSearch:
    @pytest.mark.asyncio
    async def test_toggle_favorite(self, session, org, owner):
        note = await _note(session, org, owner)
        assert await note_service.toggle_favorite(session, note, owner.id) is True
        assert [n.id for n in await note_service.list_favorite_notes(session, org.id, owner.id)] == [note.id]
        assert await note_service.toggle_favorite(session, note, owner.id) is False
        assert await note_service.list_favorite_notes(session, org.id, owner.id) == []

    @pytest.mark.asyncio
    async def test_search_matches_title_or_content_and_trims(self, session, org, owner):
        await _note(session, org, owner, title="Roadmap", content="x" * 150)
        await _note(session, org, owner, title="Other", content="mentions roadmap inside")
        await _note(session, org, owner, title="Unrelated", content="nothing")

        results = await note_service.search_notes(session, org.id, owner.id, "ROADMAP")

        assert {r["title"] for r in results} == {"Roadmap", "Other"}
        long = next(r for r in results if r["title"] == "Roadmap")
        assert long["content"] == "x" * 100 + "..."

    @pytest.mark.asyncio
    async def test_blank_search_returns_nothing(self, session, org, owner):
        await _note(session, org, owner)
        assert await note_service.search_notes(session, org.id, owner.id, "  ") == []

    @pytest.mark.asyncio
    async def test_search_respects_visibility(self, session, org, owner):
        member = await make_user(session, "mia")
        await add_member(session, org, member)
        await _note(session, org, owner, title="Secret plan", is_public=False)
        assert await note_service.search_notes(session, org.id, member.id, "plan") == []

    @pytest.mark.asyncio
    async def test_search_returns_ten_newest(self, session, org, owner):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(11):
            note = await _note(session, org, owner, title=f"Standup {i}")
            note.updated_at = start + timedelta(hours=i)
        await session.flush()

        results = await note_service.search_notes(session, org.id, owner.id, "standup")

        assert [r["title"] for r in results] == [f"Standup {i}" for i in range(10, 0, -1)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["_", "%", "\\"])
    async def test_search_treats_wildcards_literally(self, session, org, owner, query):
        await _note(session, org, owner, title="Plan", content="Body")
        await _note(session, org, owner, title=f"50{query} done", content="Body")

        results = await note_service.search_notes(session, org.id, owner.id, query)

        assert [r["title"] for r in results] == [f"50{query} done"]

    def test_escape_like(self):
        assert note_service.escape_like("a_b%c\\d") == "a\\_b\\%c\\\\d"


class TestDelete:
    @pytest.mark.asyncio
    async def test_member_cannot_delete_others_note(self, session, org, owner):
        member = await make_user(session, "mia")
        await add_member(session, org, member)
        note = await _note(session, org, owner)
        with pytest.raises(ForbiddenError):
            await note_service.delete_note(session, note, member.id, hooks=_hooks())

    @pytest.mark.asyncio
    async def test_admin_can_delete_and_children_go(self, session, org, owner):
        author = await make_user(session, "mia")
        await add_member(session, org, author)
        note = await _note(session, org, author)
        await comment_service.add_comment(session, note, author.id, "first")
        await note_service.add_note_image(session, note, _png())
        note_id = note.id

        hooks = _hooks()
        await note_service.delete_note(session, note, owner.id, hooks=hooks)

        hooks.before_note_deleted.assert_awaited_once_with(session, note_id, owner.id)
        for model, column in (
            (OrganizationNote, OrganizationNote.id),
            (NoteComment, NoteComment.note_id),
            (NoteActivityLog, NoteActivityLog.note_id),
        ):
            count = await session.execute(select(func.count()).select_from(model).where(column == note_id))
            assert count.scalar_one() == 0


class TestImages:
    @pytest.mark.asyncio
    async def test_add_and_delete_image(self, session, org, owner):
        note = await _note(session, org, owner)
        image = await note_service.add_note_image(session, note, _png(), alt_text="diagram", crop=(0, 0, 20, 20))

        assert image.object_key.startswith(f"orgs/{org.id}/notes/{note.id}/")
        await note_service.delete_note_image(session, note, image.id)
        with pytest.raises(NotFoundError):
            await note_service.delete_note_image(session, note, image.id)

    @pytest.mark.asyncio
    async def test_invalid_image_raises_value_error(self, session, org, owner):
        note = await _note(session, org, owner)
        with pytest.raises(ValueError):
            await note_service.add_note_image(session, note, b"not an image")

    @pytest.mark.asyncio
    async def test_unknown_image_id(self, session, org, owner):
        note = await _note(session, org, owner)
        with pytest.raises(NotFoundError):
            await note_service.delete_note_image(session, note, str(uuid.uuid4()))
        with pytest.raises(NotFoundError):
            await note_service.delete_note_image(session, note, "bogus")
