"""
Tests for organizations, roles, memberships and invitations.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import add_member, make_org, make_user
from database.helpers import get_membership
from database.models import User
from organizations import invitations as invitation_service
from organizations import service as org_service
from organizations.roles import has_role, is_valid_role
from utils.errors import ConflictError, ForbiddenError, NotFoundError, ServiceError


class TestRoles:
    def test_hierarchy(self):
        assert has_role("admin", "member")
        assert has_role("member", "member")
        assert not has_role("viewer", "member")
        assert not has_role("unknown", "guest")

    def test_unknown_required_role(self):
        with pytest.raises(ValueError):
            has_role("admin", "owner")

    def test_is_valid_role(self):
        assert is_valid_role("guest")
        assert not is_valid_role("superuser")


class TestCreateOrganization:
    @pytest.mark.asyncio
    async def test_creator_becomes_default_admin(self, session, owner):
        first = await make_org(session, owner, "first")
        second = await make_org(session, owner, "second")

        assert (await get_membership(session, owner.id, second.id)).role == "admin"
        default = await org_service.get_user_default_organization(session, owner.id)
        assert default["organization"]["slug"] == "second"
        assert default["organization"]["user_count"] == 1
        assert (await get_membership(session, owner.id, first.id)).is_default is False

    @pytest.mark.asyncio
    async def test_duplicate_slug_conflicts(self, session, owner, org):
        with pytest.raises(ConflictError):
            await make_org(session, owner, "acme")

    @pytest.mark.asyncio
    async def test_invalid_slug(self, session, owner):
        with pytest.raises(ServiceError):
            await org_service.create_organization(session, name="Bad", slug="Not A Slug!", user_id=owner.id)

    @pytest.mark.asyncio
    async def test_set_default(self, session, owner):
        first = await make_org(session, owner, "first")
        await make_org(session, owner, "second")

        result = await org_service.set_user_default_organization(session, owner.id, first.id)

        assert result["organization"]["slug"] == "first"
        orgs = await org_service.get_user_organizations(session, owner.id)
        assert {o["organization"]["slug"]: o["is_default"] for o in orgs} == {"first": True, "second": False}

    @pytest.mark.asyncio
    async def test_default_falls_back_to_earliest(self, session, org):
        member = await make_user(session, "mia")
        await add_member(session, org, member)
        default = await org_service.get_user_default_organization(session, member.id)
        assert default["organization"]["slug"] == "acme"
        assert default["is_default"] is False


class TestAccess:
    @pytest.mark.asyncio
    async def test_require_org_member(self, session, owner, org):
        outsider = await make_user(session, "otto")
        viewer = await make_user(session, "vera")
        await add_member(session, org, viewer, role="viewer")

        with pytest.raises(NotFoundError):
            await org_service.require_org_member(session, "missing", owner.id)
        with pytest.raises(ForbiddenError):
            await org_service.require_org_member(session, "acme", outsider.id)
        with pytest.raises(ForbiddenError):
            await org_service.require_org_member(session, "acme", viewer.id, min_role="member")

        found, membership = await org_service.require_org_member(session, "acme", owner.id, min_role="admin")
        assert found.id == org.id and membership.role == "admin"

    @pytest.mark.asyncio
    async def test_inactive_organization_is_hidden(self, session, org):
        org.active = False
        await session.flush()
        assert await org_service.get_organization_by_slug(session, "acme") is None


class TestMembers:
    @pytest.mark.asyncio
    async def test_change_role_and_remove(self, session, org):
        member = await make_user(session, "mia")
        await add_member(session, org, member)

        updated = await org_service.update_member_role(session, org.id, member.id, "viewer")
        assert updated.role == "viewer"

        await org_service.remove_member(session, org.id, member.id)
        assert not await org_service.check_user_organization_access(session, member.id, org.id)
        assert await org_service.count_active_members(session, org.id) == 1

    @pytest.mark.asyncio
    async def test_last_admin_is_protected(self, session, owner, org):
        with pytest.raises(ConflictError):
            await org_service.update_member_role(session, org.id, owner.id, "member")
        with pytest.raises(ConflictError):
            await org_service.remove_member(session, org.id, owner.id)

    @pytest.mark.asyncio
    async def test_invalid_role_and_unknown_member(self, session, org):
        member = await make_user(session, "mia")
        await add_member(session, org, member)
        with pytest.raises(ServiceError):
            await org_service.update_member_role(session, org.id, member.id, "owner")
        with pytest.raises(NotFoundError):
            await org_service.remove_member(session, org.id, "not-a-uuid")

    @pytest.mark.asyncio
    async def test_list_members(self, session, org):
        member = await make_user(session, "mia")
        await add_member(session, org, member)
        members = await org_service.list_members(session, org.id)
        assert {m["username"]: m["role"] for m in members} == {"owner": "admin", "mia": "member"}


class TestInvitations:
    @pytest.mark.asyncio
    async def test_create_upserts_per_email(self, session, owner, org):
        first, is_new = await invitation_service.create_organization_invitation(
            session, organization_id=org.id, email="New@Example.com", inviter_id=owner.id
        )
        second, is_new_again = await invitation_service.create_organization_invitation(
            session, organization_id=org.id, email="new@example.com", inviter_id=owner.id, role="viewer"
        )

        assert is_new and not is_new_again
        assert first.id == second.id
        assert second.email == "new@example.com"
        assert second.role == "viewer"
        assert len(await invitation_service.get_organization_invitations(session, org.id)) == 1

    @pytest.mark.asyncio
    async def test_new_invitation_marks_onboarding_step(self, session, owner, org):
        from onboarding.service import get_onboarding_progress

        await invitation_service.create_organization_invitation(
            session, organization_id=org.id, email="a@example.com", inviter_id=owner.id
        )
        progress = await get_onboarding_progress(session, owner.id, org.id)
        step = next(s for s in progress["steps"] if s["key"] == "invite_members")
        assert step["is_completed"] is True

    @pytest.mark.asyncio
    async def test_failed_onboarding_write_keeps_the_invitation(self, session, owner, org):
        async def conflicting_write(session, *args):
            session.add(User(email=owner.email, username=owner.username, password_hash="x"))
            await session.flush()

        with patch("organizations.invitations.mark_step_completed", side_effect=conflicting_write):
            invitation, is_new = await invitation_service.create_organization_invitation(
                session, organization_id=org.id, email="b@example.com", inviter_id=owner.id
            )
        await session.commit()

        assert is_new
        pending = await invitation_service.get_organization_invitations(session, org.id)
        assert [i.email for i in pending] == ["b@example.com"]

    @pytest.mark.asyncio
    async def test_invalid_role(self, session, owner, org):
        with pytest.raises(ServiceError):
            await invitation_service.create_organization_invitation(
                session, organization_id=org.id, email="a@example.com", inviter_id=owner.id, role="boss"
            )

    @pytest.mark.asyncio
    async def test_accept_by_token(self, session, owner, org):
        invitee = await make_user(session, "ivy")
        invitation, _ = await invitation_service.create_organization_invitation(
            session, organization_id=org.id, email=invitee.email, inviter_id=owner.id, role="viewer"
        )

        result = await invitation_service.validate_and_accept_invitation(session, invitation.token, invitee.id)

        assert result["already_member"] is False
        assert result["organization"].id == org.id
        assert (await get_membership(session, invitee.id, org.id)).role == "viewer"
        assert await invitation_service.get_invitation_by_token(session, invitation.token) is None

    @pytest.mark.asyncio
    async def test_accept_when_already_member(self, session, owner, org):
        invitation, _ = await invitation_service.create_organization_invitation(
            session, organization_id=org.id, email=owner.email, inviter_id=owner.id
        )
        result = await invitation_service.validate_and_accept_invitation(session, invitation.token, owner.id)
        assert result["already_member"] is True
        assert (await get_membership(session, owner.id, org.id)).role == "admin"

    @pytest.mark.asyncio
    async def test_expired_and_unknown_tokens(self, session, owner, org):
        invitation, _ = await invitation_service.create_organization_invitation(
            session, organization_id=org.id, email="late@example.com", inviter_id=owner.id
        )
        invitation.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
        await session.flush()

        with pytest.raises(ServiceError, match="Invitation has expired"):
            await invitation_service.validate_and_accept_invitation(session, invitation.token, owner.id)
        with pytest.raises(NotFoundError, match="Invitation not found"):
            await invitation_service.validate_and_accept_invitation(session, "missing", owner.id)

    @pytest.mark.asyncio
    async def test_accept_all_pending_for_email(self, session, owner, org):
        other = await make_org(session, owner, "other")
        for organization in (org, other):
            await invitation_service.create_organization_invitation(
                session, organization_id=organization.id, email="pat@example.com", inviter_id=owner.id
            )
        pat = await make_user(session, "pat")

        results = await invitation_service.accept_invitations_by_email(session, "pat@example.com", pat.id)

        assert {r["organization"].slug for r in results} == {"acme", "other"}
        assert await invitation_service.get_pending_invitations_by_email(session, "PAT@example.com") == []

    @pytest.mark.asyncio
    async def test_delete_scoped_to_organization(self, session, owner, org):
        other = await make_org(session, owner, "other")
        invitation, _ = await invitation_service.create_organization_invitation(
            session, organization_id=org.id, email="x@example.com", inviter_id=owner.id
        )
        with pytest.raises(NotFoundError):
            await invitation_service.delete_organization_invitation(session, invitation.id, organization_id=other.id)
        await invitation_service.delete_organization_invitation(session, invitation.id, organization_id=org.id)
        assert await invitation_service.get_organization_invitations(session, org.id) == []

    @pytest.mark.asyncio
    async def test_email_link_and_subject(self, session, owner, org):
        from unittest.mock import AsyncMock, patch

        invitation, _ = await invitation_service.create_organization_invitation(
            session, organization_id=org.id, email="x@example.com", inviter_id=owner.id
        )
        with patch("organizations.invitations.send_email", new=AsyncMock(return_value={"status": "success"})) as send:
            await invitation_service.send_organization_invitation_email(
                invitation, organization_name="Acme", inviter_name="Olive"
            )

        kwargs = send.await_args.kwargs
        assert kwargs["subject"] == "You're invited to join Acme"
        assert f"https://app.example.com/join/{invitation.token}" in kwargs["html"]
