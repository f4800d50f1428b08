"""
Tests for list management: password unlock, stale-write detection, co-admins and group sharing.
"""
import asyncio

import pytest

from wishkeep.core.errors import STALE_WRITE, ConflictError, ForbiddenError, NotFoundError, ValidationError
from wishkeep.core.security import as_utc
from wishkeep.api.deps import Services
from wishkeep.db.store import Store
from wishkeep.services.permissions import Action, ListAccess, Resource


pytestmark = pytest.mark.anyio


async def _list_entry(session_factory, list_id, wish_id):
    async with session_factory() as db_session:
        return await Store(db_session).get_list_wish(list_id, wish_id)


class TestUnlock:
    async def test_unlock_grants_cookie_for_that_list(self, services, seed):
        owner = await seed.user()
        wish_list = await seed.wish_list(owner, password="hunter22")
        other_list = await seed.wish_list(owner, password="other-pass")

        result = await services.lists.unlock(wish_list.id, "hunter22")

        cookie = ListAccess(cookie=result.cookie)
        assert await services.permissions.can(None, Action.VIEW, Resource.list(wish_list.id), cookie)
        assert not await services.permissions.can(None, Action.VIEW, Resource.list(other_list.id), cookie)

    async def test_unlock_errors(self, services, seed):
        owner = await seed.user()
        protected = await seed.wish_list(owner, password="hunter22")
        public = await seed.wish_list(owner, visibility="public")
        private = await seed.wish_list(owner, visibility="private")

        with pytest.raises(ForbiddenError):
            await services.lists.unlock(protected.id, "wrong")
        with pytest.raises(ValidationError):
            await services.lists.unlock(public.id, "anything")
        with pytest.raises(NotFoundError):
            await services.lists.unlock(private.id, "anything")
        with pytest.raises(NotFoundError):
            await services.lists.unlock(999999, "anything")

    async def test_unlock_by_share_token_extends_existing_cookie(self, services, seed):
        owner = await seed.user()
        first = await seed.wish_list(owner, password="hunter22")
        second = await seed.wish_list(owner, password="other-pass")

        cookie = (await services.lists.unlock(first.id, "hunter22")).cookie
        cookie = (await services.lists.unlock_by_share_token(second.share_token, "other-pass", cookie)).cookie

        access = ListAccess(cookie=cookie)
        assert await services.permissions.can(None, Action.VIEW, Resource.list(first.id), access)
        assert await services.permissions.can(None, Action.VIEW, Resource.list(second.id), access)

    async def test_password_change_drops_earlier_unlocks(self, services, seed):
        owner = await seed.user()
        wish_list = await seed.wish_list(owner, password="hunter22")
        cookie = (await services.lists.unlock(wish_list.id, "hunter22")).cookie

        await services.lists.set_password(wish_list.id, owner.id, "brand-new")

        access = ListAccess(cookie=cookie)
        assert not await services.permissions.can(None, Action.VIEW, Resource.list(wish_list.id), access)

    async def test_only_owner_sets_password(self, services, seed):
        owner = await seed.user()
        co_admin = await seed.user()
        wish_list = await seed.wish_list(owner, visibility="private")
        await seed.list_admin(wish_list, co_admin)

        with pytest.raises(ForbiddenError):
            await services.lists.set_password(wish_list.id, co_admin.id, "hunter22")
        with pytest.raises(ValidationError):
            await services.lists.set_password(wish_list.id, owner.id, "abc")

        updated = await services.lists.set_password(wish_list.id, owner.id, "hunter22")
        assert updated.visibility == "password"
        cleared = await services.lists.set_password(wish_list.id, owner.id, None)
        assert cleared.visibility == "private"
        assert cleared.password_hash is None


class TestReorder:
    async def test_reorder_with_current_timestamp(self, services, seed, session_factory):
        owner = await seed.user()
        wish_list = await seed.wish_list(owner)
        wish = await seed.wish(owner, wish_list)
        entry = await _list_entry(session_factory, wish_list.id, wish.id)

        moved = await services.lists.reorder_wish(wish_list.id, wish.id, 7.5, entry.updated_at, owner.id)

        assert moved.sort_order == 7.5
        assert as_utc(moved.updated_at) > as_utc(entry.updated_at)

    async def test_stale_timestamp_is_rejected(self, services, seed, session_factory):
        owner = await seed.user()
        co_admin = await seed.user()
        wish_list = await seed.wish_list(owner)
        await seed.list_admin(wish_list, co_admin)
        wish = await seed.wish(owner, wish_list)
        entry = await _list_entry(session_factory, wish_list.id, wish.id)

        await services.lists.reorder_wish(wish_list.id, wish.id, 2.0, entry.updated_at, co_admin.id)
        with pytest.raises(ConflictError) as exc_info:
            await services.lists.reorder_wish(
                wish_list.id,
                wish.id,
                3.0,
                entry.updated_at,
                owner.id,
            )
        assert exc_info.value.code == STALE_WRITE

    async def test_viewer_cannot_reorder(self, services, seed, session_factory):
        owner = await seed.user()
        viewer = await seed.user()
        wish_list = await seed.wish_list(owner)
        wish = await seed.wish(owner, wish_list)
        entry = await _list_entry(session_factory, wish_list.id, wish.id)
        with pytest.raises(ForbiddenError):
            await services.lists.reorder_wish(wish_list.id, wish.id, 2.0, entry.updated_at, viewer.id)

    async def test_concurrent_moves_with_same_timestamp_have_one_winner(self, seed, session_factory, container):
        owner = await seed.user()
        co_admin = await seed.user()
        wish_list = await seed.wish_list(owner)
        await seed.list_admin(wish_list, co_admin)
        wish = await seed.wish(owner, wish_list)
        entry = await _list_entry(session_factory, wish_list.id, wish.id)

        async def attempt(actor_id, position):
            async with session_factory() as db_session:
                service = Services.build(container, db_session).lists
                try:
                    await service.reorder_wish(wish_list.id, wish.id, position, entry.updated_at, actor_id)
                except ConflictError as exc:
                    return exc.code
                return "ok"

        results = await asyncio.gather(attempt(owner.id, 10.0), attempt(co_admin.id, 20.0))

        assert sorted(results) == sorted(["ok", STALE_WRITE])
        final = await _list_entry(session_factory, wish_list.id, wish.id)
        assert final.sort_order == (10.0 if results[0] == "ok" else 20.0)

    async def test_missing_entry_is_not_found(self, services, seed, session_factory):
        owner = await seed.user()
        wish_list = await seed.wish_list(owner)
        wish = await seed.wish(owner, wish_list)
        entry = await _list_entry(session_factory, wish_list.id, wish.id)
        stray = await seed.wish(owner, title="Stray")
        with pytest.raises(NotFoundError):
            await services.lists.reorder_wish(wish_list.id, stray.id, 2.0, entry.updated_at, owner.id)


class TestAdminsAndSharing:
    async def test_owner_manages_co_admins(self, services, seed):
        owner = await seed.user()
        helper = await seed.user()
        wish_list = await seed.wish_list(owner, visibility="private")

        await services.lists.add_admin(wish_list.id, helper.id, owner.id)
        assert await services.permissions.can(helper.id, Action.EDIT, Resource.list(wish_list.id))
        with pytest.raises(ConflictError):
            await services.lists.add_admin(wish_list.id, helper.id, owner.id)
        with pytest.raises(ValidationError):
            await services.lists.add_admin(wish_list.id, owner.id, owner.id)
        with pytest.raises(NotFoundError):
            await services.lists.add_admin(wish_list.id, 999999, owner.id)

        await services.lists.remove_admin(wish_list.id, helper.id, owner.id)
        assert not await services.permissions.can(helper.id, Action.EDIT, Resource.list(wish_list.id))

    async def test_co_admin_cannot_add_admins(self, services, seed):
        owner = await seed.user()
        co_admin = await seed.user()
        newcomer = await seed.user()
        wish_list = await seed.wish_list(owner, visibility="private")
        await seed.list_admin(wish_list, co_admin)
        with pytest.raises(ForbiddenError):
            await services.lists.add_admin(wish_list.id, newcomer.id, co_admin.id)

    async def test_share_with_group_needs_membership(self, services, seed):
        owner = await seed.user()
        member = await seed.user()
        wish_list = await seed.wish_list(owner, visibility="private")
        own_group = await seed.group(admins=(owner,), members=(member,))
        foreign_group = await seed.group(admins=(member,))

        await services.lists.share_with_group(wish_list.id, own_group.id, owner.id)
        assert await services.permissions.can(member.id, Action.VIEW, Resource.list(wish_list.id))

        with pytest.raises(ConflictError):
            await services.lists.share_with_group(wish_list.id, own_group.id, owner.id)
        with pytest.raises(NotFoundError):
            await services.lists.share_with_group(wish_list.id, foreign_group.id, owner.id)


class TestListRoutes:
    async def test_unlock_sets_http_only_cookie(self, async_client, seed):
        owner = await seed.user()
        wish_list = await seed.wish_list(owner, password="hunter22")
        await seed.wish(owner, wish_list)

        response = await async_client.post(f"/lists/{wish_list.id}/unlock", json={"password": "hunter22"})
        assert response.status_code == 200
        assert response.json() == {"list_id": wish_list.id, "unlocked": True}
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("wk_list_access=")
        assert "HttpOnly" in set_cookie

        cookie_value = set_cookie.split(";", 1)[0].split("=", 1)[1]
        status = await async_client.get(
            f"/lists/{wish_list.id}/reservation-status",
            headers={"Cookie": f"wk_list_access={cookie_value}"},
        )
        assert status.status_code == 200

    async def test_wrong_password_is_forbidden(self, async_client, seed):
        owner = await seed.user()
        wish_list = await seed.wish_list(owner, password="hunter22")
        response = await async_client.post(
            f"/lists/public/{wish_list.share_token}/unlock",
            json={"password": "nope"},
        )
        assert response.status_code == 403
        assert response.json() == {"detail": "Invalid password", "code": "FORBIDDEN"}

    async def test_stale_reorder_is_409(self, async_client, seed, session_factory):
        owner = await seed.user()
        wish_list = await seed.wish_list(owner)
        wish = await seed.wish(owner, wish_list)
        entry = await _list_entry(session_factory, wish_list.id, wish.id)
        headers = seed.auth_headers(owner)
        url = f"/lists/{wish_list.id}/wishes/{wish.id}/position"
        expected = as_utc(entry.updated_at).isoformat()

        first = await async_client.patch(url, json={"sort_order": 4.0, "expected_updated_at": expected}, headers=headers)
        assert first.status_code == 200
        assert first.json()["sort_order"] == 4.0

        second = await async_client.patch(url, json={"sort_order": 5.0, "expected_updated_at": expected}, headers=headers)
        assert second.status_code == 409
        assert second.json()["code"] == "STALE_WRITE"

    async def test_admin_endpoints(self, async_client, seed):
        owner = await seed.user()
        helper = await seed.user()
        wish_list = await seed.wish_list(owner, visibility="private")
        headers = seed.auth_headers(owner)

        added = await async_client.post(f"/lists/{wish_list.id}/admins", json={"user_id": helper.id}, headers=headers)
        assert added.status_code == 204
        removed = await async_client.delete(f"/lists/{wish_list.id}/admins/{helper.id}", headers=headers)
        assert removed.status_code == 204
        again = await async_client.delete(f"/lists/{wish_list.id}/admins/{helper.id}", headers=headers)
        assert again.status_code == 404
