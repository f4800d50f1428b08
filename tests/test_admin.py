"""
Tests for admin bulk user moderation.
"""
import pytest

from wishkeep.core.errors import ForbiddenError, ValidationError
from wishkeep.db.store import Store
from wishkeep.services.identity import Actor, AuthMethod
from wishkeep.services.tokens import TokenStatus


pytestmark = pytest.mark.anyio


class TestBulkUsers:
    async def test_suspend_revokes_tokens_and_reports_missing(self, services, seed, session_factory):
        admin = await seed.user(is_admin=True)
        target = await seed.user()
        created = await services.tokens.create_token(Actor(user_id=target.id, auth_method=AuthMethod.SESSION), "cli")

        result = await services.admin.bulk_update_users(admin.id, "suspend", [target.id, 999999, target.id])

        assert result.succeeded == [target.id]
        assert [(f.id, f.reason) for f in result.failed] == [(999999, "not_found")]
        assert result.total_processed == 2
        async with session_factory() as db_session:
            reloaded = await Store(db_session).get_user(target.id)
        assert reloaded.is_suspended

        services.store.session.expire_all()
        validation = await services.tokens.validate(created.secret)
        assert validation.status is TokenStatus.REVOKED

    async def test_reactivate_and_revoke_admin(self, services, seed, session_factory):
        admin = await seed.user(is_admin=True)
        suspended = await seed.user(suspended=True)
        other_admin = await seed.user(is_admin=True)

        await services.admin.bulk_update_users(admin.id, "reactivate", [suspended.id])
        await services.admin.bulk_update_users(admin.id, "revoke_admin", [other_admin.id])

        async with session_factory() as db_session:
            store = Store(db_session)
            assert not (await store.get_user(suspended.id)).is_suspended
            assert not (await store.get_user(other_admin.id)).is_admin

    async def test_self_inclusion_rejects_whole_request(self, services, seed, session_factory):
        admin = await seed.user(is_admin=True)
        target = await seed.user()

        with pytest.raises(ValidationError):
            await services.admin.bulk_update_users(admin.id, "suspend", [target.id, admin.id])

        async with session_factory() as db_session:
            assert not (await Store(db_session).get_user(target.id)).is_suspended

    async def test_non_admin_is_forbidden(self, services, seed):
        regular = await seed.user()
        target = await seed.user()
        with pytest.raises(ForbiddenError):
            await services.admin.bulk_update_users(regular.id, "suspend", [target.id])

    async def test_suspended_admin_is_forbidden(self, services, seed):
        admin = await seed.user(is_admin=True, suspended=True)
        target = await seed.user()
        with pytest.raises(ForbiddenError):
            await services.admin.bulk_update_users(admin.id, "suspend", [target.id])


class TestBulkUsersRoute:
    async def test_route_shape(self, async_client, seed):
        admin = await seed.user(is_admin=True)
        target = await seed.user()
        response = await async_client.post(
            "/admin/users/bulk",
            json={"action": "suspend", "user_ids": [target.id]},
            headers=seed.auth_headers(admin),
        )
        assert response.status_code == 200
        assert response.json() == {"succeeded": [target.id], "failed": [], "total_processed": 1}

    async def test_suspended_user_is_locked_out(self, async_client, seed):
        admin = await seed.user(is_admin=True)
        target = await seed.user()
        await async_client.post(
            "/admin/users/bulk",
            json={"action": "suspend", "user_ids": [target.id]},
            headers=seed.auth_headers(admin),
        )
        response = await async_client.get("/auth/me", headers=seed.auth_headers(target))
        assert response.status_code == 403

    async def test_unknown_action_is_422(self, async_client, seed):
        admin = await seed.user(is_admin=True)
        response = await async_client.post(
            "/admin/users/bulk",
            json={"action": "delete", "user_ids": [1]},
            headers=seed.auth_headers(admin),
        )
        assert response.status_code == 422
