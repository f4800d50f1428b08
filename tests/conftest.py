import os
import warnings
from datetime import datetime
from uuid import uuid4

import pytest

# Set environment variables BEFORE importing app modules
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///file:wishkeep_tests?mode=memory&cache=shared&uri=true"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-32-chars-minimum!!"
os.environ["EMAIL_NOTIFICATIONS_ENABLED"] = "false"

warnings.filterwarnings("ignore", category=DeprecationWarning)

from httpx import ASGITransport, AsyncClient

from wishkeep.api.deps import ServiceContainer, Services
from wishkeep.core.config import Settings
from wishkeep.core.security import create_access_token, get_password_hash, sha256_hex, utcnow
from wishkeep.db.session import build_engine, build_session_factory, create_schema, get_db
from wishkeep.main import create_app
from wishkeep.models.models import (
    Group,
    GroupMember,
    ListAdmin,
    ListGroup,
    ListWish,
    Reservation,
    User,
    VisibilityEnum,
    Wish,
    WishList,
)

DEFAULT_PASSWORD = "Secret123"
_default_hash: str | None = None


def _password_hash(password: str) -> str:
    # bcrypt is slow on purpose; hash the shared fixture password only once.
    global _default_hash
    if password != DEFAULT_PASSWORD:
        return get_password_hash(password)
    if _default_hash is None:
        _default_hash = get_password_hash(DEFAULT_PASSWORD)
    return _default_hash


def pytest_configure(config):
    warnings.filterwarnings("ignore", category=DeprecationWarning)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        jwt_secret_key="test-secret-key-32-chars-minimum!!",
        database_url="sqlite+aiosqlite:///:memory:",
        rate_limit_enabled=False,
        email_notifications_enabled=False,
        reservation_tx_timeout_seconds=10.0,
    )


@pytest.fixture
def container(test_settings) -> ServiceContainer:
    return ServiceContainer.from_settings(test_settings)


@pytest.fixture
async def engine(tmp_path):
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_schema(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def services(container, session) -> Services:
    return Services.build(container, session)


class Seeder:
    """Creates rows directly; the HTTP surface has no CRUD for lists or wishes."""

    def __init__(self, session_factory, settings: Settings) -> None:
        self.session_factory = session_factory
        self.settings = settings

    async def _save(self, *rows):
        async with self.session_factory() as db_session:
            db_session.add_all(rows)
            await db_session.commit()
        return rows[0]

    async def user(
        self,
        *,
        email: str | None = None,
        name: str = "Test User",
        password: str = DEFAULT_PASSWORD,
        is_admin: bool = False,
        suspended: bool = False,
    ) -> User:
        return await self._save(
            User(
                email=email or f"user-{uuid4().hex}@example.com",
                name=name,
                hashed_password=_password_hash(password),
                is_admin=is_admin,
                suspended_at=utcnow() if suspended else None,
            )
        )

    async def wish_list(
        self,
        owner: User,
        *,
        visibility: str = VisibilityEnum.PUBLIC.value,
        password: str | None = None,
        name: str = "Birthday",
    ) -> WishList:
        if password is not None:
            visibility = VisibilityEnum.PASSWORD.value
        return await self._save(
            WishList(
                owner_id=owner.id,
                name=name,
                visibility=visibility,
                password_hash=get_password_hash(password) if password else None,
            )
        )

    async def wish(self, owner: User, *lists: WishList, title: str = "Gift") -> Wish:
        wish = await self._save(Wish(owner_id=owner.id, title=title))
        for position, wish_list in enumerate(lists):
            await self._save(ListWish(list_id=wish_list.id, wish_id=wish.id, sort_order=float(position + 1)))
        return wish

    async def list_admin(self, wish_list: WishList, user: User) -> ListAdmin:
        return await self._save(ListAdmin(list_id=wish_list.id, user_id=user.id))

    async def group(
        self,
        *,
        admins: tuple[User, ...] = (),
        members: tuple[User, ...] = (),
        members_can_invite: bool = False,
    ) -> Group:
        group = await self._save(Group(name="Family", members_can_invite=members_can_invite))
        rows = [GroupMember(group_id=group.id, user_id=u.id, role="admin") for u in admins]
        rows += [GroupMember(group_id=group.id, user_id=u.id, role="member") for u in members]
        if rows:
            await self._save(*rows)
        return group

    async def share(self, wish_list: WishList, group: Group) -> ListGroup:
        return await self._save(ListGroup(list_id=wish_list.id, group_id=group.id))

    async def reservation(
        self,
        wish: Wish,
        *,
        user: User | None = None,
        token: str | None = None,
        legacy_token: str | None = None,
        reserver_email: str | None = None,
        reserved_at: datetime | None = None,
    ) -> Reservation:
        row = Reservation(
            wish_id=wish.id,
            user_id=user.id if user else None,
            access_token_hash=sha256_hex(token) if token else None,
            legacy_access_token=legacy_token,
            reserver_email=reserver_email,
        )
        if reserved_at is not None:
            row.reserved_at = reserved_at
        return await self._save(row)

    def auth_headers(self, user: User) -> dict[str, str]:
        token = create_access_token(str(user.id), self.settings)
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def seed(session_factory, test_settings) -> Seeder:
    return Seeder(session_factory, test_settings)


@pytest.fixture
def app(test_settings, session_factory):
    application = create_app(test_settings)

    async def override_get_db():
        async with session_factory() as db_session:
            yield db_session

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def async_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def anyio_backend():
    return "asyncio"
