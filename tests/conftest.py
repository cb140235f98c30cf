import itertools

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from role_authz.core.events import InMemoryEventBus, RoleEvent, RoleEventType
from role_authz.models.base import Base, utcnow
# Import all model classes to ensure they're registered with SQLAlchemy
from role_authz.models.user import User
from role_authz.models.role import Role  # noqa: F401
from role_authz.models.role_assignment import RoleAssignment  # noqa: F401
from role_authz.services.authorization_service import AuthorizationService

# Test database (SQLite in-memory for speed)
# Use StaticPool to ensure all connections share the same in-memory database
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Create fresh database for each test"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def published_events() -> list[RoleEvent]:
    """Every event delivered by the event bus, in order"""
    return []


@pytest.fixture
def event_bus(published_events):
    bus = InMemoryEventBus()
    bus.subscribe(published_events.append)
    return bus


@pytest.fixture
def service(db_session, event_bus):
    """Authorization service wired to the test database and event bus"""
    return AuthorizationService(db_session, publisher=event_bus)


@pytest.fixture
def registry(service):
    return service.registry


@pytest.fixture
def seeded_roles(registry):
    """Seed Owner, Admin and User"""
    return registry.ensure_system_roles()


@pytest.fixture
def make_user(db_session):
    """Factory creating committed accounts"""
    counter = itertools.count(1)

    def _make_user(email: str | None = None, is_active: bool = True, confirmed: bool = True) -> User:
        user = User(
            email=email or f"user{next(counter)}@example.com",
            is_active=is_active,
            confirmed_at=utcnow() if confirmed else None,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def owner(service, make_user, seeded_roles):
    """First account, elected Owner"""
    user = make_user("owner@example.com")
    assert service.ensure_first_user_is_owner(user) == "owner"
    return user


@pytest.fixture
def regular_user(service, make_user, owner):
    """Second account, holds the default User role"""
    user = make_user("regular@example.com")
    assert service.ensure_first_user_is_owner(user) == "user"
    return user


@pytest.fixture
def events_of(published_events):
    """Filter recorded events by type"""

    def _events_of(event_type: RoleEventType) -> list[RoleEvent]:
        return [event for event in published_events if event.type == event_type]

    return _events_of
