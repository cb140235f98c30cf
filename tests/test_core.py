import json
import threading
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from role_authz.bootstrap import bootstrap
from role_authz.config import Settings, settings
from role_authz.core.events import InMemoryEventBus, NullEventPublisher, RoleEvent, RoleEventType
from role_authz.core.exceptions import (
    ForbiddenException,
    LastOwnerException,
    RoleAuthzException,
    StoreUnavailableException,
)
from role_authz.core.locking import ProcessRoleLock, RowLevelRoleLock, role_lock_for
from role_authz.core.logging import LoggingContext, configure_logging, get_logger
from role_authz.core.transaction import after_commit, in_transaction, on_transaction_end, transaction
from role_authz.models.role import Role
from role_authz.models.system_roles import SystemRoles


class TestTransaction:
    """Tests for transaction scopes"""

    def test_commit_then_after_commit(self, db_session):
        """Callbacks run after the outermost scope commits"""
        seen = []

        with transaction(db_session):
            db_session.add(Role(name="Manager"))
            after_commit(db_session, lambda: seen.append("published"))
            assert seen == []
            assert in_transaction(db_session)

        assert seen == ["published"]
        assert not in_transaction(db_session)
        assert db_session.query(Role).filter_by(name="Manager").count() == 1

    def test_rollback_drops_callbacks(self, db_session):
        seen = []

        with pytest.raises(ValueError):
            with transaction(db_session):
                db_session.add(Role(name="Manager"))
                db_session.flush()
                after_commit(db_session, lambda: seen.append("published"))
                raise ValueError("boom")

        assert seen == []
        assert db_session.query(Role).count() == 0

        # Nothing left over for the next unit of work
        with transaction(db_session):
            pass
        assert seen == []

    def test_inner_failure_aborts_outer(self, db_session):
        """Nested scopes join the outer transaction"""
        with pytest.raises(ValueError):
            with transaction(db_session):
                db_session.add(Role(name="Outer"))
                db_session.flush()
                with transaction(db_session):
                    db_session.add(Role(name="Inner"))
                    db_session.flush()
                    raise ValueError("boom")

        assert db_session.query(Role).count() == 0

    def test_after_commit_outside_transaction_runs_immediately(self, db_session):
        seen = []

        after_commit(db_session, lambda: seen.append("now"))

        assert seen == ["now"]

    def test_on_transaction_end_runs_on_rollback(self, db_session):
        seen = []

        with pytest.raises(ValueError):
            with transaction(db_session):
                on_transaction_end(db_session, lambda: seen.append("ended"))
                raise ValueError("boom")

        assert seen == ["ended"]

    def test_store_failure_is_retryable(self, db_session):
        """Infrastructure errors surface as StoreUnavailableException"""
        with pytest.raises(StoreUnavailableException) as exc_info:
            with transaction(db_session):
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        assert exc_info.value.code == "store_unavailable"
        assert exc_info.value.retryable is True
        assert not in_transaction(db_session)


class TestRoleLock:
    """Tests for lock strategy selection and lock lifetime"""

    def test_sqlite_uses_process_lock(self, db_session):
        assert isinstance(role_lock_for(db_session), ProcessRoleLock)

    @pytest.mark.parametrize("dialect", ["postgresql", "mysql"])
    def test_row_lock_dialects(self, dialect):
        db = SimpleNamespace(get_bind=lambda: SimpleNamespace(dialect=SimpleNamespace(name=dialect)))

        assert isinstance(role_lock_for(db), RowLevelRoleLock)

    def test_critical_section_yields_role(self, db_session, seeded_roles):
        with ProcessRoleLock().critical_section(db_session, "Owner") as role:
            assert role.name == "Owner"

        with ProcessRoleLock().critical_section(db_session, "Missing") as role:
            assert role is None

    def test_nested_lock_held_until_outer_transaction_ends(self, db_session, seeded_roles):
        """Joining an outer transaction keeps the lock until it commits"""

        def try_acquire() -> bool:
            result = []

            def attempt():
                lock = ProcessRoleLock._lock_for("Owner")
                acquired = lock.acquire(blocking=False)
                if acquired:
                    lock.release()
                result.append(acquired)

            thread = threading.Thread(target=attempt)
            thread.start()
            thread.join()
            return result[0]

        with transaction(db_session):
            with ProcessRoleLock().critical_section(db_session, "Owner"):
                pass
            assert try_acquire() is False

        assert try_acquire() is True

    def test_lock_wait_times_out(self, db_session, seeded_roles):
        """A stuck holder surfaces as a retryable store failure, not a hang"""
        held = threading.Event()
        release = threading.Event()

        def holder():
            with ProcessRoleLock._lock_for("Owner"):
                held.set()
                release.wait(timeout=10)

        thread = threading.Thread(target=holder)
        thread.start()
        assert held.wait(timeout=10)
        try:
            with pytest.raises(StoreUnavailableException) as exc_info:
                with ProcessRoleLock(timeout=0.05).critical_section(db_session, "Owner"):
                    pass
        finally:
            release.set()
            thread.join()

        assert exc_info.value.retryable is True
        assert not in_transaction(db_session)

    def test_default_timeout_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "LOCK_TIMEOUT_SECONDS", 2.5)

        assert ProcessRoleLock().timeout == 2.5


class TestEventBus:
    """Tests for in-process event delivery"""

    def test_subscribers_receive_events_in_order(self):
        bus = InMemoryEventBus()
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        event = RoleEvent(type=RoleEventType.ROLE_ASSIGNED, payload={"user_id": 1, "role": "Admin"})
        bus.publish(event)

        assert first == [event]
        assert second == [event]

    def test_failing_subscriber_does_not_block_others(self):
        bus = InMemoryEventBus()
        received = []

        def broken(event):
            raise RuntimeError("subscriber down")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        bus.publish(RoleEvent(type=RoleEventType.ROLES_CHANGED, payload={"user_id": 1}))

        assert len(received) == 1

    def test_unsubscribe(self):
        bus = InMemoryEventBus()
        received = []
        bus.subscribe(received.append)
        bus.unsubscribe(received.append)

        bus.publish(RoleEvent(type=RoleEventType.ROLES_CHANGED))

        assert received == []

    def test_null_publisher_drops_events(self):
        NullEventPublisher().publish(RoleEvent(type=RoleEventType.ROLE_CREATED))

    def test_subscriber_failure_does_not_undo_operation(self, db_session, service, regular_user, event_bus):
        """Events are fire-and-forget after commit"""

        def broken(event):
            raise RuntimeError("cache down")

        event_bus.subscribe(broken)

        service.promote_to_admin(regular_user)

        assert service.user_has_role_admin(regular_user)


class TestSystemRoles:
    """Tests for the system role value object"""

    def test_defaults(self):
        roles = SystemRoles()

        assert roles.names == ("Owner", "Admin", "User")
        assert roles.is_owner("Owner")
        assert not roles.is_owner("Admin")
        assert roles.is_system_role("User")
        assert not roles.is_system_role("Manager")

    def test_configured_names(self):
        settings = Settings(OWNER_ROLE_NAME="Founder", NEW_USER_DEFAULT_ROLE="Member")

        roles = settings.system_roles

        assert roles.owner == "Founder"
        assert roles.is_owner("Founder")
        assert not roles.is_owner("Owner")

    def test_custom_names_drive_seeding(self, db_session):
        from role_authz.services.role_registry import RoleRegistry

        roles = SystemRoles(owner="Founder", admin="Staff", user="Member")

        seeded = RoleRegistry(db_session, system_roles=roles).ensure_system_roles()

        assert [role.name for role in seeded] == ["Founder", "Staff", "Member"]


class TestExceptions:
    """Tests for the error hierarchy"""

    def test_last_owner_codes(self):
        assert LastOwnerException().code == "cannot_remove_last_owner"
        deactivate = LastOwnerException(code="cannot_deactivate_last_owner")
        assert deactivate.code == "cannot_deactivate_last_owner"
        # Overriding the code on one instance leaves the class default alone
        assert LastOwnerException.code == "cannot_remove_last_owner"

    def test_policy_errors_are_not_retryable(self):
        assert issubclass(LastOwnerException, ForbiddenException)
        assert not getattr(LastOwnerException(), "retryable", False)
        assert issubclass(StoreUnavailableException, RoleAuthzException)


class TestLogging:
    """Tests for structured logging setup"""

    def test_json_output(self, capsys):
        configure_logging(Settings(LOG_FORMAT="json", DEBUG=False, LOG_LEVEL="INFO"))

        with LoggingContext(user_id=7):
            get_logger("role_authz.tests").info("Role assigned", role="Admin")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        entry = json.loads(line)
        assert entry["message"] == "Role assigned"
        assert entry["role"] == "Admin"
        assert entry["user_id"] == 7
        assert entry["level"] == "info"

    def test_context_is_unbound_on_exit(self, capsys):
        configure_logging(Settings(LOG_FORMAT="json", DEBUG=False, LOG_LEVEL="INFO"))

        with LoggingContext(user_id=7):
            pass
        get_logger().info("Outside")

        entry = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert "user_id" not in entry

    def test_console_output(self, capsys):
        configure_logging(Settings(LOG_FORMAT="console", LOG_LEVEL="INFO"))

        get_logger().info("Authorization core ready")

        assert "Authorization core ready" in capsys.readouterr().out


class TestBootstrap:
    """Tests for startup wiring"""

    def test_bootstrap_seeds_system_roles(self, db_session):
        assert bootstrap(db_session) == ["Owner", "Admin", "User"]
        assert bootstrap(db_session) == ["Owner", "Admin", "User"]

        assert db_session.query(Role).filter_by(is_system_role=True).count() == 3
