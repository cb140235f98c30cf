import pytest

from role_authz.core.events import RoleEventType
from role_authz.models.role_assignment import RoleAssignment
from role_authz.schemas.role_schemas import BulkAssignmentResult
from role_authz.services.authorization_service import AuthorizationService


class TestAssignRolesToExistingUsers:
    """Tests for retrofitting roles onto pre-existing accounts"""

    def test_nothing_to_do(self, service, seeded_roles):
        """No users without roles yields an empty result"""
        assert service.assign_roles_to_existing_users() == BulkAssignmentResult()

    def test_oldest_user_becomes_owner(self, service, db_session, make_user):
        """Earliest account is elected Owner, the rest get the default role"""
        first = make_user("first@example.com", confirmed=False)
        second = make_user("second@example.com")
        third = make_user("third@example.com")

        result = service.assign_roles_to_existing_users()

        assert result == BulkAssignmentResult(assigned_owner=1, assigned_users=2, total_processed=3)
        assert service.get_user_roles(first) == ["Owner"]
        assert service.get_user_roles(second) == ["User"]
        assert service.get_user_roles(third) == ["User"]

        db_session.refresh(first)
        assert first.confirmed_at is not None
        assert service.count_active_owners() == 1

    def test_existing_owner_is_kept(self, service, owner, make_user):
        """With an active Owner present, everyone gets the default role"""
        newcomers = [make_user() for _ in range(2)]

        result = service.assign_roles_to_existing_users()

        assert result == BulkAssignmentResult(assigned_owner=0, assigned_users=2, total_processed=2)
        assert all(service.get_user_roles(user) == ["User"] for user in newcomers)
        assert service.users_with_role("Owner")[0].id == owner.id

    def test_without_owner_election(self, service, make_user, seeded_roles):
        """make_first_owner=False assigns only the default role"""
        make_user()
        make_user()

        result = service.assign_roles_to_existing_users(make_first_owner=False)

        assert result.assigned_owner == 0
        assert result.assigned_users == 2
        assert service.count_active_owners() == 0

    def test_skips_inactive_and_assigned_users(self, service, owner, regular_user, make_user):
        """Only active accounts without any role are processed"""
        make_user(is_active=False)
        fresh = make_user()

        result = service.assign_roles_to_existing_users()

        assert result.total_processed == 1
        assert service.get_user_roles(fresh) == ["User"]
        assert service.get_user_roles(regular_user) == ["User"]

    def test_uses_configured_default_role(self, db_session, make_user, seeded_roles):
        service = AuthorizationService(db_session, default_role_provider=lambda: "Admin")
        make_user()
        member = make_user()

        service.assign_roles_to_existing_users()

        assert service.get_user_roles(member) == ["Admin"]

    def test_publishes_assignment_events(self, service, make_user, seeded_roles, events_of):
        make_user()
        make_user()

        service.assign_roles_to_existing_users()

        assigned = events_of(RoleEventType.ROLE_ASSIGNED)
        assert [event.payload["role"] for event in assigned] == ["Owner", "User"]

    def test_failure_aborts_whole_batch(self, service, db_session, make_user, seeded_roles, monkeypatch):
        """A failing grant leaves no assignment behind"""
        for _ in range(3):
            make_user()

        real_insert = service.assignment_repo.insert_ignore
        calls = []

        def flaky_insert(user_id, role_id, assigned_by=None):
            calls.append(user_id)
            if len(calls) == 3:
                raise RuntimeError("disk full")
            return real_insert(user_id, role_id, assigned_by)

        monkeypatch.setattr(service.assignment_repo, "insert_ignore", flaky_insert)

        with pytest.raises(RuntimeError):
            service.assign_roles_to_existing_users()

        assert db_session.query(RoleAssignment).count() == 0
        assert service.count_active_owners() == 0
