from contextlib import nullcontext
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy.orm import Session

from role_authz.config import settings
from role_authz.core.events import EventPublisher, NullEventPublisher, RoleEvent, RoleEventType
from role_authz.core.exceptions import (
    AssignmentNotFoundException,
    LastOwnerException,
    NoRoleToDemoteException,
    OwnerRoleProtectedException,
    RoleNotFoundException,
)
from role_authz.core.locking import RoleLock, role_lock_for
from role_authz.core.logging import LoggingContext, get_logger
from role_authz.core.transaction import after_commit, transaction
from role_authz.models.base import utcnow
from role_authz.models.role import Role
from role_authz.models.role_assignment import RoleAssignment
from role_authz.models.system_roles import SystemRoles
from role_authz.models.user import User
from role_authz.repositories.role_assignment_repository import RoleAssignmentRepository
from role_authz.repositories.user_repository import UserRepository
from role_authz.schemas.role_schemas import (
    BulkAssignmentResult,
    ExtendedRoleStats,
    RoleCreate,
    RoleStats,
    RoleUpdate,
)
from role_authz.services.role_registry import RoleRegistry
from role_authz.services.role_stats_service import RoleStatsService

logger = get_logger(__name__)


def configured_default_role() -> str:
    """Read the default role for new users from settings"""
    return settings.NEW_USER_DEFAULT_ROLE


class AuthorizationService:
    """
    Facade for role assignment and Owner invariant enforcement.

    All writes to roles and role assignments go through this service.
    Once first-owner election has run, at least one active account holds
    the Owner role after every committed operation:

    - Owner is only granted by election (ensure_first_user_is_owner) or
      bulk migration, never by assign_role
    - Owner removals count the remaining active owners inside the Owner
      critical section and refuse to remove the last one
    - Events are published only after the transaction commits
    """

    def __init__(
        self,
        db: Session,
        publisher: EventPublisher | None = None,
        system_roles: SystemRoles | None = None,
        role_lock: RoleLock | None = None,
        default_role_provider: Callable[[], str] | None = None,
        use_aggregate_stats: bool | None = None,
    ):
        self.db = db
        self.publisher = publisher or NullEventPublisher()
        self.system_roles = system_roles or settings.system_roles
        self.role_lock = role_lock or role_lock_for(db)
        self.default_role_provider = default_role_provider or configured_default_role
        self.registry = RoleRegistry(db, self.publisher, self.system_roles)
        self.stats = RoleStatsService(db, self.system_roles, use_aggregate_stats)
        self.assignment_repo = RoleAssignmentRepository(db)
        self.user_repo = UserRepository(db)

    # ------------------------------------------------------------------
    # Role registry
    # ------------------------------------------------------------------

    def create_role(self, attrs: RoleCreate | Mapping[str, Any]) -> Role:
        return self.registry.create_role(attrs)

    def update_role(self, role: Role, attrs: RoleUpdate | Mapping[str, Any]) -> Role:
        return self.registry.update_role(role, attrs)

    def delete_role(self, role: Role) -> Role:
        return self.registry.delete_role(role)

    def get_role_by_name(self, name: str) -> Role | None:
        return self.registry.get_role_by_name(name)

    def list_roles(self) -> list[Role]:
        return self.registry.list_roles()

    def get_custom_roles(self) -> list[Role]:
        return self.registry.get_custom_roles()

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign_role(
        self,
        user: User,
        role_name: str,
        assigned_by: User | None = None,
        broadcast: bool = True,
    ) -> RoleAssignment:
        """
        Grant a role to a user.

        Idempotent: granting a role the user already holds returns the
        existing assignment.

        Args:
            user: User receiving the role
            role_name: Name of the role to grant
            assigned_by: User performing the grant (None for system grants)
            broadcast: Publish role_assigned / roles_changed after commit

        Returns:
            The stored assignment

        Raises:
            OwnerRoleProtectedException: If role_name is the Owner role
            RoleNotFoundException: If no role has that name
        """
        if self.system_roles.is_owner(role_name):
            logger.warning("Refused direct owner assignment", user_id=user.id)
            raise OwnerRoleProtectedException(
                f"'{role_name}' can only be granted by first-owner election"
            )
        return self._grant(user, role_name, assigned_by, broadcast)

    def remove_role(self, user: User, role_name: str, broadcast: bool = True) -> RoleAssignment:
        """
        Revoke a role from a user by deleting the assignment.

        Removing Owner is routed through the last-owner check.

        Raises:
            AssignmentNotFoundException: If the user does not hold the role
            LastOwnerException: If this would remove the last active Owner
        """
        if self.system_roles.is_owner(role_name):
            return self._revoke_owner(user, broadcast)
        return self._revoke(user, role_name, broadcast)

    def sync_user_roles(self, user: User, role_names: Iterable[str]) -> list[RoleAssignment]:
        """
        Make the user's roles exactly match role_names.

        Runs as one transaction: if any addition or removal fails, nothing
        changes. Publishes a single roles_synced event with the final role
        list instead of one event per change.

        Returns:
            Assignments created by the sync

        Raises:
            OwnerRoleProtectedException: If Owner would have to be added
            RoleNotFoundException: If a desired role does not exist
            LastOwnerException: If the last active Owner would lose Owner
        """
        desired = list(dict.fromkeys(role_names))
        owner = self.system_roles.owner

        # Dropping Owner: take the Owner lock before any delete takes the write lock
        drops_owner = owner not in desired and self.assignment_repo.user_has_role(user.id, owner)
        guard = self.role_lock.critical_section(self.db, owner) if drops_owner else nullcontext()

        with guard, transaction(self.db):
            current = self.assignment_repo.get_role_names(user.id)
            to_remove = [name for name in current if name not in desired]
            to_add = [name for name in desired if name not in current]

            for name in to_remove:
                self.remove_role(user, name, broadcast=False)
            assignments = [self.assign_role(user, name, broadcast=False) for name in to_add]

            final_roles = self.assignment_repo.get_role_names(user.id)
            self._publish(RoleEventType.ROLES_SYNCED, {"user_id": user.id, "roles": final_roles})
            self._publish(RoleEventType.ROLES_CHANGED, {"user_id": user.id})

        logger.info(
            "User roles synced",
            user_id=user.id,
            added=to_add,
            removed=to_remove,
        )
        return assignments

    def promote_to_admin(self, user: User, assigned_by: User | None = None) -> RoleAssignment:
        """Grant the Admin role"""
        return self._grant(user, self.system_roles.admin, assigned_by, broadcast=True)

    def demote_to_user(self, user: User) -> RoleAssignment:
        """
        Remove the user's highest elevated role.

        Owner is removed with last-owner protection; otherwise Admin is
        removed unconditionally.

        Raises:
            LastOwnerException: If user is the last active Owner
            NoRoleToDemoteException: If user holds neither Owner nor Admin
        """
        if self.user_has_role_owner(user):
            return self.safely_remove_role(user, self.system_roles.owner)
        if self.user_has_role_admin(user):
            return self._revoke(user, self.system_roles.admin, broadcast=True)
        raise NoRoleToDemoteException(f"User {user.id} has no role to demote")

    # ------------------------------------------------------------------
    # Owner invariant
    # ------------------------------------------------------------------

    def ensure_first_user_is_owner(self, user: User) -> str:
        """
        Elect user as first Owner if no active Owner exists yet.

        Every caller locks the Owner role before checking for an existing
        owner, so concurrent elections resolve to exactly one winner. The
        winner is activated and confirmed; everyone else receives the
        default role.

        Returns:
            "owner" if user became Owner, otherwise the lowercased default
            role name (e.g. "user")

        Raises:
            RoleNotFoundException: If the Owner role cannot be seeded
        """
        owner = self.system_roles.owner
        self.registry.ensure_system_roles()

        with LoggingContext(user_id=user.id):
            with self.role_lock.critical_section(self.db, owner) as owner_role:
                if owner_role is None:
                    raise RoleNotFoundException(f"Role '{owner}' not found")

                if self.assignment_repo.count_active_holders(owner) == 0:
                    self._grant(user, owner, None, broadcast=True)
                    self._activate_first_owner(user)
                    outcome = "owner"
                else:
                    default_role = self._safe_default_role()
                    self._grant(user, default_role, None, broadcast=True)
                    outcome = default_role.lower()

            logger.info("First-owner election finished", outcome=outcome)
        return outcome

    def safely_remove_role(self, user: User, role_name: str) -> RoleAssignment:
        """
        Remove a role, refusing to remove the last active Owner.

        Raises:
            LastOwnerException: code cannot_remove_last_owner
            AssignmentNotFoundException: If the user does not hold the role
        """
        if self.system_roles.is_owner(role_name):
            return self._revoke_owner(user, broadcast=True)
        return self.remove_role(user, role_name)

    def can_deactivate_user(self, user: User) -> bool:
        """Check if deactivating user keeps at least one active Owner"""
        try:
            self.check_can_deactivate_user(user)
        except LastOwnerException:
            return False
        return True

    def check_can_deactivate_user(self, user: User) -> None:
        """
        Guard to call before deactivating an account.

        Raises:
            LastOwnerException: code cannot_deactivate_last_owner
        """
        if self.user_has_role_owner(user) and self.count_active_owners() <= 1:
            raise LastOwnerException(
                f"User {user.id} is the last active Owner",
                code="cannot_deactivate_last_owner",
            )

    def count_active_owners(self) -> int:
        """Count distinct active users holding the Owner role"""
        return self.assignment_repo.count_active_holders(self.system_roles.owner)

    # ------------------------------------------------------------------
    # Bulk / migration
    # ------------------------------------------------------------------

    def assign_roles_to_existing_users(self, make_first_owner: bool = True) -> BulkAssignmentResult:
        """
        Give roles to active users that have none.

        For retrofitting authorization onto existing accounts. Users are
        processed oldest first; when make_first_owner is set and no active
        Owner exists, the oldest becomes Owner and the rest get the default
        role. Runs as one transaction, a failure aborts the whole batch.
        """
        owner = self.system_roles.owner
        self.registry.ensure_system_roles()

        with self.role_lock.critical_section(self.db, owner):
            users = self.user_repo.get_active_without_roles()
            if not users:
                return BulkAssignmentResult()

            default_role = self._safe_default_role()
            assigned_owner = 0
            remaining = users

            if make_first_owner and self.count_active_owners() == 0:
                first, *remaining = users
                self._grant(first, owner, None, broadcast=True)
                self._activate_first_owner(first)
                assigned_owner = 1

            for user in remaining:
                self._grant(user, default_role, None, broadcast=True)

            result = BulkAssignmentResult(
                assigned_owner=assigned_owner,
                assigned_users=len(remaining),
                total_processed=len(users),
            )

        logger.info("Roles assigned to existing users", **result.model_dump())
        return result

    # ------------------------------------------------------------------
    # Queries & reporting
    # ------------------------------------------------------------------

    def user_has_role(self, user: User, role_name: str) -> bool:
        return self.assignment_repo.user_has_role(user.id, role_name)

    def user_has_role_owner(self, user: User) -> bool:
        return self.user_has_role(user, self.system_roles.owner)

    def user_has_role_admin(self, user: User) -> bool:
        return self.user_has_role(user, self.system_roles.admin)

    def get_user_roles(self, user: User) -> list[str]:
        """Role names held by user, sorted by name"""
        return self.assignment_repo.get_role_names(user.id)

    def users_with_role(self, role_name: str) -> list[User]:
        """Distinct users holding the role, sorted by email"""
        return self.assignment_repo.get_users_with_role(role_name)

    def count_users_with_role(self, role_name: str) -> int:
        return self.assignment_repo.count_with_role(role_name)

    def get_role_stats(self) -> RoleStats:
        return self.stats.get_role_stats()

    def get_extended_stats(self) -> ExtendedRoleStats:
        return self.stats.get_extended_stats()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _grant(
        self,
        user: User,
        role_name: str,
        assigned_by: User | None,
        broadcast: bool,
    ) -> RoleAssignment:
        # No Owner check here: election and bulk migration grant Owner through this path
        with transaction(self.db):
            role = self.registry.get_role_by_name(role_name)
            if role is None:
                raise RoleNotFoundException(f"Role '{role_name}' not found")

            assignment = self.assignment_repo.insert_ignore(
                user.id, role.id, assigned_by.id if assigned_by else None
            )
            if broadcast:
                self._publish_role_change(RoleEventType.ROLE_ASSIGNED, user, role_name)

        logger.info("Role assigned", user_id=user.id, role=role_name)
        return assignment

    def _revoke(self, user: User, role_name: str, broadcast: bool) -> RoleAssignment:
        with transaction(self.db):
            assignment = self.assignment_repo.get_assignment(user.id, role_name)
            if assignment is None:
                raise AssignmentNotFoundException(
                    f"User {user.id} does not hold role '{role_name}'"
                )

            self.assignment_repo.delete_no_commit(assignment)
            if broadcast:
                self._publish_role_change(RoleEventType.ROLE_REMOVED, user, role_name)

        logger.info("Role removed", user_id=user.id, role=role_name)
        return assignment

    def _revoke_owner(self, user: User, broadcast: bool) -> RoleAssignment:
        owner = self.system_roles.owner
        with self.role_lock.critical_section(self.db, owner):
            if not self.assignment_repo.user_has_role(user.id, owner):
                raise AssignmentNotFoundException(f"User {user.id} does not hold role '{owner}'")

            remaining = self.assignment_repo.count_active_holders(owner, excluding_user_id=user.id)
            if remaining < 1:
                logger.warning("Refused to remove last owner", user_id=user.id)
                raise LastOwnerException(f"User {user.id} is the last active Owner")

            return self._revoke(user, owner, broadcast)

    def _activate_first_owner(self, user: User) -> None:
        account = self.user_repo.get_by_id(user.id)
        changed = False
        if not account.is_active:
            account.is_active = True
            changed = True
        if account.confirmed_at is None:
            account.confirmed_at = utcnow()
            changed = True
        if changed:
            self.user_repo.update_no_commit(account)
            logger.info("First owner activated", user_id=account.id)

    def _safe_default_role(self) -> str:
        """
        Resolve the configured default role for new users.

        Falls back to the User role when the setting names Owner or a role
        that does not exist.
        """
        configured = self.default_role_provider()
        allowed = {
            role.name
            for role in self.registry.list_roles()
            if not self.system_roles.is_owner(role.name)
        }
        if configured in allowed:
            return configured

        logger.warning("Invalid default role configured, using fallback", configured=configured)
        return self.system_roles.user

    def _publish_role_change(self, event_type: RoleEventType, user: User, role_name: str) -> None:
        self._publish(event_type, {"user_id": user.id, "role": role_name})
        self._publish(RoleEventType.ROLES_CHANGED, {"user_id": user.id})

    def _publish(self, event_type: RoleEventType, payload: dict[str, Any]) -> None:
        event = RoleEvent(type=event_type, payload=payload)
        after_commit(self.db, lambda: self.publisher.publish(event))
