"""Repository for RoleAssignment model operations."""

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from role_authz.models.role import Role
from role_authz.models.role_assignment import RoleAssignment
from role_authz.models.user import User


class RoleAssignmentRepository:
    """Repository for RoleAssignment model operations"""

    def __init__(self, db: Session):
        self.db = db

    def get_assignment(self, user_id: int, role_name: str) -> RoleAssignment | None:
        """
        Get the assignment of a named role to a specific user.

        Args:
            user_id: User ID
            role_name: Role name

        Returns:
            RoleAssignment object or None if the user does not hold the role
        """
        stmt = (
            select(RoleAssignment)
            .join(Role, RoleAssignment.role_id == Role.id)
            .where(RoleAssignment.user_id == user_id, Role.name == role_name)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_user_and_role(self, user_id: int, role_id: int) -> RoleAssignment | None:
        stmt = select(RoleAssignment).where(
            RoleAssignment.user_id == user_id,
            RoleAssignment.role_id == role_id,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_role_names(self, user_id: int) -> list[str]:
        """Get names of all roles held by a user, sorted by name"""
        stmt = (
            select(Role.name)
            .join(RoleAssignment, RoleAssignment.role_id == Role.id)
            .where(RoleAssignment.user_id == user_id)
            .order_by(Role.name)
        )
        return list(self.db.execute(stmt).scalars())

    def user_has_role(self, user_id: int, role_name: str) -> bool:
        stmt = (
            select(RoleAssignment.id)
            .join(Role, RoleAssignment.role_id == Role.id)
            .where(RoleAssignment.user_id == user_id, Role.name == role_name)
            .limit(1)
        )
        return self.db.execute(stmt).first() is not None

    def get_users_with_role(self, role_name: str) -> list[User]:
        """Get distinct users holding a role, sorted by email"""
        stmt = (
            select(User)
            .join(RoleAssignment, RoleAssignment.user_id == User.id)
            .join(Role, RoleAssignment.role_id == Role.id)
            .where(Role.name == role_name)
            .distinct()
            .order_by(User.email, User.id)
        )
        return list(self.db.execute(stmt).scalars())

    def count_with_role(self, role_name: str) -> int:
        """Count assignments of a role (one per user by constraint)"""
        stmt = (
            select(func.count(RoleAssignment.id))
            .join(Role, RoleAssignment.role_id == Role.id)
            .where(Role.name == role_name)
        )
        return self.db.execute(stmt).scalar_one() or 0

    def count_active_holders(self, role_name: str, excluding_user_id: int | None = None) -> int:
        """
        Count distinct active users holding a role.

        Args:
            role_name: Role name
            excluding_user_id: Leave this user out of the count

        Returns:
            Number of active holders
        """
        stmt = (
            select(func.count(func.distinct(User.id)))
            .select_from(User)
            .join(RoleAssignment, RoleAssignment.user_id == User.id)
            .join(Role, RoleAssignment.role_id == Role.id)
            .where(Role.name == role_name, User.is_active.is_(True))
        )
        if excluding_user_id is not None:
            stmt = stmt.where(User.id != excluding_user_id)
        return self.db.execute(stmt).scalar_one() or 0

    def insert_ignore(
        self, user_id: int, role_id: int, assigned_by: int | None = None
    ) -> RoleAssignment:
        """
        Insert an assignment unless (user_id, role_id) already exists.

        Concurrent duplicate grants converge on exactly one row without a
        constraint violation. Does not commit.

        Returns:
            The stored assignment (new or pre-existing)
        """
        values = {"user_id": user_id, "role_id": role_id, "assigned_by": assigned_by}
        dialect = self.db.get_bind().dialect.name

        if dialect == "postgresql":
            stmt = (
                pg_insert(RoleAssignment)
                .values(**values)
                .on_conflict_do_nothing(
                    index_elements=[RoleAssignment.user_id, RoleAssignment.role_id]
                )
            )
            self.db.execute(stmt)
        elif dialect == "sqlite":
            stmt = (
                sqlite_insert(RoleAssignment)
                .values(**values)
                .on_conflict_do_nothing(
                    index_elements=[RoleAssignment.user_id, RoleAssignment.role_id]
                )
            )
            self.db.execute(stmt)
        elif self.get_by_user_and_role(user_id, role_id) is None:
            try:
                with self.db.begin_nested():
                    self.db.add(RoleAssignment(**values))
                    self.db.flush()
            except IntegrityError:
                # Another transaction created the same assignment concurrently
                pass

        assignment = self.get_by_user_and_role(user_id, role_id)
        if assignment is None:
            raise RuntimeError("Role assignment insert failed to materialise")
        return assignment

    def delete_no_commit(self, assignment: RoleAssignment) -> None:
        """Hard delete an assignment and flush"""
        self.db.delete(assignment)
        self.db.flush()
