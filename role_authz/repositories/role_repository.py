"""Repository for Role model operations."""

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from role_authz.models.role import Role
from role_authz.models.role_assignment import RoleAssignment


class RoleRepository:
    """Repository for Role model operations"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, role_id: int) -> Role | None:
        """Get role by ID"""
        return self.db.get(Role, role_id)

    def get_by_name(self, name: str, for_update: bool = False) -> Role | None:
        """
        Get role by its unique name.

        Args:
            name: Role name
            for_update: Lock the row until the transaction ends

        Returns:
            Role object or None if not found
        """
        stmt = select(Role).where(Role.name == name)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_all(self) -> list[Role]:
        """Get all roles, system roles first, then alphabetical"""
        stmt = select(Role).order_by(Role.is_system_role.desc(), Role.name.asc())
        return list(self.db.execute(stmt).scalars())

    def get_custom(self) -> list[Role]:
        """Get non-system roles, alphabetical"""
        stmt = select(Role).where(Role.is_system_role.is_(False)).order_by(Role.name.asc())
        return list(self.db.execute(stmt).scalars())

    def name_taken(self, name: str, excluding_id: int | None = None) -> bool:
        stmt = select(Role.id).where(Role.name == name)
        if excluding_id is not None:
            stmt = stmt.where(Role.id != excluding_id)
        return self.db.execute(stmt.limit(1)).first() is not None

    def has_assignments(self, role: Role) -> bool:
        """Check if any assignment references the role"""
        stmt = select(RoleAssignment.id).where(RoleAssignment.role_id == role.id).limit(1)
        return self.db.execute(stmt).first() is not None

    def create_no_commit(self, role: Role) -> Role:
        """
        Add role and flush without committing.

        Raises:
            IntegrityError: If the name already exists
        """
        self.db.add(role)
        self.db.flush()
        return role

    def update_no_commit(self, role: Role) -> Role:
        """Flush pending changes on role"""
        self.db.flush()
        return role

    def delete_no_commit(self, role: Role) -> None:
        self.db.delete(role)
        self.db.flush()

    def insert_ignore(self, name: str, description: str | None, is_system_role: bool) -> Role:
        """
        Insert a role unless one with the same name exists.

        Concurrent seeders converge on a single row without raising.

        Returns:
            The stored role (new or pre-existing)
        """
        values = {
            "name": name,
            "description": description,
            "is_system_role": is_system_role,
        }
        dialect = self.db.get_bind().dialect.name

        if dialect == "postgresql":
            stmt = pg_insert(Role).values(**values).on_conflict_do_nothing(index_elements=[Role.name])
            self.db.execute(stmt)
        elif dialect == "sqlite":
            stmt = sqlite_insert(Role).values(**values).on_conflict_do_nothing(index_elements=[Role.name])
            self.db.execute(stmt)
        elif not self.name_taken(name):
            try:
                with self.db.begin_nested():
                    self.db.add(Role(**values))
                    self.db.flush()
            except IntegrityError:
                # Another transaction seeded the same role concurrently
                pass

        role = self.get_by_name(name)
        if role is None:
            raise RuntimeError(f"Role {name!r} insert failed to materialise")
        return role
