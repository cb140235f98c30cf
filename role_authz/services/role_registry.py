from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from role_authz.config import settings
from role_authz.core.events import EventPublisher, NullEventPublisher, RoleEvent, RoleEventType
from role_authz.core.exceptions import (
    RoleInUseException,
    RoleValidationException,
    SystemRoleProtectedException,
)
from role_authz.core.logging import get_logger
from role_authz.core.transaction import after_commit, transaction
from role_authz.models.role import Role
from role_authz.models.system_roles import SystemRoles
from role_authz.repositories.role_repository import RoleRepository
from role_authz.schemas.role_schemas import RoleCreate, RoleUpdate

logger = get_logger(__name__)

NAME_TAKEN = "has already been taken"

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def field_errors(exc: ValidationError) -> dict[str, list[str]]:
    """Group pydantic errors by top-level field name"""
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        field = str(error["loc"][0]) if error["loc"] else "__root__"
        errors.setdefault(field, []).append(error["msg"])
    return errors


class RoleRegistry:
    """Service for role CRUD and system role protection"""

    def __init__(
        self,
        db: Session,
        publisher: EventPublisher | None = None,
        system_roles: SystemRoles | None = None,
    ):
        self.db = db
        self.repo = RoleRepository(db)
        self.publisher = publisher or NullEventPublisher()
        self.system_roles = system_roles or settings.system_roles

    def get_role(self, role_id: int) -> Role | None:
        return self.repo.get_by_id(role_id)

    def get_role_by_name(self, name: str) -> Role | None:
        """Get role by name, None if it does not exist"""
        return self.repo.get_by_name(name)

    def list_roles(self) -> list[Role]:
        """List all roles: system roles first, then alphabetical"""
        return self.repo.get_all()

    def get_custom_roles(self) -> list[Role]:
        """List only non-system roles"""
        return self.repo.get_custom()

    def ensure_system_roles(self) -> list[Role]:
        """
        Seed the system roles if missing.

        Idempotent and safe under concurrency. A pre-existing role whose
        name collides with a system role is flagged as a system role.

        Returns:
            System roles in seeding order (Owner, Admin, User)
        """
        with transaction(self.db):
            roles = []
            for name in self.system_roles.names:
                role = self.repo.get_by_name(name)
                if role is None:
                    role = self.repo.insert_ignore(
                        name, self.system_roles.describe(name), is_system_role=True
                    )
                    logger.info("System role seeded", name=name)
                if not role.is_system_role:
                    role.is_system_role = True
                    self.repo.update_no_commit(role)
                roles.append(role)
        return roles

    def create_role(self, attrs: RoleCreate | Mapping[str, Any]) -> Role:
        """
        Create a custom role.

        Args:
            attrs: Name (1-50 chars, unique) and optional description (<=500)

        Returns:
            Created role

        Raises:
            RoleValidationException: If attributes are invalid or name is taken
        """
        data = self._validate(RoleCreate, attrs)

        with transaction(self.db):
            if self.repo.name_taken(data.name):
                raise RoleValidationException({"name": [NAME_TAKEN]})

            role = Role(name=data.name, description=data.description, is_system_role=False)
            try:
                self.repo.create_no_commit(role)
            except IntegrityError as exc:
                # Lost a race against a concurrent create with the same name
                raise RoleValidationException({"name": [NAME_TAKEN]}) from exc

            self._notify(RoleEventType.ROLE_CREATED, role)

        logger.info("Role created", role_id=role.id, name=role.name)
        return role

    def update_role(self, role: Role, attrs: RoleUpdate | Mapping[str, Any]) -> Role:
        """
        Update a role's name, description or system flag.

        Raises:
            RoleValidationException: If the system flag would be cleared, a
                system role would be renamed, or the new name is taken
        """
        data = self._validate(RoleUpdate, attrs)
        changes = data.model_dump(exclude_unset=True)
        errors: dict[str, list[str]] = {}

        if role.is_system_role and changes.get("is_system_role") is False:
            errors.setdefault("is_system_role", []).append("system roles cannot be modified")
        if changes.get("is_system_role") is None:
            changes.pop("is_system_role", None)

        if "name" in changes:
            new_name = changes["name"]
            if new_name is None:
                errors.setdefault("name", []).append("can't be blank")
            elif new_name != role.name:
                if role.is_system_role:
                    errors.setdefault("name", []).append("system role names cannot be changed")
                elif self.repo.name_taken(new_name, excluding_id=role.id):
                    errors.setdefault("name", []).append(NAME_TAKEN)

        if errors:
            raise RoleValidationException(errors)

        with transaction(self.db):
            for field, value in changes.items():
                setattr(role, field, value)
            try:
                self.repo.update_no_commit(role)
            except IntegrityError as exc:
                raise RoleValidationException({"name": [NAME_TAKEN]}) from exc

            self._notify(RoleEventType.ROLE_UPDATED, role)

        logger.info("Role updated", role_id=role.id, fields=sorted(changes))
        return role

    def delete_role(self, role: Role) -> Role:
        """
        Delete a custom role.

        Raises:
            SystemRoleProtectedException: If role is a system role
            RoleInUseException: If any user still holds the role
        """
        if role.is_system_role:
            raise SystemRoleProtectedException(f"System role '{role.name}' cannot be deleted")

        role_id, role_name = role.id, role.name
        with transaction(self.db):
            if self.repo.has_assignments(role):
                raise RoleInUseException(f"Role '{role_name}' is still assigned to users")

            self._notify(RoleEventType.ROLE_DELETED, role)
            self.repo.delete_no_commit(role)

        logger.info("Role deleted", role_id=role_id, name=role_name)
        return role

    def _notify(self, event_type: RoleEventType, role: Role) -> None:
        event = RoleEvent(
            type=event_type,
            payload={
                "role_id": role.id,
                "name": role.name,
                "is_system_role": role.is_system_role,
            },
        )
        after_commit(self.db, lambda: self.publisher.publish(event))

    @staticmethod
    def _validate(schema: type[SchemaT], attrs: SchemaT | Mapping[str, Any]) -> SchemaT:
        if isinstance(attrs, schema):
            return attrs
        try:
            return schema.model_validate(dict(attrs))
        except ValidationError as exc:
            raise RoleValidationException(field_errors(exc)) from exc
