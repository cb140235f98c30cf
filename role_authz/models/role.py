"""Role model for role-based access control."""

from sqlalchemy import String, Integer, Boolean, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from typing import TYPE_CHECKING

from role_authz.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from role_authz.models.role_assignment import RoleAssignment


class Role(Base, TimestampMixin):
    """
    Named role that can be assigned to accounts.

    Three built-in system roles (Owner, Admin, User) are seeded on first use
    and can never be deleted. Custom roles can be deleted once nothing
    references them.

    Constraints:
    - Unique(name) - the only key external code may reference by string
    - is_system_role cannot be cleared once set (enforced at service layer)
    """

    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system_role: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Relationships
    assignments: Mapped[list["RoleAssignment"]] = relationship(
        "RoleAssignment", back_populates="role"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name='{self.name}', is_system_role={self.is_system_role})>"
