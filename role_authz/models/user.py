from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship
from typing import TYPE_CHECKING
from role_authz.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from role_authz.models.role_assignment import RoleAssignment


class User(Base, TimestampMixin):
    """
    Account owned by the authentication subsystem.

    Only the columns the authorization core reads or touches are mapped:
    the active flag (owner counting) and confirmation timestamp (set when
    the first owner is elected).
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    role_assignments: Mapped[list["RoleAssignment"]] = relationship(
        "RoleAssignment",
        back_populates="user",
        foreign_keys="RoleAssignment.user_id",
        cascade="all, delete-orphan",  # Drop assignments if account deleted
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', is_active={self.is_active})>"
