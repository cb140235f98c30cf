"""Role assignment model linking users to roles."""

from datetime import datetime
from sqlalchemy import Integer, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from typing import TYPE_CHECKING

from role_authz.models.base import Base, utcnow

if TYPE_CHECKING:
    from role_authz.models.user import User
    from role_authz.models.role import Role


class RoleAssignment(Base):
    """
    Join table linking users to roles with audit fields.

    Rows are inserted with insert-or-ignore semantics and hard deleted on
    removal; there is no update path.

    Example assignments:
    - User "alice@example.com" holds "Owner" (assigned_by NULL, elected)
    - User "bob@example.com" holds "Admin" (assigned_by alice)

    Constraints:
    - Unique(user_id, role_id) - a user cannot hold the same role twice
    - At least one active account holds Owner (enforced at service layer)
    """

    __tablename__ = "role_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("roles.id"),
        nullable=False,
        index=True,
    )
    assigned_by: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    # NULL assigned_by means the system performed the assignment
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User", back_populates="role_assignments", foreign_keys=[user_id]
    )
    role: Mapped["Role"] = relationship("Role", back_populates="assignments")

    # Constraints
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    def __repr__(self) -> str:
        return f"<RoleAssignment(user_id={self.user_id}, role_id={self.role_id}, assigned_by={self.assigned_by})>"
