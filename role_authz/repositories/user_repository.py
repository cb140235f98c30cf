from sqlalchemy import select, func
from sqlalchemy.orm import Session
from role_authz.models.role_assignment import RoleAssignment
from role_authz.models.user import User


class UserRepository:
    """Repository for the account columns the authorization core reads"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: int) -> User | None:
        """Get user by internal ID"""
        return self.db.get(User, user_id)

    def get_active_without_roles(self) -> list[User]:
        """
        Get active users holding no role assignment at all.

        Ordered by creation time (ID breaks ties) so the earliest account
        comes first when bulk-electing an owner.
        """
        stmt = (
            select(User)
            .outerjoin(RoleAssignment, RoleAssignment.user_id == User.id)
            .where(RoleAssignment.id.is_(None), User.is_active.is_(True))
            .order_by(User.created_at, User.id)
        )
        return list(self.db.execute(stmt).scalars())

    def count_all(self) -> int:
        return self.db.execute(select(func.count(User.id))).scalar_one()

    def count_where(self, *criteria) -> int:
        """Count users matching the given filter criteria"""
        stmt = select(func.count(User.id)).where(*criteria)
        return self.db.execute(stmt).scalar_one()

    def update_no_commit(self, user: User) -> User:
        self.db.flush()
        return user
