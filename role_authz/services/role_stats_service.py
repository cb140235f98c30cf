from sqlalchemy import select, func
from sqlalchemy.orm import Session

from role_authz.config import settings
from role_authz.core.logging import get_logger
from role_authz.models.role import Role
from role_authz.models.role_assignment import RoleAssignment
from role_authz.models.system_roles import SystemRoles
from role_authz.models.user import User
from role_authz.repositories.role_assignment_repository import RoleAssignmentRepository
from role_authz.repositories.user_repository import UserRepository
from role_authz.schemas.role_schemas import ExtendedRoleStats, RoleStats

logger = get_logger(__name__)

# Dialects supporting COUNT(*) FILTER (WHERE ...)
AGGREGATE_FILTER_DIALECTS = {"postgresql", "sqlite"}


class RoleStatsService:
    """Service for role and account reporting"""

    def __init__(
        self,
        db: Session,
        system_roles: SystemRoles | None = None,
        use_aggregate_query: bool | None = None,
    ):
        self.db = db
        self.assignment_repo = RoleAssignmentRepository(db)
        self.user_repo = UserRepository(db)
        self.system_roles = system_roles or settings.system_roles
        if use_aggregate_query is None:
            use_aggregate_query = settings.STATS_USE_AGGREGATE_QUERY
        self.use_aggregate_query = use_aggregate_query

    def get_role_stats(self) -> RoleStats:
        """Total accounts plus holders of each system role"""
        roles = self.system_roles
        return RoleStats(
            total_users=self.user_repo.count_all(),
            owner_count=self.assignment_repo.count_with_role(roles.owner),
            admin_count=self.assignment_repo.count_with_role(roles.admin),
            user_count=self.assignment_repo.count_with_role(roles.user),
        )

    def get_extended_stats(self) -> ExtendedRoleStats:
        """
        Role stats plus active/inactive and confirmed/pending totals.

        Uses a single aggregate query where the database supports aggregate
        FILTER clauses, otherwise several smaller queries. Both paths return
        the same shape.
        """
        if self.use_aggregate_query and self._dialect() in AGGREGATE_FILTER_DIALECTS:
            stats = self._extended_stats_aggregate()
            if stats is not None:
                return stats
            logger.warning("Aggregate stats query returned no row, using fallback")
        return self._extended_stats_fallback()

    def _extended_stats_aggregate(self) -> ExtendedRoleStats | None:
        roles = self.system_roles
        stmt = select(
            func.count().label("total_users"),
            func.count().filter(User.is_active.is_(True)).label("active_users"),
            func.count().filter(User.is_active.is_(False)).label("inactive_users"),
            func.count().filter(User.confirmed_at.is_not(None)).label("confirmed_users"),
            func.count().filter(User.confirmed_at.is_(None)).label("pending_users"),
            func.coalesce(self._role_count_subquery(roles.owner), 0).label("owner_count"),
            func.coalesce(self._role_count_subquery(roles.admin), 0).label("admin_count"),
            func.coalesce(self._role_count_subquery(roles.user), 0).label("user_count"),
        ).select_from(User)

        row = self.db.execute(stmt).one_or_none()
        if row is None:
            return None
        return ExtendedRoleStats(**row._mapping)

    def _extended_stats_fallback(self) -> ExtendedRoleStats:
        base = self.get_role_stats()
        return ExtendedRoleStats(
            **base.model_dump(),
            active_users=self.user_repo.count_where(User.is_active.is_(True)),
            inactive_users=self.user_repo.count_where(User.is_active.is_(False)),
            confirmed_users=self.user_repo.count_where(User.confirmed_at.is_not(None)),
            pending_users=self.user_repo.count_where(User.confirmed_at.is_(None)),
        )

    @staticmethod
    def _role_count_subquery(role_name: str):
        return (
            select(func.count(RoleAssignment.id))
            .join(Role, RoleAssignment.role_id == Role.id)
            .where(Role.name == role_name)
            .scalar_subquery()
        )

    def _dialect(self) -> str:
        bind = self.db.get_bind()
        return bind.dialect.name if bind is not None else ""
