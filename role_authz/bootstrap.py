"""Startup wiring for the authorization core."""

from sqlalchemy.orm import Session

from role_authz.config import settings
from role_authz.core.logging import configure_logging, get_logger
from role_authz.database import SessionLocal, init_db
from role_authz.services.role_registry import RoleRegistry

logger = get_logger(__name__)


def bootstrap(db: Session | None = None) -> list[str]:
    """
    Prepare the authorization core for use.

    Configures logging, creates missing tables and seeds the system roles.
    Safe to run on every start.

    Args:
        db: Session to use. Defaults to a new session on the configured engine.

    Returns:
        Names of the seeded system roles (Owner, Admin, User)
    """
    configure_logging(settings)

    owns_session = db is None
    if db is None:
        db = SessionLocal()
    try:
        init_db(db.get_bind())
        names = [role.name for role in RoleRegistry(db).ensure_system_roles()]
        logger.info(
            "Authorization core ready",
            app=settings.APP_NAME,
            version=settings.APP_VERSION,
            system_roles=names,
        )
        return names
    finally:
        if owns_session:
            db.close()
