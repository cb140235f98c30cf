from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from role_authz.config import settings
from role_authz.models.base import Base

# Import all model classes so they're registered with the metadata
from role_authz.models.user import User  # noqa: F401
from role_authz.models.role import Role  # noqa: F401
from role_authz.models.role_assignment import RoleAssignment  # noqa: F401

# Create SQLAlchemy engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,  # Verify connections before using
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    echo=settings.DEBUG,  # Log SQL queries in debug mode
    # SQLite-specific settings
    connect_args={"check_same_thread": False} if "sqlite" in settings.DATABASE_URL else {},
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine | None = None) -> None:
    """Create the roles, role_assignments and users tables if missing"""
    Base.metadata.create_all(bind=bind or engine)
