import logging
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, Optional

from sqlalchemy import create_engine, delete, insert, inspect, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from tgcomment.config import settings
from tgcomment.utils import utcnow

logger = logging.getLogger(__name__)

# check_same_thread=False lets the webhook thread pool share SQLite connections
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

QUEUE_TABLES = ("tgcomment_incoming", "tgcomment_outgoing", "tgcomment_leases", "tgcomment_state")


def init_db() -> None:
    """
    Initialize the database by creating the relay tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from tgcomment import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and the queue tables exist.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in QUEUE_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Leases
# =============================================================================

def acquire_lease(db: Session, key: str, ttl_seconds: int) -> Optional[str]:
    """
    Take the lease `key` for `ttl_seconds` if nobody holds an unexpired one.

    Takeover of an expired lease is a single conditional UPDATE; a fresh
    lease is an INSERT guarded by the primary key, so two callers can never
    both succeed.

    Returns:
        The lease token on success, None when the lease is held elsewhere.
    """
    from tgcomment.models import Lease

    now = utcnow()
    token = uuid.uuid4().hex
    expires_at = now + timedelta(seconds=ttl_seconds)

    result = db.execute(
        update(Lease)
        .where(Lease.key == key, Lease.expires_at <= now)
        .values(token=token, expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.commit()
        logger.debug(f"Lease taken over: {key}")
        return token

    try:
        db.execute(insert(Lease).values(key=key, token=token, expires_at=expires_at))
        db.commit()
        logger.debug(f"Lease acquired: {key}")
        return token
    except IntegrityError:
        # Unexpired lease exists - expected under contention
        db.rollback()
        logger.debug(f"Lease busy: {key}")
        return None


def lease_is_held(db: Session, key: str, token: str) -> bool:
    """Check that `token` still owns an unexpired lease on `key`."""
    from tgcomment.models import Lease

    row = db.execute(
        select(Lease.key).where(
            Lease.key == key,
            Lease.token == token,
            Lease.expires_at > utcnow(),
        )
    ).first()
    return row is not None


def release_lease(db: Session, key: str, token: Optional[str] = None) -> None:
    """Drop a lease. With a token, only the owner's lease is dropped."""
    from tgcomment.models import Lease

    stmt = delete(Lease).where(Lease.key == key)
    if token is not None:
        stmt = stmt.where(Lease.token == token)
    db.execute(stmt.execution_options(synchronize_session=False))
    db.commit()


@contextmanager
def run_lock(db: Session, name: str, ttl_seconds: int) -> Iterator[bool]:
    """
    Coarse lock for one pipeline stage.

    Yields True when this run owns the stage, False when another run does.
    The lock is released on exit, including on errors.
    """
    key = f"run:{name}"
    token = acquire_lease(db, key, ttl_seconds)
    try:
        yield token is not None
    finally:
        if token is not None:
            try:
                release_lease(db, key, token)
            except Exception as e:
                # The lease expires on its own; nothing else to do
                logger.error(f"Failed to release run lock {key}: {e}")


# =============================================================================
# Bot State
# =============================================================================

def get_state(db: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    from tgcomment.models import BotState

    row = db.get(BotState, key)
    return row.value if row is not None else default


def set_state(db: Session, key: str, value: str) -> None:
    from tgcomment.models import BotState

    row = db.get(BotState, key)
    if row is None:
        db.add(BotState(key=key, value=value))
    else:
        row.value = value
    db.commit()
