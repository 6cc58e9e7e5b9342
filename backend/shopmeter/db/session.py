"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from shopmeter.models import Base
from shopmeter.core.config import settings

# Every transaction runs serializable; concurrent writers on the same rows
# abort with a serialization failure and are retried by run_in_transaction.
ISOLATION_LEVEL = "SERIALIZABLE"


def build_engine_options(database_url: str) -> dict:
    """Engine options that bound how long a transaction may wait or run"""
    backend = make_url(database_url).get_backend_name()
    options = {
        "isolation_level": ISOLATION_LEVEL,
        "pool_pre_ping": True,
    }
    if backend == "sqlite":
        # sqlite3's busy timeout plays the role of the connection wait
        options["connect_args"] = {
            "check_same_thread": False,
            "timeout": settings.TRANSACTION_MAX_WAIT_SECONDS,
        }
        return options

    options["pool_recycle"] = 3600
    options["pool_timeout"] = settings.TRANSACTION_MAX_WAIT_SECONDS
    if backend == "postgresql":
        lock_timeout_ms = settings.TRANSACTION_MAX_WAIT_SECONDS * 1000
        statement_timeout_ms = settings.TRANSACTION_TIMEOUT_SECONDS * 1000
        options["connect_args"] = {
            "options": f"-c lock_timeout={lock_timeout_ms} -c statement_timeout={statement_timeout_ms}"
        }
    return options


# Create engine
engine = create_engine(settings.DATABASE_URL, **build_engine_options(settings.DATABASE_URL))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    Base.metadata.create_all(bind=engine)
