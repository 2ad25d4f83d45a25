from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import settings

# PostgreSQL SQLSTATE for "canceling statement due to statement timeout"
QUERY_CANCELED_SQLSTATE = "57014"


def _connect_args() -> dict:
    if settings.is_sqlite:
        return {
            "check_same_thread": False,
            "timeout": max(1, settings.db_statement_timeout_ms // 1000),
        }
    if settings.database_url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={settings.db_statement_timeout_ms}"}
    return {}


engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=_connect_args())

if settings.is_sqlite:

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record):  # noqa: ANN001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_statement_timeout(exc: Exception) -> bool:
    if not isinstance(exc, OperationalError):
        return False
    return getattr(exc.orig, "pgcode", None) == QUERY_CANCELED_SQLSTATE
