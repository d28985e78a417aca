from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from arborkb.config import settings


def _engine_options(url: str) -> dict:
    # SQLite is used for local runs and tests; it has no server-side pool to size
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_engine(settings.database_url, **_engine_options(settings.database_url))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    """FastAPI dependency — yields a DB session and closes it after request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def install_audit_log_immutability():
    """
    Install MySQL triggers that reject UPDATE/DELETE on audit_logs.
    Run after create_all; drops and recreates, so safe on every startup.
    """
    if engine.dialect.name != "mysql":
        return
    dbapi_connection = engine.raw_connection()
    cursor = dbapi_connection.cursor()
    try:
        for action in ("UPDATE", "DELETE"):
            trigger = f"prevent_audit_log_{action.lower()}"
            cursor.execute(f"DROP TRIGGER IF EXISTS {trigger}")
            cursor.execute(f"""
                CREATE TRIGGER {trigger}
                BEFORE {action} ON audit_logs
                FOR EACH ROW
                SIGNAL SQLSTATE '45000'
                SET MESSAGE_TEXT = 'audit_logs is immutable: {action} not allowed'
            """)
        dbapi_connection.commit()
    finally:
        cursor.close()
        dbapi_connection.close()
