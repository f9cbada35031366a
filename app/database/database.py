from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(url: str, echo: bool = False):
    """Create an engine; pool sizing only applies to server databases."""
    engine_kwargs = {"pool_pre_ping": True, "echo": echo}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    else:
        engine_kwargs.update(pool_size=10, max_overflow=20)
    return create_engine(url, **engine_kwargs)


sync_engine = build_engine(settings.database_url, echo=settings.SQL_ECHO)

# expire_on_commit stays on: every unit of work must re-read contended rows
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)

Base = declarative_base()


def get_db():
    """Genera una sesión de base de datos por request."""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()
