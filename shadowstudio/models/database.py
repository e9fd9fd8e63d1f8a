import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from shadowstudio.config import get_settings
from shadowstudio.models.base import Base

logger = logging.getLogger(__name__)


def create_sync_engine(database_url: str, echo: bool = False) -> Engine:
    """Engine for the job store. SQLite connections are shared across threads."""
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(
        database_url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def create_session_maker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, class_=Session, expire_on_commit=False)


_sync_session_maker: Optional[sessionmaker[Session]] = None


def get_session_maker() -> sessionmaker[Session]:
    """Session factory bound to ``Settings.database_url`` (created on first use)."""
    global _sync_session_maker
    if _sync_session_maker is None:
        settings = get_settings()
        engine = create_sync_engine(settings.database_url, settings.database_echo)
        _sync_session_maker = create_session_maker(engine)
    return _sync_session_maker


def init_db(session_maker: Optional[sessionmaker[Session]] = None) -> None:
    """Create tables that do not exist yet."""
    maker = session_maker or get_session_maker()
    engine = maker.kw["bind"]
    Base.metadata.create_all(engine)
    logger.info(f"[DB] Tables ready on {engine.url.render_as_string(hide_password=True)}")


@contextmanager
def get_sync_db(session_maker: Optional[sessionmaker[Session]] = None) -> Generator[Session, None, None]:
    """Get a synchronous database session that commits on success."""
    session = (session_maker or get_session_maker())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
