import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from koda.configs.app_configs import DATABASE_URL
from koda.configs.app_configs import DB_MAX_OVERFLOW
from koda.configs.app_configs import DB_POOL_SIZE
from koda.db.models import Base
from koda.utils.logger import setup_logger

logger = setup_logger()


class SqlEngine:
    """Process-wide SQLAlchemy engine and session factory."""

    _engine: Engine | None = None
    _session_factory: sessionmaker[Session] | None = None
    _lock = threading.Lock()

    @classmethod
    def init_engine(
        cls,
        db_url: str | None = None,
        pool_size: int = DB_POOL_SIZE,
        max_overflow: int = DB_MAX_OVERFLOW,
        **extra_engine_kwargs: Any,
    ) -> None:
        with cls._lock:
            if cls._engine is not None:
                return

            url = make_url(db_url or DATABASE_URL)
            engine_kwargs: dict[str, Any] = dict(extra_engine_kwargs)

            if url.get_backend_name() == "sqlite":
                engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
                if url.database in (None, "", ":memory:"):
                    # a single shared connection, otherwise every session sees an empty db
                    engine_kwargs.setdefault("poolclass", StaticPool)
                else:
                    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
                    engine_kwargs.setdefault("pool_size", pool_size)
                    engine_kwargs.setdefault("max_overflow", max_overflow)
            else:
                engine_kwargs.setdefault("pool_size", pool_size)
                engine_kwargs.setdefault("max_overflow", max_overflow)
                engine_kwargs.setdefault("pool_pre_ping", True)

            cls._engine = create_engine(url, **engine_kwargs)
            cls._session_factory = sessionmaker(
                bind=cls._engine, expire_on_commit=False
            )
            logger.info(f"Initialized SQL engine for backend {url.get_backend_name()}")

    @classmethod
    def get_engine(cls) -> Engine:
        if cls._engine is None:
            raise RuntimeError("Engine not initialized. Call SqlEngine.init_engine().")
        return cls._engine

    @classmethod
    def get_session_factory(cls) -> sessionmaker[Session]:
        if cls._session_factory is None:
            raise RuntimeError("Engine not initialized. Call SqlEngine.init_engine().")
        return cls._session_factory

    @classmethod
    def create_tables(cls) -> None:
        Base.metadata.create_all(cls.get_engine())

    @classmethod
    def reset_engine(cls) -> None:
        with cls._lock:
            if cls._engine is not None:
                cls._engine.dispose()
            cls._engine = None
            cls._session_factory = None


@contextmanager
def get_session_with_default_tenant() -> Generator[Session, None, None]:
    """Session scope for code outside a request (services, background threads).

    Rolls back on error and always closes the session.
    """
    session = SqlEngine.get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
