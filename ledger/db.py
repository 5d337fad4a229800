"""
Database engine, session factory and the atomic unit every monetary
operation runs in.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from . import config
from .tables import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_write_locks(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two units read the
    # same balance. Taking the write lock at BEGIN serialises them.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    def __init__(self, url: Optional[str] = None, echo: bool = config.SQL_ECHO, **engine_kwargs):
        self.url = url or config.DATABASE_URL
        if self.url.startswith("sqlite"):
            connect_args = engine_kwargs.pop("connect_args", {})
            connect_args.setdefault("check_same_thread", False)
            connect_args.setdefault("timeout", 30)
            self.engine = create_engine(self.url, echo=echo, connect_args=connect_args, **engine_kwargs)
            _enable_sqlite_write_locks(self.engine)
        else:
            engine_kwargs.setdefault("pool_pre_ping", True)
            engine_kwargs.setdefault("pool_recycle", 3600)
            self.engine = create_engine(self.url, echo=echo, **engine_kwargs)

        self.session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    @property
    def supports_row_locks(self) -> bool:
        return self.engine.dialect.name != "sqlite"

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def atomic(self, session: Optional[Session] = None) -> Iterator[Session]:
        """
        Run a block as one all-or-nothing unit.

        Passing an open session joins the caller's unit instead of starting a
        new one; the outermost unit decides commit or rollback.
        """
        if session is not None:
            yield session
            return

        session = self.session_factory()
        try:
            with session.begin():
                yield session
        except Exception:
            logger.debug("Atomic unit rolled back", exc_info=True)
            raise
        finally:
            session.close()
