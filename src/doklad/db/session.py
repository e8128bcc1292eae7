from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

log = logging.getLogger(__name__)


def make_engine(db_path: str):
    eng = create_engine(
        f"sqlite:///{db_path}",
        future=True,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(eng, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cur = dbapi_connection.cursor()
        try:
            cur.execute("PRAGMA foreign_keys=ON")
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA synchronous=NORMAL")
            cur.execute("PRAGMA busy_timeout=5000")
        except Exception as exc:
            # starší buildy SQLite; bez pragmat se dá běžet dál
            log.warning("SQLite PRAGMA selhala: %s", exc)
        finally:
            cur.close()

    return eng


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


@contextmanager
def unit_of_work(session_factory) -> Iterator[Session]:
    """
    Jedna transakce: commit při úspěchu, rollback při jakékoliv výjimce.
    Výjimka se propaguje dál, částečný zápis nikdy nezůstane v DB.
    """
    session: Session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        log.exception("Transakce selhala, rollback")
        raise
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
