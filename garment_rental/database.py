from contextlib import contextmanager
import logging
import os

from dotenv import load_dotenv
from sqlalchemy import event
from sqlmodel import create_engine, Session

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("POSTGRES_URI")
if not DATABASE_URL or DATABASE_URL == "":
    raise ValueError("DATABASE URL not set")

SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")


def create_db_engine(url: str, echo: bool = False):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo)

    engine = create_engine(
        url, echo=echo, connect_args={"check_same_thread": False}
    )

    # pysqlite emits its own BEGIN lazily, which breaks SAVEPOINT; let
    # SQLAlchemy control the transaction boundaries instead.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


engine = create_db_engine(DATABASE_URL, echo=SQL_ECHO)


def get_session():
    with Session(engine) as session:
        yield session


@contextmanager
def unit_of_work(session: Session):
    """Commit everything written inside the block, or roll all of it back.

    Usage:
        with unit_of_work(session):
            session.add(client)
            session.add(booking)
        # committed here

    Any exception raised inside the block discards every pending write and
    propagates unchanged.
    """
    try:
        yield session
        session.commit()
    except Exception as exc:
        logger.warning("Rolling back unit of work: %r", exc)
        session.rollback()
        raise
