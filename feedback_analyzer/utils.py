"""
Feedback Analyzer Utility Functions

Database helpers shared by the storage layer and tests.
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker


def init_db(engine: Engine) -> None:
    """Create any feedback tables missing from the database."""
    from feedback_analyzer.storage import Base

    Base.metadata.create_all(engine)


@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """
    Open a session wrapped in a single transaction.

    The transaction commits when the block exits normally and rolls back
    (re-raising) when it exits with an exception. Loaded records stay
    readable after the commit.

    Example:
        with get_session(engine) as session:
            record = session.get(FeedbackTicketRecord, "TICKET-1A2B3C4D")
    """
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    with factory.begin() as session:
        yield session


def model_to_dict(instance) -> dict:
    """Column name -> value for a mapped record."""
    return {column.name: getattr(instance, column.name) for column in instance.__table__.columns}
