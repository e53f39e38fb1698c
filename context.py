from dataclasses import dataclass

from fastapi.requests import HTTPConnection

from config import Settings
from database import make_engine, make_session_factory
from feed import FeedRegistry
from realtime import RealtimeDatabase
from store import ExpenseStore


@dataclass
class AppContext:
    """Everything a request needs, built once per application."""

    settings: Settings
    session_factory: object
    database: RealtimeDatabase
    store: ExpenseStore
    feeds: FeedRegistry

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppContext":
        session_factory = make_session_factory(make_engine(settings.database_url))
        database = RealtimeDatabase(session_factory)
        return cls(
            settings=settings,
            session_factory=session_factory,
            database=database,
            store=ExpenseStore(database),
            feeds=FeedRegistry(database),
        )

    def close(self):
        self.feeds.close_all()


def get_context(connection: HTTPConnection) -> AppContext:
    return connection.app.state.context


def get_db(connection: HTTPConnection):
    db = get_context(connection).session_factory()
    try:
        yield db
    finally:
        db.close()
