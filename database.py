from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    JSON,
)
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


class User(Base):
    __tablename__ = "users"
    uid = Column(String, primary_key=True)
    username = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)


class ExpenseNode(Base):
    """One child of a collection in the real-time store, kept as raw JSON."""

    __tablename__ = "expense_nodes"
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    collection = Column(String, index=True, nullable=False)
    key = Column(String, index=True, nullable=False)
    payload = Column(JSON)


def make_engine(database_url: str):
    if not database_url.startswith("sqlite"):
        return create_engine(database_url)
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every session sees an empty database
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, connect_args={"check_same_thread": False})


def make_session_factory(engine):
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
