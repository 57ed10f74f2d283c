from sqlalchemy import Column, Integer, LargeBinary, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


class ChallengeRow(Base):
    __tablename__ = "challenges"

    id = Column(LargeBinary(32), primary_key=True)
    created_at = Column(Integer, nullable=False, index=True)
    bound_pubkey = Column(LargeBinary(33), nullable=True)


class UserRow(Base):
    __tablename__ = "users"

    pubkey = Column(LargeBinary(33), primary_key=True)
    created_at = Column(Integer, nullable=False)


def make_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}  # threadpool endpoints
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every checkout sees an empty DB;
            # SqlStore serializes its transactions on it
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
