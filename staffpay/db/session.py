from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()

def make_engine(db_url: str) -> Engine:
    # SQLite needs check_same_thread off because per-staff work runs in a thread pool
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(db_url, echo=False, future=True, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(db_url, echo=False, future=True, connect_args=connect_args)

def make_session_factory(db_url: Optional[str] = None, engine: Optional[Engine] = None) -> sessionmaker:
    if engine is None:
        if db_url is None:
            raise ValueError("db_url or engine is required")
        engine = make_engine(db_url)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)

def init_db(engine: Engine):
    # Import models here so they are registered on Base
    import staffpay.db.models as _models  # noqa: F401
    Base.metadata.create_all(bind=engine)
