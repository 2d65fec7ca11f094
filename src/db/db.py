from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, echo=echo)
    if url.database in (None, "", ":memory:"):
        # One shared connection, otherwise every thread sees its own empty database.
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, echo=echo, connect_args={"check_same_thread": False})


def init_db(database_url: str, *, echo: bool = False, reset: bool = False) -> sessionmaker[Session]:
    url = make_url(database_url)
    if reset and url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        path = Path(url.database)
        if path.exists():
            path.unlink()

    engine = create_db_engine(database_url, echo=echo)
    Base.metadata.create_all(engine)
    return sessionmaker(engine)
