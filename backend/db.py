# examwatch/backend/db.py
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    # SQLite necesita check_same_thread=False: las consultas corren en hilos
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Crea las tablas si no existen."""
    from backend import models  # noqa: F401  registra los modelos en Base

    Base.metadata.create_all(bind=engine)
