from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .config import DATABASE_URL


def make_engine(url: str = DATABASE_URL, **kwargs):
    if url.startswith("sqlite"):
        # sqlite connections are shared with the scheduler thread
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **kwargs)


engine = make_engine()    # Connecting to the database
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)   # A temporary connection to work with the database.


def get_db(request: Request):
    factory = getattr(request.app.state, "session_factory", SessionLocal)
    db = factory()
    try:
        yield db
    finally:
        db.close()
