"""Process-wide engine and the request-scoped session dependency."""

from typing import Generator

from sqlalchemy.orm import Session

from paymatch_api.config.env import get_database_url
from paymatch_api.db.engine import build_engine, build_sessionmaker

engine = build_engine(get_database_url())
SessionLocal = build_sessionmaker(engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
