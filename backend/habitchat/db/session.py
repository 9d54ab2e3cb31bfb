from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from habitchat.core.config import get_settings
from habitchat.core.exceptions import ConflictError, NotFoundError

settings = get_settings()

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_raise(db: Session, conflict_message: str) -> None:
    """Commit, turning constraint violations from racing writers into domain errors."""
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if "foreign key" in str(exc.orig).lower():
            raise NotFoundError("Referenced record not found") from exc
        raise ConflictError(conflict_message) from exc
