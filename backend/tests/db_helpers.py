from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from habitchat.db import models  # noqa: F401
from habitchat.db.base import Base
from habitchat.db.models import User
from habitchat.schemas.auth import RegisterRequest
from habitchat.services.auth_service import create_user


def make_session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def dispose_session_factory(factory: sessionmaker) -> None:
    engine = factory.kw["bind"]
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


def make_user(db: Session, username: str, *, uid: str | None = None) -> User:
    user = create_user(
        db,
        RegisterRequest(
            email=f"{username}@example.com",
            username=username,
            password="password123",
        ),
    )
    if uid:
        user.uid = uid
        db.commit()
        db.refresh(user)
    return user
