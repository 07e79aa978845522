from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import delete, func
from sqlmodel import Field, Session, SQLModel, select

from .auth import AuthenticationSession
from .time_utils import ensure_tz, get_now, to_utc
from .values import (
    ADMIN_PASSWORD_BYTES,
    UserId,
    generate_token,
    hash_password,
    new_id,
    password_needs_rehash,
    verify_password,
)


logger = logging.getLogger(__name__)

LANGUAGES = ("en", "de")


class User(SQLModel, table=True):
    """Database representation of a user."""

    id: uuid.UUID = Field(default_factory=new_id, primary_key=True)
    name: str
    handle: str = Field(index=True, unique=True)
    password_hash: str
    language: str = "en"
    date_created: datetime = Field(default_factory=get_now)
    date_deleted: Optional[datetime] = None

    def is_deleted(self) -> bool:
        return self.date_deleted is not None


def _normalize(user: User) -> User:
    user.date_created = ensure_tz(user.date_created)
    user.date_deleted = ensure_tz(user.date_deleted)
    return user


class UserStore:
    """CRUD helper for :class:`User` objects."""

    def __init__(self, engine):
        self.engine = engine

    def list_users(self, include_deleted: bool = False) -> List[User]:
        with Session(self.engine) as session:
            stmt = select(User)
            if not include_deleted:
                stmt = stmt.where(User.date_deleted.is_(None))
            return [_normalize(u) for u in session.exec(stmt.order_by(User.name)).all()]

    def get(self, user_id: UserId) -> Optional[User]:
        with Session(self.engine) as session:
            user = session.get(User, user_id)
            return _normalize(user) if user else None

    def get_by_handle(self, handle: str) -> Optional[User]:
        with Session(self.engine) as session:
            user = session.exec(
                select(User).where(func.lower(User.handle) == handle.strip().lower())
            ).first()
            return _normalize(user) if user else None

    def exists_any(self) -> bool:
        with Session(self.engine) as session:
            return session.exec(select(User.id)).first() is not None

    def create(
        self,
        name: str,
        handle: str,
        password: str,
        language: str = "en",
    ) -> User:
        name = name.strip()
        handle = handle.strip()
        if not name or not handle or not password:
            raise ValueError("User requires a name, handle and password")
        if language not in LANGUAGES:
            raise ValueError(f"Unsupported language: {language}")
        with Session(self.engine) as session:
            if session.exec(
                select(User).where(func.lower(User.handle) == handle.lower())
            ).first():
                raise ValueError(f"Handle {handle!r} is already taken")
            user = User(
                name=name,
                handle=handle,
                password_hash=hash_password(password),
                language=language,
                date_created=to_utc(get_now()),
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            logger.info("Created user %s (%s)", user.id, user.handle)
            return _normalize(user)

    def update(
        self,
        user_id: UserId,
        name: Optional[str] = None,
        password: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Optional[User]:
        if language is not None and language not in LANGUAGES:
            raise ValueError(f"Unsupported language: {language}")
        with Session(self.engine) as session:
            user = session.get(User, user_id)
            if not user:
                return None
            if name is not None and name.strip():
                user.name = name.strip()
            if password:
                user.password_hash = hash_password(password)
            if language is not None:
                user.language = language
            session.add(user)
            session.commit()
            session.refresh(user)
            logger.info("Updated user %s", user.id)
            return _normalize(user)

    def delete(self, user_id: UserId) -> bool:
        """Soft-delete a user and log them out everywhere."""
        with Session(self.engine) as session:
            user = session.get(User, user_id)
            if not user or user.date_deleted is not None:
                return False
            user.date_deleted = to_utc(get_now())
            session.add(user)
            session.exec(
                delete(AuthenticationSession).where(AuthenticationSession.user_id == user_id)
            )
            session.commit()
            logger.info("Deleted user %s and their sessions", user_id)
            return True

    def restore(self, user_id: UserId) -> bool:
        with Session(self.engine) as session:
            user = session.get(User, user_id)
            if not user or user.date_deleted is None:
                return False
            user.date_deleted = None
            session.add(user)
            session.commit()
            logger.info("Restored user %s", user_id)
            return True

    def verify(self, handle: str, password: str) -> Optional[User]:
        """Return the user if ``password`` matches, ``None`` otherwise.

        Deleted users never verify. A hash produced by a deprecated scheme
        is replaced after a successful verification.
        """
        user = self.get_by_handle(handle)
        if not user or user.is_deleted():
            return None
        if not verify_password(password, user.password_hash):
            return None
        if password_needs_rehash(user.password_hash):
            self.update(user.id, password=password)
        return user


def create_default_admin(user_store: UserStore) -> Tuple[User, str]:
    """Create the initial administrator and return it with its plain password."""
    password = os.getenv("WG_ADMIN_PASSWORD") or generate_token(ADMIN_PASSWORD_BYTES)
    user = user_store.create("Admin", "admin", password)
    return user, password


def init_db(engine) -> None:
    """Create tables and populate the default admin on first run."""

    # Import the remaining models so their tables are registered.
    from . import absences, chores, settings  # noqa: F401

    SQLModel.metadata.create_all(engine)

    user_store = UserStore(engine)
    if not user_store.exists_any():
        admin, password = create_default_admin(user_store)
        logger.warning(
            "Created user with handle '%s' and password '%s'", admin.handle, password
        )
