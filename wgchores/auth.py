from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

from sqlalchemy import delete
from sqlmodel import Field, Session, SQLModel, select

from .errors import Unauthenticated
from .time_utils import ensure_tz, get_now, to_utc
from .values import AuthenticationSessionId, UserId, generate_token, new_id

if TYPE_CHECKING:
    from .users import User, UserStore


logger = logging.getLogger(__name__)

SESSION_LIFETIME = timedelta(days=30)


class AuthenticationSession(SQLModel, table=True):
    """A login. The token is the only credential the client holds."""

    id: uuid.UUID = Field(default_factory=new_id, primary_key=True)
    token: str = Field(index=True, unique=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    date_expires: datetime
    date_created: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        if now is None:
            now = get_now()
        return ensure_tz(self.date_expires) < now


def _normalize(auth_session: AuthenticationSession) -> AuthenticationSession:
    auth_session.date_expires = ensure_tz(auth_session.date_expires)
    auth_session.date_created = ensure_tz(auth_session.date_created)
    return auth_session


class AuthenticationSessionStore:
    """CRUD helper for :class:`AuthenticationSession` rows."""

    def __init__(self, engine):
        self.engine = engine

    def get(self, session_id: AuthenticationSessionId) -> Optional[AuthenticationSession]:
        with Session(self.engine) as session:
            auth_session = session.get(AuthenticationSession, session_id)
            return _normalize(auth_session) if auth_session else None

    def get_by_token(self, token: str) -> Optional[AuthenticationSession]:
        with Session(self.engine) as session:
            auth_session = session.exec(
                select(AuthenticationSession).where(AuthenticationSession.token == token)
            ).first()
            return _normalize(auth_session) if auth_session else None

    def list_for_user(self, user_id: UserId) -> List[AuthenticationSession]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AuthenticationSession).where(AuthenticationSession.user_id == user_id)
            ).all()
            return [_normalize(row) for row in rows]

    def create(self, auth_session: AuthenticationSession) -> AuthenticationSession:
        auth_session.date_expires = to_utc(auth_session.date_expires)
        auth_session.date_created = to_utc(auth_session.date_created)
        with Session(self.engine) as session:
            session.add(auth_session)
            session.commit()
            session.refresh(auth_session)
            return _normalize(auth_session)

    def delete(self, session_id: AuthenticationSessionId) -> bool:
        with Session(self.engine) as session:
            auth_session = session.get(AuthenticationSession, session_id)
            if not auth_session:
                return False
            session.delete(auth_session)
            session.commit()
            return True

    def delete_all_for_user(self, user_id: UserId) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                delete(AuthenticationSession).where(AuthenticationSession.user_id == user_id)
            )
            session.commit()
            return result.rowcount

    def delete_all_expired(self, now: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                delete(AuthenticationSession).where(
                    AuthenticationSession.date_expires < to_utc(now)
                )
            )
            session.commit()
            return result.rowcount


class SessionManager:
    """Issues, validates and removes login sessions.

    A session's expiry is fixed when it is created; logging in again creates
    a new session instead of extending an old one. Expired sessions are not
    removed when they fail validation, they are swept on the next successful
    login of any user.
    """

    def __init__(
        self,
        session_store: AuthenticationSessionStore,
        user_store: "UserStore",
        clock: Callable[[], datetime] = get_now,
    ):
        self.session_store = session_store
        self.user_store = user_store
        self.clock = clock

    def create_session(self, user: "User") -> AuthenticationSession:
        now = self.clock()
        auth_session = AuthenticationSession(
            token=generate_token(),
            user_id=user.id,
            date_expires=now + SESSION_LIFETIME,
            date_created=now,
        )
        return self.session_store.create(auth_session)

    def login(self, handle: str, password: str) -> Tuple["User", AuthenticationSession]:
        """Authenticate ``handle``/``password`` and open a new session.

        Every failure raises the same :class:`Unauthenticated` so callers
        cannot tell an unknown handle from a wrong password.
        """
        user = self.user_store.verify(handle, password)
        if not user:
            logger.warning("Failed login for handle %r", handle)
            raise Unauthenticated("Invalid credentials")
        auth_session = self.create_session(user)
        swept = self.sweep_expired()
        logger.info("User %s logged in (%d expired sessions removed)", user.id, swept)
        return user, auth_session

    def validate(self, token: str | None) -> AuthenticationSession:
        if not token:
            raise Unauthenticated()
        auth_session = self.session_store.get_by_token(token)
        if not auth_session:
            raise Unauthenticated()
        if auth_session.is_expired(self.clock()):
            raise Unauthenticated("Session expired")
        return auth_session

    def delete_session(self, auth_session: AuthenticationSession) -> None:
        self.session_store.delete(auth_session.id)

    def delete_all_for_user(self, user_id: UserId) -> int:
        return self.session_store.delete_all_for_user(user_id)

    def sweep_expired(self) -> int:
        return self.session_store.delete_all_expired(self.clock())
