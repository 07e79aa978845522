from __future__ import annotations

import secrets
import types
import uuid
from datetime import date, timedelta
from enum import Enum
from typing import NewType, Optional, Tuple

import bcrypt

# Work around bcrypt wheels lacking ``_bcrypt.__about__`` by populating it
# with the package version so Passlib's backend check doesn't emit a
# traceback. Only legacy bcrypt hashes go through this backend.
if not hasattr(bcrypt, "__about__"):
    bcrypt.__about__ = types.SimpleNamespace(__version__=bcrypt.__version__)
if hasattr(bcrypt, "_bcrypt") and not hasattr(bcrypt._bcrypt, "__about__"):
    bcrypt._bcrypt.__about__ = bcrypt.__about__

from passlib.context import CryptContext

from .time_utils import add_months


UserId = NewType("UserId", uuid.UUID)
ChoreListId = NewType("ChoreListId", uuid.UUID)
ChoreId = NewType("ChoreId", uuid.UUID)
ChoreActivityId = NewType("ChoreActivityId", uuid.UUID)
AbsenceId = NewType("AbsenceId", uuid.UUID)
AuthenticationSessionId = NewType("AuthenticationSessionId", uuid.UUID)


def new_id() -> uuid.UUID:
    return uuid.uuid4()


SESSION_TOKEN_BYTES = 64
ADMIN_PASSWORD_BYTES = 8


def generate_token(num_bytes: int = SESSION_TOKEN_BYTES) -> str:
    """Return ``num_bytes`` of cryptographically secure randomness, hex encoded."""
    return secrets.token_hex(num_bytes)


# argon2 is memory-hard and salts every hash; bcrypt hashes from older
# databases still verify and are upgraded on the next login.
pwd_context = CryptContext(schemes=["argon2", "bcrypt"], deprecated="auto")


def hash_password(plain_password: str) -> str:
    return pwd_context.hash(plain_password)


def verify_password(plain_password: str, password_hash: str) -> bool:
    # Unknown hash formats never verify; backend failures propagate.
    if not password_hash or pwd_context.identify(password_hash) is None:
        return False
    return pwd_context.verify(plain_password, password_hash)


def password_needs_rehash(password_hash: str) -> bool:
    return pwd_context.needs_update(password_hash)


class ScoreResetInterval(str, Enum):
    Monthly = "Monthly"
    Quarterly = "Quarterly"
    HalfYearly = "HalfYearly"
    Yearly = "Yearly"
    Never = "Never"

    def as_months(self) -> Optional[int]:
        return {
            ScoreResetInterval.Monthly: 1,
            ScoreResetInterval.Quarterly: 3,
            ScoreResetInterval.HalfYearly: 6,
            ScoreResetInterval.Yearly: 12,
        }.get(self)

    def current_window(self, today: date) -> Optional[Tuple[date, date]]:
        """Return the ``(start, end)`` dates of the window containing ``today``.

        Windows are blocks of whole months aligned on January 1st, so a
        quarterly window starts in January, April, July or October. ``Never``
        has no window and returns ``None``.
        """
        months = self.as_months()
        if months is None:
            return None
        elapsed_months = (today.month - 1) % months
        start = date(today.year, today.month - elapsed_months, 1)
        end = add_months(start, months) - timedelta(days=1)
        return start, end
