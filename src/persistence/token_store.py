"""Token persistence.

The lifecycle manager only talks to the ``TokenStore`` protocol; the
SQLAlchemy implementation below is what the application wires in.
Every database error is re-raised as ``TokenStoreError`` so callers can
tell "the link is bad" apart from "the database is down".
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional, Protocol, runtime_checkable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.persistence.exceptions import TokenStoreError
from src.persistence.models import SecurityToken, User

logger = logging.getLogger(__name__)


@runtime_checkable
class TokenStore(Protocol):
    """Persistence contract for security tokens."""

    def find_by_value(self, value: str) -> Optional[SecurityToken]:
        """Return the token row holding this raw value, if any."""
        ...

    def find_by_account(self, user_id: str, kind: str) -> Optional[SecurityToken]:
        """Return the single row for (user, kind), if any."""
        ...

    def upsert(
        self, user_id: str, kind: str, value: str, expiry: datetime
    ) -> SecurityToken:
        """Write a fresh unused token, reusing the (user, kind) row if present."""
        ...

    def claim(self, token_id: str, value: str, now: datetime) -> bool:
        """Mark the row used only if it still holds this value as a live token.

        True if this call won.
        """
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def delete_expired_before(self, cutoff: datetime, kind: Optional[str] = None) -> int:
        """Delete rows whose expiry is strictly before cutoff, used or not."""
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("Token store %s failed: %s", operation, e)
        raise TokenStoreError(operation, e) from e


class SqlTokenStore:
    """SQLAlchemy-backed token store bound to one session."""

    def __init__(self, session: Session):
        self.session = session

    def find_by_value(self, value: str) -> Optional[SecurityToken]:
        with _store_errors("find_by_value"):
            stmt = select(SecurityToken).where(SecurityToken.token == value)
            return self.session.execute(stmt).scalar_one_or_none()

    def find_by_account(self, user_id: str, kind: str) -> Optional[SecurityToken]:
        with _store_errors("find_by_account"):
            stmt = select(SecurityToken).where(
                SecurityToken.user_id == user_id,
                SecurityToken.kind == kind,
            )
            return self.session.execute(stmt).scalar_one_or_none()

    def upsert(
        self, user_id: str, kind: str, value: str, expiry: datetime
    ) -> SecurityToken:
        row = self.find_by_account(user_id, kind)
        with _store_errors("upsert"):
            if row is None:
                row = SecurityToken(user_id=user_id, kind=kind)
                self.session.add(row)
            else:
                logger.debug("Refreshing existing %s token for user %s", kind, user_id)
            row.token = value
            row.expiry_date = expiry
            row.used = False
            self.session.flush()
            return row

    def claim(self, token_id: str, value: str, now: datetime) -> bool:
        with _store_errors("claim"):
            result = self.session.execute(
                update(SecurityToken)
                .where(SecurityToken.id == token_id)
                .where(SecurityToken.token == value)
                .where(SecurityToken.expiry_date > now)
                .where(SecurityToken.used.is_(False))
                .values(used=True)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def get_user(self, user_id: str) -> Optional[User]:
        with _store_errors("get_user"):
            return self.session.get(User, user_id)

    def delete_expired_before(self, cutoff: datetime, kind: Optional[str] = None) -> int:
        with _store_errors("delete_expired_before"):
            stmt = delete(SecurityToken).where(SecurityToken.expiry_date < cutoff)
            if kind is not None:
                stmt = stmt.where(SecurityToken.kind == kind)
            stmt = stmt.execution_options(synchronize_session=False)
            result = self.session.execute(stmt)
            return result.rowcount

    def commit(self) -> None:
        with _store_errors("commit"):
            self.session.commit()

    def rollback(self) -> None:
        with _store_errors("rollback"):
            self.session.rollback()
