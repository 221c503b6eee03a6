"""Scheduled purge of expired security tokens."""
import logging
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from src.auth.tokens import TokenKind, TokenLifecycleManager
from src.persistence.database import get_session
from src.persistence.token_store import SqlTokenStore

logger = logging.getLogger(__name__)


def purge_expired_tokens(
    session_scope: Callable[[], AbstractContextManager[Session]] = get_session,
    now: Optional[datetime] = None,
) -> dict:
    """Delete expired tokens of every kind, used or not.

    Args:
        session_scope: Context manager factory yielding a session
        now: Cutoff; defaults to the current UTC time

    Returns:
        Dictionary with the number of tokens deleted per kind and in total
    """
    logger.info("Starting cleanup of expired tokens")

    counts = {}
    with session_scope() as session:
        manager = TokenLifecycleManager(SqlTokenStore(session))
        for kind in TokenKind:
            deleted = manager.purge_expired(now=now, kind=kind)
            logger.info("Deleted %d expired %s tokens", deleted, kind.value)
            counts[kind.value] = deleted

    counts["total"] = sum(counts.values())
    logger.info("Token cleanup completed. Total tokens deleted: %d", counts["total"])
    return counts
