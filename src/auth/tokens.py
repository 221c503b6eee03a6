"""Lifecycle of single-use email verification and password reset tokens.

A token moves Created -> Valid -> Used | Expired and never returns to
Valid. Rejections are returned as ``ValidationOutcome`` values carrying a
reason the controller can render; only store failures raise.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from src.persistence.models import SecurityToken, User, as_utc, utcnow
from src.persistence.token_store import TokenStore

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


class TokenKind(str, Enum):
    """Kinds of security token. Each account holds at most one of each."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class TokenStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"


GENERIC_INVALID_REASON = "This link is invalid. Please check the link or request a new one."

REJECTION_REASONS: dict[TokenKind, dict[TokenStatus, str]] = {
    TokenKind.EMAIL_VERIFICATION: {
        TokenStatus.INVALID: (
            "The provided verification link is invalid. "
            "Please check the link or request a new one."
        ),
        TokenStatus.ALREADY_USED: (
            "This verification link has already been used. You cannot use it again."
        ),
        TokenStatus.EXPIRED: (
            "The verification link has expired. Please request a new verification link."
        ),
    },
    TokenKind.PASSWORD_RESET: {
        TokenStatus.INVALID: (
            "The reset password token is invalid. Ensure you copied the entire link."
        ),
        TokenStatus.ALREADY_USED: (
            "This token has already been used. You must request a new password reset."
        ),
        TokenStatus.EXPIRED: (
            "The reset password link has expired. Please request a new one."
        ),
    },
}


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating or consuming a token."""

    status: TokenStatus
    reason: Optional[str] = None
    user_id: Optional[str] = None
    kind: Optional[TokenKind] = None

    @property
    def is_valid(self) -> bool:
        return self.status is TokenStatus.VALID


def _rejection(status: TokenStatus, kind: Optional[TokenKind]) -> ValidationOutcome:
    if kind is None:
        return ValidationOutcome(status=status, reason=GENERIC_INVALID_REASON)
    return ValidationOutcome(
        status=status, reason=REJECTION_REASONS[kind][status], kind=kind
    )


class TokenLifecycleManager:
    """
    Issues, validates and consumes security tokens.

    Handles:
    - One row per (account, kind), rewritten on every issue
    - Validation in precedence order: not found, used, expired
    - Single-use consumption together with the account side effect
    - Purging of expired rows
    """

    def __init__(
        self,
        store: TokenStore,
        clock: Callable[[], datetime] = utcnow,
        ttl: Optional[dict[TokenKind, timedelta]] = None,
    ):
        """
        Args:
            store: Token persistence
            clock: Returns the current timezone-aware time
            ttl: Lifetime per token kind (24 hours when omitted)
        """
        self.store = store
        self.clock = clock
        self.ttl = {kind: DEFAULT_TTL for kind in TokenKind}
        if ttl:
            self.ttl.update(ttl)

    @classmethod
    def from_settings(
        cls, store: TokenStore, settings, clock: Callable[[], datetime] = utcnow
    ) -> "TokenLifecycleManager":
        """Build a manager using the token lifetimes in settings."""
        return cls(
            store,
            clock=clock,
            ttl={
                TokenKind.EMAIL_VERIFICATION: timedelta(
                    hours=settings.verification_token_ttl_hours
                ),
                TokenKind.PASSWORD_RESET: timedelta(hours=settings.reset_token_ttl_hours),
            },
        )

    def issue_or_refresh(self, user: User, kind: TokenKind) -> str:
        """
        Create a fresh token for this account, replacing any previous one.

        The previous value (live, used or expired) stops resolving at once.

        Returns:
            The new raw token value to embed in the emailed link
        """
        value = str(uuid.uuid4())
        expiry = self.clock() + self.ttl[kind]
        self.store.upsert(user.id, kind.value, value, expiry)
        self.store.commit()
        logger.info("Issued %s token for user %s", kind.value, user.id)
        return value

    def validate(
        self, raw_token: Optional[str], kind: Optional[TokenKind] = None
    ) -> ValidationOutcome:
        """
        Check a token without consuming it.

        Args:
            raw_token: Value taken from the link
            kind: Expected token kind; a token of another kind is Invalid.
                  None accepts either kind.
        """
        _, outcome = self._inspect(raw_token, kind)
        return outcome

    def consume(
        self,
        raw_token: Optional[str],
        kind: TokenKind,
        action: Callable[[User], None],
    ) -> ValidationOutcome:
        """
        Validate a token, apply ``action`` to its account and mark it used.

        The used flag and the account change are committed together. The
        claim only matches the exact value while it is still live, so a
        token that changed after the check is rejected with the status it
        has by then. An exception from ``action`` rolls both back and
        propagates.
        """
        row, outcome = self._inspect(raw_token, kind)
        if not outcome.is_valid:
            return outcome

        user = self.store.get_user(row.user_id)
        if user is None:
            logger.warning("Token %s references missing user %s", kind.value, row.user_id)
            return _rejection(TokenStatus.INVALID, kind)

        value = raw_token.strip()
        try:
            if not self.store.claim(row.id, value, self.clock()):
                self.store.rollback()
                return self._lost_claim(value, kind, user.id)
            action(user)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        logger.info("Consumed %s token for user %s", kind.value, user.id)
        return outcome

    def purge_expired(
        self, now: Optional[datetime] = None, kind: Optional[TokenKind] = None
    ) -> int:
        """
        Delete tokens whose expiry is strictly before ``now``, used or not.

        Returns:
            Number of rows deleted
        """
        cutoff = now or self.clock()
        deleted = self.store.delete_expired_before(
            cutoff, kind.value if kind is not None else None
        )
        self.store.commit()
        return deleted

    def _lost_claim(self, value: str, kind: TokenKind, user_id: str) -> ValidationOutcome:
        """Report why a claim matched no row: re-read the value as it is now."""
        _, outcome = self._inspect(value, kind)
        logger.warning(
            "Token %s for user %s changed before it could be claimed: %s",
            kind.value,
            user_id,
            outcome.status.value,
        )
        if outcome.is_valid:
            # Row still looks live to this session; another caller holds it.
            return _rejection(TokenStatus.ALREADY_USED, kind)
        return outcome

    def _inspect(
        self, raw_token: Optional[str], kind: Optional[TokenKind]
    ) -> tuple[Optional[SecurityToken], ValidationOutcome]:
        value = raw_token.strip() if raw_token else ""
        if not value:
            logger.warning("Token check failed - blank token")
            return None, _rejection(TokenStatus.INVALID, kind)

        row = self.store.find_by_value(value)
        if row is None or (kind is not None and row.kind != kind.value):
            logger.warning("Token check failed - token not found")
            return None, _rejection(TokenStatus.INVALID, kind)

        try:
            row_kind = TokenKind(row.kind)
        except ValueError:
            logger.warning("Token check failed - unknown token kind %r", row.kind)
            return None, _rejection(TokenStatus.INVALID, kind)

        if row.used:
            logger.warning(
                "Token check failed - %s token already used - user %s",
                row_kind.value,
                row.user_id,
            )
            return row, _rejection(TokenStatus.ALREADY_USED, row_kind)

        if self.clock() >= as_utc(row.expiry_date):
            logger.warning(
                "Token check failed - %s token expired - user %s",
                row_kind.value,
                row.user_id,
            )
            return row, _rejection(TokenStatus.EXPIRED, row_kind)

        return row, ValidationOutcome(
            status=TokenStatus.VALID, user_id=row.user_id, kind=row_kind
        )
