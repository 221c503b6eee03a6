"""Account service: registration, login, email verification and password reset."""
import logging
import re
from typing import NamedTuple, Optional

import bcrypt
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.auth.exceptions import (
    AccountDisabledError,
    DuplicateEmailError,
    DuplicateUsernameError,
    InvalidCredentialsError,
    InvalidEmailError,
    WeakPasswordError,
)
from src.auth.tokens import TokenKind, TokenLifecycleManager, ValidationOutcome
from src.logging_config import mask_email
from src.persistence.models import User
from src.persistence.token_store import SqlTokenStore

logger = logging.getLogger(__name__)

# Email validation regex
EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password

    Returns:
        Bcrypt hash string
    """
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """
    Verify a password against a bcrypt hash.

    Args:
        password: Plain text password to verify
        hashed: Bcrypt hash to verify against

    Returns:
        True if password matches, False otherwise
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


class Registration(NamedTuple):
    user: User
    verification_token: str


class AuthService:
    """
    Authentication service for user management.

    Handles:
    - User registration with email/password
    - User authentication (login)
    - Email verification
    - Password reset flow
    """

    # Password requirements
    MIN_PASSWORD_LENGTH = 8

    def __init__(
        self,
        session: Session,
        token_manager: Optional[TokenLifecycleManager] = None,
    ):
        """
        Initialize auth service with database session.

        Args:
            session: SQLAlchemy database session
            token_manager: Token manager; defaults to one backed by the same session
        """
        self.session = session
        self.tokens = token_manager or TokenLifecycleManager(SqlTokenStore(session))

    def register(
        self,
        email: str,
        username: str,
        password: str,
    ) -> Registration:
        """
        Register a new, unverified user and issue their verification token.

        Args:
            email: User's email address
            username: Unique username
            password: Plain text password (will be hashed)

        Returns:
            The created User and the raw verification token to email

        Raises:
            InvalidEmailError: If email format is invalid
            DuplicateEmailError: If email already exists
            DuplicateUsernameError: If username already exists
            WeakPasswordError: If password doesn't meet requirements
        """
        if not self._is_valid_email(email):
            raise InvalidEmailError(email)

        self._validate_password(password)

        if self._get_user_by_email(email) is not None:
            raise DuplicateEmailError(email)

        if self._username_exists(username):
            raise DuplicateUsernameError(username)

        user = User(
            email=email.lower().strip(),
            username=username.strip(),
            password_hash=hash_password(password),
        )
        self.session.add(user)
        self.session.flush()  # Get user.id

        token = self.tokens.issue_or_refresh(user, TokenKind.EMAIL_VERIFICATION)
        logger.info("Registered user %s (%s)", user.id, mask_email(user.email))
        return Registration(user=user, verification_token=token)

    def authenticate(self, email: str, password: str) -> User:
        """
        Authenticate a user with email and password.

        Raises:
            InvalidCredentialsError: If email or password is incorrect
            AccountDisabledError: If account is deactivated
        """
        user = self._get_user_by_email(email)
        if user is None:
            raise InvalidCredentialsError()

        if not user.is_active:
            raise AccountDisabledError()

        if not verify_password(password, user.password_hash):
            raise InvalidCredentialsError()

        return user

    def resend_verification(self, email: str) -> Optional[str]:
        """Issue a new verification token, or None if there is nothing to verify."""
        user = self._get_user_by_email(email)
        if user is None or user.is_verified:
            return None
        return self.tokens.issue_or_refresh(user, TokenKind.EMAIL_VERIFICATION)

    def verify_email(self, token: str) -> ValidationOutcome:
        """Mark the token's account as verified and use up the token."""

        def _mark_verified(user: User) -> None:
            user.is_verified = True

        return self.tokens.consume(token, TokenKind.EMAIL_VERIFICATION, _mark_verified)

    def request_password_reset(self, email: str) -> Optional[str]:
        """
        Create (or refresh) a password reset token for a user.

        Returns:
            The raw reset token, or None when no account has this email.
            Callers should respond identically in both cases.
        """
        user = self._get_user_by_email(email)
        if user is None:
            logger.warning("Password reset requested for unknown email %s", mask_email(email))
            return None
        return self.tokens.issue_or_refresh(user, TokenKind.PASSWORD_RESET)

    def validate_reset_token(self, token: str) -> ValidationOutcome:
        """Check a reset link before showing the new-password form."""
        return self.tokens.validate(token, TokenKind.PASSWORD_RESET)

    def reset_password(self, token: str, new_password: str) -> ValidationOutcome:
        """
        Reset a user's password using a reset token.

        Raises:
            WeakPasswordError: If new password doesn't meet requirements.
                The token is left untouched in that case.
        """
        self._validate_password(new_password)
        new_hash = hash_password(new_password)

        def _set_password(user: User) -> None:
            user.password_hash = new_hash

        return self.tokens.consume(token, TokenKind.PASSWORD_RESET, _set_password)

    def _is_valid_email(self, email: str) -> bool:
        """Check if email format is valid."""
        if not email or not isinstance(email, str):
            return False
        return EMAIL_REGEX.match(email.strip()) is not None

    def _validate_password(self, password: str) -> None:
        """
        Validate password meets requirements.

        Requirements:
        - At least 8 characters
        - Contains at least one uppercase letter
        - Contains at least one number

        Raises:
            WeakPasswordError: If password doesn't meet requirements
        """
        if len(password) < self.MIN_PASSWORD_LENGTH:
            raise WeakPasswordError(
                f"Password must be at least {self.MIN_PASSWORD_LENGTH} characters"
            )

        if not any(c.isupper() for c in password):
            raise WeakPasswordError("Password must contain at least one uppercase letter")

        if not any(c.isdigit() for c in password):
            raise WeakPasswordError("Password must contain at least one number")

    def _username_exists(self, username: str) -> bool:
        """Check if username already exists in database."""
        stmt = select(User).where(User.username == username.strip())
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def _get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email address."""
        stmt = select(User).where(User.email == email.lower().strip())
        return self.session.execute(stmt).scalar_one_or_none()
