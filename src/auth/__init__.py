"""Authentication module for Account Guard."""
from src.auth.exceptions import (
    AccountDisabledError,
    AuthenticationError,
    ConfigurationError,
    DuplicateEmailError,
    DuplicateUsernameError,
    InvalidCredentialsError,
    InvalidEmailError,
    WeakPasswordError,
)
from src.auth.service import AuthService, Registration, hash_password, verify_password
from src.auth.tokens import (
    TokenKind,
    TokenLifecycleManager,
    TokenStatus,
    ValidationOutcome,
)
from src.persistence.exceptions import TokenStoreError

__all__ = [
    "AuthService",
    "Registration",
    "hash_password",
    "verify_password",
    "TokenKind",
    "TokenStatus",
    "TokenLifecycleManager",
    "ValidationOutcome",
    "AuthenticationError",
    "DuplicateEmailError",
    "DuplicateUsernameError",
    "WeakPasswordError",
    "InvalidEmailError",
    "InvalidCredentialsError",
    "AccountDisabledError",
    "TokenStoreError",
    "ConfigurationError",
]
