"""Errors raised by the account flows and by startup configuration.

Token rejections are not exceptions; see ``ValidationOutcome``. Messages
never carry a full email address since they end up in logs.
"""
from src.logging_config import mask_email


class AuthenticationError(Exception):
    """Base class for registration and login failures."""


class DuplicateEmailError(AuthenticationError):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"An account already uses {mask_email(email)}")


class DuplicateUsernameError(AuthenticationError):
    def __init__(self, username: str):
        self.username = username
        super().__init__(f"Username already taken: {username}")


class WeakPasswordError(AuthenticationError):
    """New password rejected; ``reason`` is safe to show to the user."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InvalidEmailError(AuthenticationError):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Not a usable email address: {mask_email(email)}")


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; both give the same message."""

    def __init__(self):
        super().__init__("Invalid email or password")


class AccountDisabledError(AuthenticationError):
    def __init__(self):
        super().__init__("This account has been disabled")


class ConfigurationError(Exception):
    """Raised at startup when rate limit or token settings are unusable."""
