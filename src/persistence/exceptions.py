"""Persistence exceptions for Account Guard."""


class TokenStoreError(Exception):
    """Raised when the token store cannot be read or written.

    Distinct from an invalid token: the link may be fine, the database is not.
    """

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Token store failure during {operation}: {cause}")
