"""Database persistence layer."""
from .database import get_session, init_db
from .models import Base, SecurityToken, User
from .token_store import SqlTokenStore, TokenStore

__all__ = [
    "Base",
    "User",
    "SecurityToken",
    "TokenStore",
    "SqlTokenStore",
    "init_db",
    "get_session",
]
