"""Database package exports."""

from storefront_auth.db.base import Base
from storefront_auth.db.session import (
    dispose_engine,
    get_engine,
    get_session_factory,
)

__all__ = [
    "Base",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
]
