"""Database package for sponsorship payments."""
from .connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    get_engine,
    get_session_factory,
    init_db,
)
from .models import Base, Sponsorship

__all__ = [
    "Base",
    "Sponsorship",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
]
