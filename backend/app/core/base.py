"""
SQLAlchemy Base class for referral, wallet and catalog models.

Kept apart from database.py so models and tests can import Base
without creating the PostgreSQL engine.
"""
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase


class Base(AsyncAttrs, DeclarativeBase):
    """Declarative base shared by every table of the referral engine."""
    pass
