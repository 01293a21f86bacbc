"""
SQLAlchemy 2.0 async DeclarativeBase for PokeLedger.

All models inherit from this Base. Column types that differ between the
production PostgreSQL store and the SQLite test store are defined here once.
"""

from sqlalchemy import JSON, BigInteger, Integer
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all PokeLedger database models."""
    pass
