"""
Persistence package.

Provides the asyncpg pool used for every read the engine performs: the
five grant source tables, the feature catalog and its join tables, and
the ``get_current_usage`` SQL function.
"""

from .postgres import PostgreSQLPersistence

__all__ = ["PostgreSQLPersistence"]
