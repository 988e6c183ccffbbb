"""
Database engine configuration for the relational datasources.

Generated SQL runs on the datasource configured for a scope; this module
builds the SQLAlchemy engines the SQL executor caches per datasource URL.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine


def build_engine(url: str) -> Engine:
    """
    Create an engine suitable for the given URL.

    sqlite does not accept pool sizing arguments and needs cross-thread
    access because statements run on the worker pool.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    return create_engine(
        url,
        pool_pre_ping=True,      # Verify connections before use
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,       # Recycle connections after 1 hour
        echo=False,
    )
