"""SQLAlchemy engine factory for Orvex.

Provides a process-level engine singleton shared by all request threads
within a single process.
"""
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

_engines = {}


def get_engine(url: str = None, pool_size: int = 10, max_overflow: int = 20) -> sa.Engine:
    """Get or create a process-level engine singleton.

    Args:
        url: Database URL. If None, reads from config.DATABASE_URL.
        pool_size: Number of persistent connections in the pool.
        max_overflow: Additional connections allowed on burst.

    Returns:
        SQLAlchemy Engine. QueuePool for server databases; SQLite gets a
        single shared connection so in-memory databases survive across threads.
    """
    if url is None:
        from orvex.config import DATABASE_URL
        url = DATABASE_URL

    if url not in _engines:
        if url.startswith('sqlite'):
            _engines[url] = sa.create_engine(
                url,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool,
                echo=False,
            )
        else:
            _engines[url] = sa.create_engine(
                url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=30,
                pool_recycle=1800,
                pool_pre_ping=True,
                echo=False,
            )
    return _engines[url]
