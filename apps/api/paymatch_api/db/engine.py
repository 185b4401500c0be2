"""Database engine builder.

- Default: NullPool (Supabase pooler in transaction mode does the pooling)
- Supabase hosts: sslmode=require unless PAYMATCH_DB_SSLMODE overrides it
- ENV: PAYMATCH_DB_POOL=nullpool|queuepool (default: nullpool)
"""

import logging
import os
import re
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

_SUPABASE_HOST_MARKERS = ("supabase.co", "supabase.com")


def _is_supabase_host(url: str) -> bool:
    """Check if URL points to a Supabase database host."""
    hostname = (urlparse(url).hostname or "").lower()
    return any(hostname.endswith(marker) for marker in _SUPABASE_HOST_MARKERS)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(database_url: str | None = None) -> Engine:
    """
    Build SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, reads from env DATABASE_URL.

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If DATABASE_URL not provided and not in environment,
            or PAYMATCH_DB_POOL has an invalid value.
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    connect_args: dict[str, Any] = {}
    if url.startswith("postgresql"):
        if _is_supabase_host(url) and "sslmode=" not in url:
            connect_args["sslmode"] = os.getenv("PAYMATCH_DB_SSLMODE", "require")
        connect_args["application_name"] = os.getenv(
            "PAYMATCH_DB_APPLICATION_NAME", "paymatch-api"
        )

    pool_mode = os.getenv("PAYMATCH_DB_POOL", "nullpool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=int(os.getenv("PAYMATCH_DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("PAYMATCH_DB_MAX_OVERFLOW", "10")),
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid PAYMATCH_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build sessionmaker configured with autocommit=False, autoflush=False."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
