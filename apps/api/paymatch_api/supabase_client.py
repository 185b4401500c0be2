"""Supabase client configuration for auth operations.

Supabase Auth is the identity provider: password hashing, sessions, magic
links and email confirmation state live there. This module only builds clients.

SECURITY NOTICE:
- SB_SECRET_KEY is server-only (NEVER exposed to clients); bypasses RLS
- SB_PUBLISHABLE_KEY is used for user-scoped auth calls (sign in, verify OTP)

KEY NAMING TRANSITION:
- New Supabase UI: SB_PUBLISHABLE_KEY / SB_SECRET_KEY
- Legacy: SUPABASE_ANON_KEY / SUPABASE_SERVICE_ROLE_KEY
"""

import logging
import os
from functools import lru_cache

from supabase import Client, create_client

logger = logging.getLogger(__name__)


def _get_key(primary: str, legacy: str) -> str:
    key = os.getenv(primary)
    if key:
        return key

    key = os.getenv(legacy)
    if key:
        logger.info(f"Using legacy {legacy} (consider migrating to {primary})")
        return key

    raise RuntimeError(
        f"Neither {primary} nor {legacy} environment variable is set. "
        f"Set {primary} (recommended) or {legacy} (legacy)."
    )


@lru_cache(maxsize=1)
def get_supabase_url() -> str:
    """Get Supabase project URL from environment.

    Raises:
        RuntimeError: If SUPABASE_URL not set
    """
    url = os.getenv("SUPABASE_URL")
    if not url:
        raise RuntimeError(
            "SUPABASE_URL environment variable not set. "
            "Required for authentication."
        )
    return url


@lru_cache(maxsize=1)
def get_supabase_api_key() -> str:
    """Get Supabase publishable key (SB_PUBLISHABLE_KEY, legacy SUPABASE_ANON_KEY)."""
    return _get_key("SB_PUBLISHABLE_KEY", "SUPABASE_ANON_KEY")


@lru_cache(maxsize=1)
def get_supabase_secret_key() -> str:
    """Get Supabase secret key (SB_SECRET_KEY, legacy SUPABASE_SERVICE_ROLE_KEY)."""
    return _get_key("SB_SECRET_KEY", "SUPABASE_SERVICE_ROLE_KEY")


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """Get Supabase client for user-scoped auth operations.

    Returns:
        Client: Supabase client instance

    Raises:
        RuntimeError: If environment variables not set
    """
    url = get_supabase_url()
    api_key = get_supabase_api_key()

    logger.info(
        "Initializing Supabase client",
        extra={"supabase_url": url, "key_type": "publishable"},
    )

    return create_client(url, api_key)


@lru_cache(maxsize=1)
def get_supabase_admin_client() -> Client:
    """Get Supabase admin client (user lookup/creation, link generation).

    Uses SECRET_KEY which bypasses RLS.

    Raises:
        RuntimeError: If environment variables not set
    """
    url = get_supabase_url()
    secret_key = get_supabase_secret_key()

    logger.info(
        "Initializing Supabase admin client",
        extra={"supabase_url": url, "key_type": "secret"},
    )

    return create_client(url, secret_key)
