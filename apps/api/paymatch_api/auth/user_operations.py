"""User lookups against Supabase Auth (admin API)."""

import logging
from typing import Any, Optional

from paymatch_api.supabase_client import get_supabase_admin_client
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)

USERS_PAGE_SIZE = 1000
MAX_USER_PAGES = 50


def find_user_by_email(email: str, admin_client: Any = None) -> Optional[Any]:
    """Find an auth user by email (case-insensitive).

    Pages through ``auth.admin.list_users`` until a match or an empty page.

    Returns:
        The Supabase user object, or None

    Raises:
        Exception: Propagates Supabase admin errors
    """
    client = admin_client or get_supabase_admin_client()
    target = email.strip().lower()

    for page in range(1, MAX_USER_PAGES + 1):
        users = client.auth.admin.list_users(page=page, per_page=USERS_PAGE_SIZE)
        if not users:
            break
        for user in users:
            if (getattr(user, "email", None) or "").lower() == target:
                return user
        if len(users) < USERS_PAGE_SIZE:
            break
    return None


def user_exists_by_email(email: str, admin_client: Any = None) -> bool:
    """True if an auth user with this email exists.

    A failed lookup reports False so that registration is not blocked by a
    provider hiccup; the duplicate is then rejected by Supabase itself.
    """
    try:
        return find_user_by_email(email, admin_client) is not None
    except Exception as e:
        logger.error(
            "auth.user_lookup.failed",
            extra={"email": mask_email(email), "error_type": type(e).__name__, "error": str(e)},
        )
        return False


def get_user_by_id(user_id: str, admin_client: Any = None) -> Optional[Any]:
    """Fetch an auth user by id; None if unknown or on lookup failure."""
    client = admin_client or get_supabase_admin_client()
    try:
        response = client.auth.admin.get_user_by_id(user_id)
    except Exception as e:
        logger.warning(
            "auth.user_lookup_by_id.failed",
            extra={"user_id": user_id, "error_type": type(e).__name__},
        )
        return None
    return getattr(response, "user", None)
