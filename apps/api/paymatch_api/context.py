"""Request context management for observability.

Context variables carry request/user/organization identifiers across async
boundaries so that every log line of a request can be correlated.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Authenticated user (Supabase auth.users id)
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

# Active organization of the authenticated user
org_id_var: ContextVar[str] = ContextVar("org_id", default="")
