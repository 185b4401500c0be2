"""Client IP and user agent extraction from proxy headers."""

from typing import Mapping, Optional

from fastapi import Request
from pydantic import BaseModel

UNKNOWN_IP = "0.0.0.0"


class ClientInfo(BaseModel):
    """Caller context attached to audit entries and rate limits."""

    ip_address: str = UNKNOWN_IP
    user_agent: Optional[str] = None


def extract_client_ip(headers: Mapping[str, str]) -> str:
    """Extract the originating client IP.

    Header priority: x-vercel-forwarded-for (first hop), cf-connecting-ip,
    x-forwarded-for (first hop), x-real-ip, x-connection-remote-addr.
    Falls back to 0.0.0.0.
    """
    for header, first_hop in (
        ("x-vercel-forwarded-for", True),
        ("cf-connecting-ip", False),
        ("x-forwarded-for", True),
        ("x-real-ip", False),
        ("x-connection-remote-addr", False),
    ):
        value = headers.get(header)
        if not value:
            continue
        if first_hop:
            value = value.split(",")[0]
        value = value.strip()
        if value:
            return value
    return UNKNOWN_IP


def get_client_info(request: Request) -> ClientInfo:
    """FastAPI dependency: caller IP and user agent."""
    ip = extract_client_ip(request.headers)
    if ip == UNKNOWN_IP and request.client and request.client.host:
        ip = request.client.host
    return ClientInfo(ip_address=ip, user_agent=request.headers.get("user-agent"))
