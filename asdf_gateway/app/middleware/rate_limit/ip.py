"""Client identification helpers."""

import hashlib
from typing import Optional

from starlette.requests import Request


def normalize_ip(ip: Optional[str]) -> str:
    """Strip the IPv4-mapped IPv6 prefix."""
    if not ip:
        return "unknown"
    ip = ip.strip()
    if ip.startswith("::ffff:"):
        return ip[7:]
    return ip


def extract_ip(request: Request) -> str:
    """Best-effort client IP from trusted proxy headers.

    Order: CF-Connecting-IP, first X-Forwarded-For hop, X-Real-IP, then the
    socket peer.
    """
    cf_connecting_ip = request.headers.get("CF-Connecting-IP")
    if cf_connecting_ip:
        return normalize_ip(cf_connecting_ip)

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return normalize_ip(forwarded.split(",")[0])

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return normalize_ip(real_ip)

    return normalize_ip(request.client.host if request.client else None)


def hash_identifier(identifier: str) -> str:
    """Short SHA-256 digest so raw IPs and user ids never reach logs."""
    return hashlib.sha256(identifier.encode()).hexdigest()[:16]
