from typing import Optional, Tuple
from fastapi import Request

GEO_HEADER = "x-client-geo"


def client_ip(request: Request) -> Optional[str]:
    # first hop of X-Forwarded-For is the real client behind the proxy
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def client_meta(request: Request) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """IP, user agent and best-effort geolocation as reported by the edge proxy."""
    return client_ip(request), request.headers.get("user-agent"), request.headers.get(GEO_HEADER)
