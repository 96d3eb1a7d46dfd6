from __future__ import annotations
import hmac
import ipaddress
from typing import Iterable, Optional

from fastapi import Header, HTTPException, Request

from gmail_link.core.config import settings

def _ip_allowed(client_ip: str, allowed: Iterable[str]) -> bool:
    """
    True if client_ip matches any allowed address or CIDR.
    Empty allow-list disables the check.
    """
    entries = [e.strip() for e in allowed if e and e.strip()]
    if not entries:
        return True
    try:
        ip = ipaddress.ip_address(client_ip)
    except ValueError:
        return client_ip in entries

    for entry in entries:
        if entry.lower() == "localhost":
            entry = "127.0.0.1"
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            if client_ip == entry:
                return True
    return False

def _client_ip(request: Request) -> str:
    # behind a proxy the first hop is the caller
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""

def api_key_valid(presented: Optional[str]) -> bool:
    expected = settings.API_INTERNAL_KEY
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))

async def require_internal(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
):
    # same 401 for missing and wrong keys
    if not api_key_valid(x_api_key):
        raise HTTPException(status_code=401, detail="missing or invalid X-API-Key")

    if not _ip_allowed(_client_ip(request), settings.INTERNAL_ALLOWED_IPS):
        raise HTTPException(status_code=403, detail="ip_not_allowed")
