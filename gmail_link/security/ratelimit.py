from __future__ import annotations
import threading
import time
from typing import Dict, Optional, Tuple

from fastapi import Header, HTTPException, Query

from gmail_link.core.config import settings


class FixedWindowLimiter:
    """In-process fixed-window counters keyed by arbitrary tuples."""

    def __init__(self) -> None:
        # key -> (window start, count, window length)
        self._counters: Dict[Tuple[str, ...], Tuple[int, int, int]] = {}
        self._last_prune = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._counters)

    def hit(self, key: Tuple[str, ...], max_requests: int, window_seconds: int, now: Optional[int] = None) -> None:
        now = int(time.time()) if now is None else now
        window = now - (now % window_seconds)
        with self._lock:
            if window != self._last_prune:
                self._prune(now)
                self._last_prune = window
            start, count, _ = self._counters.get(key, (window, 0, window_seconds))
            if start != window:
                start, count = window, 0
            count += 1
            self._counters[key] = (start, count, window_seconds)
        if count > max_requests:
            retry_after = start + window_seconds - now
            raise HTTPException(
                status_code=429,
                detail="rate_limit_exceeded",
                headers={"Retry-After": str(max(0, retry_after))},
            )

    def _prune(self, now: int) -> None:
        expired = [k for k, (start, _, length) in self._counters.items() if start + length <= now]
        for k in expired:
            del self._counters[k]

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._last_prune = 0


limiter = FixedWindowLimiter()

async def limit_by_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")):
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing or invalid X-API-Key")
    limiter.hit(("key", x_api_key), settings.RATE_LIMIT_MAX_PER_KEY, settings.RATE_LIMIT_WINDOW_SECONDS)

async def limit_by_principal(
    principal: str = Query(..., min_length=1),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
):
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing or invalid X-API-Key")
    limiter.hit(
        ("principal", x_api_key, principal),
        settings.RATE_LIMIT_MAX_PER_PRINCIPAL,
        settings.RATE_LIMIT_WINDOW_SECONDS,
    )
