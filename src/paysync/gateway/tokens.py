import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class CachedToken:
    token: str
    expires_at: float


class TokenCache:
    """
    Process-wide holder for the gateway bearer token.

    The safety margin is taken off the declared lifetime so a token is never
    used when it could expire mid-request. There is no lock: two coroutines
    refreshing at once only cost one redundant auth call.
    """

    def __init__(self, safety_margin_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock
        self._cached: Optional[CachedToken] = None

    def get(self) -> Optional[str]:
        if self._cached is None:
            return None
        if self._clock() >= self._cached.expires_at:
            return None
        return self._cached.token

    def store(self, token: str, lifetime_seconds: float) -> CachedToken:
        usable = max(lifetime_seconds - self.safety_margin_seconds, 0)
        self._cached = CachedToken(token=token, expires_at=self._clock() + usable)
        return self._cached

    def invalidate(self) -> None:
        self._cached = None
