from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_seconds: int
    remaining: int


class ClientRateLimiter:
    """Per-client sliding window; state lives in process memory only."""

    def __init__(self, *, window_seconds: int, max_requests: int) -> None:
        self.window_seconds = max(1, int(window_seconds))
        self.max_requests = max(1, int(max_requests))
        self._hits: Dict[str, Deque[float]] = {}

    @property
    def tracked_clients(self) -> int:
        return len(self._hits)

    def hit(self, client_key: str, *, now_ts: float | None = None) -> RateDecision:
        key = (client_key or "").strip() or "unknown"
        now = float(now_ts if now_ts is not None else time.time())
        window_start = now - self.window_seconds

        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= window_start:
            hits.popleft()

        if len(hits) >= self.max_requests:
            retry_after = max(1, int(math.ceil(hits[0] + self.window_seconds - now)))
            return RateDecision(allowed=False, retry_after_seconds=retry_after, remaining=0)

        hits.append(now)
        return RateDecision(
            allowed=True,
            retry_after_seconds=0,
            remaining=self.max_requests - len(hits),
        )

    def forget_idle(self, *, now_ts: float | None = None) -> int:
        """Drop clients with no hits inside the window; returns how many were dropped."""
        now = float(now_ts if now_ts is not None else time.time())
        window_start = now - self.window_seconds
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for key in idle:
            del self._hits[key]
        return len(idle)
