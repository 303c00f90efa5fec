from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from taskboard.errors import RateLimited


@dataclass
class _Bucket:
  reset_at: float
  count: int


class RateLimiter:
  """
  Tiny in-memory fixed-window rate limiter.

  Single process only; sessions already live in the database, counters do not.
  Keys come from clients, so expired buckets are swept at most once per
  `sweep_seconds`.
  """

  def __init__(self, *, clock: Callable[[], float] = time.time, sweep_seconds: float = 60.0) -> None:
    self._lock = Lock()
    self._buckets: dict[str, _Bucket] = {}
    self._clock = clock
    self._sweep_seconds = sweep_seconds
    self._next_sweep = clock() + sweep_seconds

  def _sweep(self, now: float) -> None:
    if now < self._next_sweep:
      return
    self._next_sweep = now + self._sweep_seconds
    for k in [k for k, b in self._buckets.items() if now >= b.reset_at]:
      del self._buckets[k]

  def hit(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    """
    Returns (allowed, retry_after_seconds).
    """
    now = self._clock()
    with self._lock:
      self._sweep(now)
      b = self._buckets.get(key)
      if b is None or now >= b.reset_at:
        self._buckets[key] = _Bucket(reset_at=now + window_seconds, count=1)
        return True, 0
      if b.count >= limit:
        retry = max(1, int(b.reset_at - now))
        return False, retry
      b.count += 1
      return True, 0

  def check(self, key: str, *, limit: int, window_seconds: int = 60) -> None:
    allowed, retry_after = self.hit(key, limit=limit, window_seconds=window_seconds)
    if not allowed:
      raise RateLimited(headers={"Retry-After": str(retry_after)}, retryAfterSeconds=retry_after)

  def reset_prefix(self, prefix: str) -> None:
    with self._lock:
      for k in list(self._buckets.keys()):
        if k.startswith(prefix):
          del self._buckets[k]

  def __len__(self) -> int:
    with self._lock:
      return len(self._buckets)


limiter = RateLimiter()
