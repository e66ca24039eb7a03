from __future__ import annotations

import hashlib
import time
import uuid
from datetime import datetime, timezone

from common.types import IsoTime


def now_iso() -> IsoTime:
    """UTC ISO-8601 timestamp with millisecond precision and 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso8601(ts: str) -> datetime:
    """Parse an ISO-8601 timestamp with optional 'Z'. Naive values are taken as UTC."""
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def day_key(ts: str) -> str:
    """YYYY-MM-DD (UTC) of an ISO-8601 timestamp."""
    return parse_iso8601(ts).astimezone(timezone.utc).strftime("%Y-%m-%d")


def new_id() -> str:
    """Default id generator for freshly minted markers/photos."""
    return str(uuid.uuid4())


def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


def clamp(v: float, lo: float, hi: float) -> float:
    return float(min(hi, max(lo, v)))


def timer_ms(func):
    """
    Decorator that returns (result, elapsed_ms) for benchmarking small functions.
    """
    def wrapper(*args, **kwargs):
        t0 = time.perf_counter()
        out = func(*args, **kwargs)
        dt_ms = (time.perf_counter() - t0) * 1e3
        return out, dt_ms
    return wrapper
