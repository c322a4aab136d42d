"""
Shared helpers: time, canonical JSON, hashing, telemetry, retries.
"""

from __future__ import annotations

import datetime
import hashlib
import json
import logging
import random
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, Optional, TypeVar

from mergewarden.errors import ConflictError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# =============================================================================
# CONSTANTS
# =============================================================================

SCHEMA_VERSION = "mw-gov-v1"
ZERO_HASH = "0" * 64

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.05
DEFAULT_RETRY_MAX_DELAY = 2.0

# =============================================================================
# TIME UTILITIES
# =============================================================================

def now_utc() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

def iso_z(dt: datetime.datetime) -> str:
    return dt.astimezone(datetime.timezone.utc).isoformat().replace("+00:00", "Z")

def now_z() -> str:
    return iso_z(now_utc())

def parse_z(s: str) -> datetime.datetime:
    dt = datetime.datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt

def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def sha256_text(s: str) -> str:
    return sha256_bytes(s.encode("utf-8"))

def json_canon(obj: Any) -> str:
    """Sorted keys, no insignificant whitespace. The only serialization used for hashing."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)

# =============================================================================
# TIME AUTHORITY
# =============================================================================

class TimeAuthority:
    def now(self) -> datetime.datetime:
        return now_utc()

class FixedTimeAuthority(TimeAuthority):
    """Settable clock for replay tooling and tests."""

    def __init__(self, start: datetime.datetime):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime.datetime:
        with self._lock:
            return self._now

    def set(self, dt: datetime.datetime):
        with self._lock:
            self._now = dt

    def advance(self, **kwargs):
        with self._lock:
            self._now = self._now + datetime.timedelta(**kwargs)

# =============================================================================
# TELEMETRY (Prometheus-ish)
# =============================================================================

class Telemetry:
    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}

    def inc(self, name: str, labels: Dict[str, str] = None, value: int = 1):
        key = self._key(name, labels)
        with self._lock:
            self._counters[key] += value

    def set_gauge(self, name: str, value: float, labels: Dict[str, str] = None):
        key = self._key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def counter(self, name: str, labels: Dict[str, str] = None) -> int:
        with self._lock:
            return self._counters.get(self._key(name, labels), 0)

    def _key(self, name: str, labels: Dict[str, str] = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def export_prometheus(self) -> str:
        lines = []
        with self._lock:
            for k, v in sorted(self._counters.items()):
                lines.append(f"# TYPE {k.split('{')[0]} counter")
                lines.append(f"{k} {v}")
            for k, v in sorted(self._gauges.items()):
                lines.append(f"# TYPE {k.split('{')[0]} gauge")
                lines.append(f"{k} {v}")
        return "\n".join(lines)

    def export_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {"counters": dict(self._counters), "gauges": dict(self._gauges)}

# =============================================================================
# RETRY
# =============================================================================

def retry(
    fn: Callable[[], T],
    attempts: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    max_delay: float = DEFAULT_RETRY_MAX_DELAY,
    telemetry: Optional[Telemetry] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` retrying ConflictError/TransientError with exponential backoff and jitter."""
    attempt = 1
    while True:
        try:
            return fn()
        except (ConflictError, TransientError) as exc:
            if attempt >= attempts or not getattr(exc, "retryable", True):
                logger.error("giving up after %d attempts: %s", attempt, exc)
                raise
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            delay += random.uniform(0, delay)
            logger.warning("attempt %d/%d failed (%s); retrying in %.3fs", attempt, attempts, exc.code, delay)
            if telemetry:
                telemetry.inc("mw_retries_total", {"code": exc.code})
            sleep(delay)
            attempt += 1
