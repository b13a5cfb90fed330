"""
ingestion/rpc/monitor.py

Health Monitor: passive per-provider counters fed by the fallback router.

The router never consults the score to choose a provider (its sticky index
is the only selection state); the numbers are exported for operators via
the cache stats endpoint.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import RATE_LIMITED, TIMEOUT

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HealthScore:
    """Health score for one RPC provider."""
    url: str
    score: float = 100.0
    latency_ms: float = 0.0
    errors: float = 0
    successes: int = 0
    rate_limited: int = 0
    timeouts: int = 0
    last_success: Optional[datetime] = None
    last_error: Optional[datetime] = None
    last_error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'score': round(self.score, 1),
            'latency_ms': round(self.latency_ms, 1),
            'errors': self.errors,
            'successes': self.successes,
            'rate_limited': self.rate_limited,
            'timeouts': self.timeouts,
            'last_success': self.last_success.isoformat() if self.last_success else None,
            'last_error': self.last_error.isoformat() if self.last_error else None,
            'last_error_message': self.last_error_message,
        }


class HealthMonitor:
    """
    Provider health bookkeeping.

    Score = 100 - errors * ERROR_PENALTY - latency * LATENCY_PENALTY_FACTOR,
    errors decay by half a point on every success.
    """

    ERROR_PENALTY = 20
    LATENCY_PENALTY_FACTOR = 0.01
    LATENCY_EMA_ALPHA = 0.3

    def __init__(self, urls: Optional[List[str]] = None):
        self._scores: Dict[str, HealthScore] = {}
        self._lock = threading.RLock()
        for url in urls or []:
            self.add_endpoint(url)

    def add_endpoint(self, url: str) -> HealthScore:
        with self._lock:
            if url not in self._scores:
                self._scores[url] = HealthScore(url=url)
            return self._scores[url]

    def _rescore(self, score: HealthScore) -> None:
        base_score = 100.0 - (score.errors * self.ERROR_PENALTY)
        score.score = max(0.0, base_score - (score.latency_ms * self.LATENCY_PENALTY_FACTOR))

    def report_success(self, url: str, latency_ms: float = 0.0) -> None:
        with self._lock:
            score = self.add_endpoint(url)
            score.successes += 1
            score.last_success = _now()
            if score.latency_ms:
                a = self.LATENCY_EMA_ALPHA
                score.latency_ms = a * latency_ms + (1 - a) * score.latency_ms
            else:
                score.latency_ms = latency_ms
            # Gradual recovery
            if score.errors > 0:
                score.errors = max(0, score.errors - 0.5)
            self._rescore(score)

    def report_failure(self, url: str, kind: str, message: str = "") -> None:
        with self._lock:
            score = self.add_endpoint(url)
            score.errors += 1
            if kind == RATE_LIMITED:
                score.rate_limited += 1
            elif kind == TIMEOUT:
                score.timeouts += 1
            score.last_error = _now()
            score.last_error_message = message[:200] if message else None
            self._rescore(score)
            logger.debug(f"[health_monitor] {kind} reported for {url}, score: {score.score:.1f}")

    def get_score(self, url: str) -> Optional[HealthScore]:
        with self._lock:
            return self._scores.get(url)

    def get_all_scores(self) -> Dict[str, HealthScore]:
        with self._lock:
            return dict(self._scores)
