import logging
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertRule:
    threshold: int
    window_seconds: int = 3600


DEFAULT_RULES = {
    "ACCEPT_RACE_LOST": AlertRule(10),
    "OFFER_UPSERT_CONFLICT": AlertRule(10),
    "OFFER_RATE_LIMITED": AlertRule(20, window_seconds=600),
    "EXPIRY_SWEEP_FAILURE": AlertRule(3, window_seconds=86400),
    "NOTIFICATION_EMIT_FAILED": AlertRule(5),
}


class OperationalAlertTracker:
    """Counts marketplace anomalies per action and logs an ALERT line each time a
    rule's threshold (or a multiple of it) is reached inside its window.
    """

    def __init__(self, rules: dict[str, AlertRule]) -> None:
        self._rules = dict(rules)
        self._seen: dict[str, deque[float]] = {}
        self._lock = Lock()

    def record(self, action: str, context: Optional[dict] = None) -> bool:
        rule = self._rules.get(action)
        if rule is None:
            return False
        now = time.monotonic()
        with self._lock:
            seen = self._seen.setdefault(action, deque())
            while seen and seen[0] <= now - rule.window_seconds:
                seen.popleft()
            seen.append(now)
            count = len(seen)
        if count % rule.threshold:
            return False
        logger.warning(
            "ALERT action=%s count=%s window_seconds=%s context=%s",
            action,
            count,
            rule.window_seconds,
            context or {},
        )
        return True

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()


alert_tracker = OperationalAlertTracker(DEFAULT_RULES)
