"""Side channel for errors that are swallowed to keep access checks fail-closed."""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorReport(BaseModel):
    source: str
    message: str
    error_type: Optional[str] = None
    user_id: Optional[str] = None
    reported_at: datetime


ErrorListener = Callable[[ErrorReport], None]


class ErrorReporter:
    def __init__(self, buffer_size: int = 100):
        self._lock = threading.Lock()
        self._reports: Deque[ErrorReport] = deque(maxlen=buffer_size)
        self._listeners: List[ErrorListener] = []

    def subscribe(self, listener: ErrorListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def report(
        self,
        source: str,
        message: str,
        exc: Optional[BaseException] = None,
        user_id: Optional[str] = None,
    ) -> ErrorReport:
        record = ErrorReport(
            source=source,
            message=message,
            error_type=type(exc).__name__ if exc is not None else None,
            user_id=user_id,
            reported_at=datetime.now(timezone.utc),
        )
        logger.error(f"[{source}] {message}" + (f": {exc}" if exc is not None else ""))
        with self._lock:
            self._reports.append(record)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(record)
            except Exception as e:
                logger.warning(f"Error listener {listener!r} failed: {e}")
        return record

    def recent(self, limit: Optional[int] = None) -> List[ErrorReport]:
        """Most recent first."""
        with self._lock:
            reports = list(reversed(self._reports))
        return reports if limit is None else reports[:limit]

    def clear(self) -> None:
        with self._lock:
            self._reports.clear()
