"""
Audit trail for ingestion events.
In-memory storage, trimmed to the most recent entries.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class AuditLog:
    """Records what happened to every entry the pipeline touched."""

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self.entries: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def log_event(self, event: str, field: str | None = None, **details: Any):
        """Append an audit record and mirror it to the application log."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "field": field,
            **{key: str(value) if value is not None else None for key, value in details.items()},
        }
        with self._lock:
            self.entries.append(log_entry)
            if len(self.entries) > self.max_entries:
                del self.entries[: len(self.entries) - self.max_entries]
        logger.info("Audit event: %s", log_entry)

    def get_logs(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get recent audit records."""
        with self._lock:
            return self.entries[-limit:]

    def events(self) -> List[str]:
        with self._lock:
            return [entry["event"] for entry in self.entries]

    def clear(self):
        with self._lock:
            self.entries.clear()


# Global audit log instance
audit_log = AuditLog()
