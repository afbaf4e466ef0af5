"""
Event bridge: records board changes and fans them out after commit.

Every task operation writes an audit row inside its own transaction. Once
the transaction commits, the same events are delivered to in-process
subscribers and, if configured, POSTed to a webhook. Delivery never raises
back into the operation that produced the event.
"""
import json
import logging
import threading
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from .schema import AuthorType, Thread
from .store import StoreTx

logger = logging.getLogger(__name__)

# Event types
TASK_CREATED = "task_created"
TASK_MOVED = "task_moved"
TASK_UPDATED = "task_updated"
TASK_DELETED = "task_deleted"
TASK_AUTO_ASSIGNED = "task_auto_assigned"
TASK_ASSIGNMENT_SKIPPED = "task_assignment_skipped"
CRON_TRIGGERED = "cron_triggered"
COLUMN_COMPACTED = "column_compacted"

ALL_EVENTS = "*"


class BoardEventBridge:
    """Routes committed board events to subscribers and the webhook."""

    def __init__(self, notify_url: Optional[str] = None, notify_timeout: float = 2.0):
        self.notify_url = notify_url
        self.notify_timeout = notify_timeout
        self.subscribers: Dict[str, list] = {}  # event_type -> list of callbacks
        # Webhook payloads that failed to send, oldest first
        self._retry_queue = deque(maxlen=1000)
        self._retry_lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Callable[[Dict[str, Any]], None]) -> None:
        """Register a callback for an event type, or "*" for every event."""
        self.subscribers.setdefault(event_type, []).append(callback)

    def record(self, tx: StoreTx, event_type: str, entity_id: str, summary: str,
               payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Write an audit row inside the caller's transaction."""
        return tx.append_event(event_type, entity_id, summary, payload)

    def post_system_note(self, tx: StoreTx, task_id: str, content: str) -> Thread:
        """Append a SYSTEM-authored thread to a task's conversation."""
        return tx.create_thread(task_id, AuthorType.SYSTEM, content)

    def publish(self, events: Iterable[Dict[str, Any]]) -> None:
        """Deliver committed events. Call only after the transaction commits."""
        for event in events:
            self._emit(event)
            if self.notify_url:
                self._post(event)

    def _emit(self, event: Dict[str, Any]) -> None:
        callbacks = self.subscribers.get(event["event_type"], []) + self.subscribers.get(ALL_EVENTS, [])
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Error in {event['event_type']} subscriber")

    def _post(self, event: Dict[str, Any]) -> bool:
        """POST one event; queue it for retry on failure."""
        payload = json.dumps(event)
        if self._send(payload):
            self._flush_retry_queue()
            return True
        with self._retry_lock:
            self._retry_queue.append(payload)
        return False

    def _send(self, payload: str) -> bool:
        try:
            r = requests.post(
                self.notify_url,
                data=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.notify_timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Webhook delivery failed: {e}")
            return False
        if not r.ok:
            logger.warning(f"Webhook returned HTTP {r.status_code}")
        return r.ok

    def _flush_retry_queue(self) -> None:
        """Resend queued payloads in order, stopping at the first failure."""
        while True:
            with self._retry_lock:
                if not self._retry_queue:
                    return
                payload = self._retry_queue[0]
            if not self._send(payload):
                return
            with self._retry_lock:
                if self._retry_queue and self._retry_queue[0] is payload:
                    self._retry_queue.popleft()

    @property
    def pending_retries(self) -> List[str]:
        with self._retry_lock:
            return list(self._retry_queue)
