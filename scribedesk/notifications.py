"""Notification sinks.

The core calls ``notify``/``broadcast`` only after a state change has committed.
Delivery is best-effort: ``BestEffortSink`` logs a failed dispatch instead of
undoing the committed transition.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional

import httpx

from .errors import UpstreamUnavailable
from .store import utcnow


logger = logging.getLogger("scribedesk.notifications")


class NotificationSink(ABC):
    @abstractmethod
    def notify(self, participant_id: int, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release any transport the sink holds."""


@dataclass
class Event:
    seq: int
    event: str
    payload: Dict[str, Any]
    participant_id: Optional[int] = None
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "event": self.event,
            "participant_id": self.participant_id,
            "payload": self.payload,
            "created_at": self.created_at,
        }


class EventHub(NotificationSink):
    """In-process fan-out with a bounded, sequence-numbered history.

    Readers poll ``events_since`` with the last sequence number they saw; the
    API streams these as server-sent events.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self._lock = threading.Lock()
        self._events: Deque[Event] = deque(maxlen=max_events)
        self._seq = 0

    def _append(self, event: str, payload: Dict[str, Any], participant_id: Optional[int]) -> None:
        with self._lock:
            self._seq += 1
            self._events.append(Event(self._seq, event, dict(payload), participant_id))

    def notify(self, participant_id: int, event: str, payload: Dict[str, Any]) -> None:
        self._append(event, payload, participant_id)

    def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        self._append(event, payload, None)

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq

    def events_since(self, seq: int = 0, participant_id: Optional[int] = None) -> List[Event]:
        """Events after ``seq``; with a participant, only theirs plus broadcasts."""
        with self._lock:
            snapshot = list(self._events)
        return [
            e
            for e in snapshot
            if e.seq > seq and (participant_id is None or e.participant_id in (None, participant_id))
        ]

    def named(self, event: str) -> List[Event]:
        return [e for e in self.events_since(0) if e.event == event]


class WebhookSink(NotificationSink):
    """POSTs each event as JSON to an external dispatcher."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def _post(self, body: Dict[str, Any]) -> None:
        try:
            resp = self._client.post(self.url, json=body)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"notification webhook failed: {e}") from e

    def notify(self, participant_id: int, event: str, payload: Dict[str, Any]) -> None:
        self._post({"participant_id": participant_id, "event": event, "payload": payload})

    def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        self._post({"participant_id": None, "event": event, "payload": payload})

    def close(self) -> None:
        self._client.close()


class FanoutSink(NotificationSink):
    def __init__(self, sinks: Iterable[NotificationSink]) -> None:
        self.sinks = list(sinks)

    def _each(self, call) -> None:
        failures: List[str] = []
        for sink in self.sinks:
            try:
                call(sink)
            except UpstreamUnavailable as e:
                failures.append(e.message)
        if failures:
            raise UpstreamUnavailable("; ".join(failures))

    def notify(self, participant_id: int, event: str, payload: Dict[str, Any]) -> None:
        self._each(lambda s: s.notify(participant_id, event, payload))

    def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        self._each(lambda s: s.broadcast(event, payload))

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()


class BestEffortSink(NotificationSink):
    """Wraps a sink so a failed dispatch is logged, never raised into a committed operation."""

    def __init__(self, inner: NotificationSink) -> None:
        self.inner = inner

    def notify(self, participant_id: int, event: str, payload: Dict[str, Any]) -> None:
        try:
            self.inner.notify(participant_id, event, payload)
        except UpstreamUnavailable as e:
            logger.warning(f"Dropped '{event}' for participant {participant_id}: {e.message}")

    def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            self.inner.broadcast(event, payload)
        except UpstreamUnavailable as e:
            logger.warning(f"Dropped broadcast '{event}': {e.message}")

    def close(self) -> None:
        self.inner.close()
