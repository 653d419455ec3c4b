"""
Change notifier: fan-out of committed mutations to subscribed view sessions.

Services publish one ChangeEvent per committed mutation. Subscribers join a
Scope (a set of teams, or all teams) and only receive matching events.
Delivery is best-effort and at-most-once per subscription: a subscriber whose
buffer is full is dropped and is expected to re-fetch its view on reconnect.
"""

import enum
import itertools
import json
import logging
import queue
import threading
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Optional
from uuid import uuid4

from ...config import SUBSCRIBER_QUEUE_SIZE

logger = logging.getLogger(__name__)


class ChangeType(str, enum.Enum):
    ASSIGNMENT_CREATED = "assignment_created"
    ASSIGNMENT_MOVED = "assignment_moved"
    ASSIGNMENT_UPDATED = "assignment_updated"
    ASSIGNMENT_DELETED = "assignment_deleted"
    LEAVE_SUBMITTED = "leave_submitted"
    LEAVE_APPROVED = "leave_approved"
    LEAVE_REJECTED = "leave_rejected"
    LEAVE_DELETED = "leave_deleted"


_sequence = itertools.count(1)
_sequence_lock = threading.Lock()


def next_sequence() -> int:
    with _sequence_lock:
        return next(_sequence)


@dataclass
class ChangeEvent:
    """A committed mutation, tagged with the employee and team it affects"""

    event_type: str
    employee_id: int
    team_id: Optional[int]
    date: Optional[str] = None
    slot: Optional[str] = None
    data: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    sequence: int = field(default_factory=next_sequence)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def create(
        cls,
        event_type: ChangeType,
        employee_id: int,
        team_id: Optional[int],
        day: Optional[date] = None,
        slot: Optional[str] = None,
        **data,
    ) -> "ChangeEvent":
        return cls(
            event_type=ChangeType(event_type).value,
            employee_id=employee_id,
            team_id=team_id,
            date=day.isoformat() if day else None,
            slot=slot,
            data=data,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "ChangeEvent":
        return cls(**json.loads(raw))

    def to_sse(self) -> str:
        """Format event as an SSE message"""
        lines = [
            f"id: {self.sequence}",
            f"event: {self.event_type}",
            f"data: {self.to_json()}",
        ]
        return "\n".join(lines) + "\n\n"


@dataclass(frozen=True)
class Scope:
    """Visibility of a subscriber or a view: every team, or a fixed set of teams"""

    all_teams: bool = False
    team_ids: frozenset = frozenset()
    employee_id: Optional[int] = None

    @classmethod
    def everything(cls) -> "Scope":
        return cls(all_teams=True)

    @classmethod
    def teams(cls, *team_ids: int) -> "Scope":
        return cls(team_ids=frozenset(team_ids))

    @classmethod
    def own(cls, employee_id: int, team_id: Optional[int]) -> "Scope":
        """A team member without a team only sees their own row"""
        if team_id is None:
            return cls(employee_id=employee_id)
        return cls(team_ids=frozenset([team_id]))

    def matches(self, event: ChangeEvent) -> bool:
        if self.all_teams:
            return True
        # A move across teams is visible from both sides
        teams = {event.team_id, event.data.get("fromTeamId")} - {None}
        if teams & self.team_ids:
            return True
        if self.employee_id is None:
            return False
        return self.employee_id in {event.employee_id, event.data.get("fromEmployeeId")}

    def team_filter(self) -> Optional[list[int]]:
        """Team ids to filter queries by, or None for no filter"""
        return None if self.all_teams else sorted(self.team_ids)


class Subscription:
    """One connected view session's buffered stream of matching events"""

    def __init__(self, scope: Scope, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.id = str(uuid4())
        self.scope = scope
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, event: ChangeEvent) -> bool:
        """Buffer an event without blocking; False when the buffer is full"""
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None when nothing arrived within the timeout"""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ChangeEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class ChangeNotifier:
    """
    Base fan-out. Subclasses decide how a published event reaches deliver();
    deliver() always hands it to matching local subscriptions.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    def subscribe(self, scope: Scope) -> Subscription:
        subscription = Subscription(scope, maxsize=self.queue_size)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.debug(f"📡 Subscriber {subscription.id} joined ({len(self._subscriptions)} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    def deliver(self, event: ChangeEvent) -> int:
        """Offer an event to every matching subscription; returns how many took it"""
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.scope.matches(event)]

        delivered = 0
        for subscription in targets:
            if subscription.offer(event):
                delivered += 1
            else:
                logger.warning(f"⚠️ Subscriber {subscription.id} buffer full, dropping it")
                self.unsubscribe(subscription)
        return delivered


class InProcessChangeNotifier(ChangeNotifier):
    """Synchronous fan-out to subscriptions in this process"""

    def publish(self, event: ChangeEvent) -> None:
        self.deliver(event)


# Process-wide notifier, built on first use
_notifier: Optional[ChangeNotifier] = None
_notifier_lock = threading.Lock()


def get_change_notifier() -> ChangeNotifier:
    """Get or create the configured change notifier"""
    global _notifier
    if _notifier is None:
        with _notifier_lock:
            if _notifier is None:
                from ...config import CHANGE_NOTIFIER_BACKEND

                if CHANGE_NOTIFIER_BACKEND == "redis":
                    from .redis_notifier import RedisChangeNotifier

                    _notifier = RedisChangeNotifier()
                else:
                    _notifier = InProcessChangeNotifier()
                logger.info(f"✅ Change notifier ready ({CHANGE_NOTIFIER_BACKEND})")
    return _notifier
