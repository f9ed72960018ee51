"""
Staking-core event bus.

Every committed operation publishes one or more named events (see the
constants below). Delivery is synchronous, in the thread that committed the
operation, and strictly after the commit: a listener can read the core and
will see the new state. A listener that raises is logged and skipped.

A listener registered under ALL_EVENTS receives every event, with the event
name passed as `event_type`.
"""
from collections import deque
from typing import Deque, Dict, List, Callable, Any, Tuple
import logging
import threading

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

# Stake path
STAKED = "staked"
UNSTAKED = "unstaked"
PRINCIPAL_DELEGATED = "principal_delegated"

# Withdrawal requests
WITHDRAWAL_REQUESTED = "withdrawal_requested"
WITHDRAWAL_CLAIMABLE = "withdrawal_claimable"
WITHDRAWAL_CLAIMED = "withdrawal_claimed"
WITHDRAWAL_CANCELLED = "withdrawal_cancelled"
WITHDRAWAL_RECLAIMED = "withdrawal_reclaimed"

# Settlement
REWARDS_SETTLED = "rewards_settled"
SLASHING_APPLIED = "slashing_applied"
SLASHING_TOLERANCE_EXCEEDED = "slashing_tolerance_exceeded"
SLASHING_ACKNOWLEDGED = "slashing_acknowledged"

# Timed-out delegate calls
DELEGATE_CALL_IN_DOUBT = "delegate_call_in_doubt"
DELEGATE_CALL_RESOLVED = "delegate_call_resolved"

SETTINGS_UPDATED = "settings_updated"


class EventBus:
    def __init__(self, history_size: int = 256):
        self.listeners: Dict[str, List[Callable]] = {}
        self.history: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """
        Register `callback` for `event_type` (or ALL_EVENTS).

        Args:
            event_type: Event name, e.g. STAKED or WITHDRAWAL_REQUESTED
            callback: Called as callback(**data)
        """
        with self._lock:
            self.listeners.setdefault(event_type, []).append(callback)
        logger.debug(f"Subscribed to event: {event_type}")

    def unsubscribe(self, event_type: str, callback: Callable) -> None:
        with self._lock:
            callbacks = self.listeners.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)
                logger.debug(f"Unsubscribed from event: {event_type}")
            else:
                logger.warning(f"Callback not found for event: {event_type}")

    def emit(self, event_type: str, **data: Any) -> None:
        """Deliver an event to its listeners and to ALL_EVENTS listeners."""
        try:
            from ..observability.metrics import events_emitted_total
            events_emitted_total.labels(event=event_type).inc()
        except Exception as e:
            logger.debug(f"Failed to update event metric: {e}")

        with self._lock:
            self.history.append((event_type, dict(data)))
            direct = list(self.listeners.get(event_type, []))
            wildcard = list(self.listeners.get(ALL_EVENTS, []))

        if not direct and not wildcard:
            logger.debug(f"No listeners for event: {event_type}")
            return

        for callback in direct:
            self._deliver(event_type, callback, data)
        for callback in wildcard:
            self._deliver(event_type, callback, dict(data, event_type=event_type))

    @staticmethod
    def _deliver(event_type: str, callback: Callable, data: Dict[str, Any]):
        try:
            callback(**data)
        except Exception as e:
            logger.error(f"Error in event callback for {event_type}: {e}", exc_info=True)

    def recent(self, event_type: str = None) -> List[Tuple[str, Dict[str, Any]]]:
        """Recently emitted events, oldest first, optionally filtered by name."""
        with self._lock:
            return [e for e in self.history if event_type is None or e[0] == event_type]

    def clear(self, event_type: str = None) -> None:
        """Drop listeners for one event type, or all listeners."""
        with self._lock:
            if event_type:
                self.listeners.pop(event_type, None)
            else:
                self.listeners.clear()


# Process-wide default bus
event_bus = EventBus()
