"""
Visible follower/subscriber counters with goal progress.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from livecount.schemas.events import DomainEvent, EventKind, SnapshotTotals


class ChannelCounters:
    """Baseline totals plus the increments applied since the baseline."""

    def __init__(self, follower_goal: int = 0, subscriber_goal: int = 0):
        self.goals: Dict[EventKind, int] = {
            EventKind.FOLLOWER: follower_goal,
            EventKind.SUBSCRIBER: subscriber_goal,
        }
        self._baseline: Dict[EventKind, int] = {kind: 0 for kind in EventKind}
        self._values: Dict[EventKind, int] = {kind: 0 for kind in EventKind}

    @property
    def followers(self) -> int:
        return self._values[EventKind.FOLLOWER]

    @property
    def subscribers(self) -> int:
        return self._values[EventKind.SUBSCRIBER]

    def set_baseline(self, totals: SnapshotTotals) -> None:
        """Reset counters to fresh totals; unknown (None) totals keep the current value."""
        for kind, total in (
            (EventKind.FOLLOWER, totals.followers),
            (EventKind.SUBSCRIBER, totals.subscribers),
        ):
            if total is None:
                continue
            self._baseline[kind] = total
            self._values[kind] = total

    def apply(self, event: DomainEvent) -> int:
        self._values[event.kind] += 1
        return self._values[event.kind]

    def gained(self, kind: EventKind) -> int:
        return self._values[kind] - self._baseline[kind]

    def progress(self, kind: EventKind) -> float:
        """Percentage of the goal reached, 0 when no goal is set."""
        goal = self.goals[kind]
        if goal <= 0:
            return 0.0
        return self._values[kind] / goal * 100

    def snapshot(self) -> Dict[str, Any]:
        def entry(kind: EventKind) -> Dict[str, Optional[float]]:
            return {
                "value": self._values[kind],
                "baseline": self._baseline[kind],
                "gained": self.gained(kind),
                "goal": self.goals[kind],
                "progress": round(self.progress(kind), 2),
            }

        return {
            "followers": entry(EventKind.FOLLOWER),
            "subscribers": entry(EventKind.SUBSCRIBER),
        }
