"""Injected metrics sinks for orchestration events.

Each service receives its sink through the constructor. Counters live on
the sink instance, so two orchestrators never share hidden mutable state.
Sinks never raise into the caller.
"""

from collections import defaultdict
from typing import Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


def _series_key(name: str, tags: dict[str, str]) -> str:
    if not tags:
        return name
    rendered = ",".join(f"{k}={tags[k]}" for k in sorted(tags))
    return f"{name}[{rendered}]"


@runtime_checkable
class MetricsSink(Protocol):
    """Destination for counters and observations."""

    def increment(self, name: str, value: int = 1, **tags: str) -> None: ...

    def observe(self, name: str, value: float, **tags: str) -> None: ...


class NullMetrics:
    """Discards everything."""

    def increment(self, name: str, value: int = 1, **tags: str) -> None:
        return None

    def observe(self, name: str, value: float, **tags: str) -> None:
        return None


class InMemoryMetrics:
    """Process-scoped counters and observations, owned by whoever creates it."""

    def __init__(self) -> None:
        self.counters: dict[str, int] = defaultdict(int)
        self.observations: dict[str, list[float]] = defaultdict(list)

    def increment(self, name: str, value: int = 1, **tags: str) -> None:
        self.counters[_series_key(name, tags)] += value

    def observe(self, name: str, value: float, **tags: str) -> None:
        self.observations[_series_key(name, tags)].append(value)

    def count(self, name: str, **tags: str) -> int:
        return self.counters.get(_series_key(name, tags), 0)

    def snapshot(self) -> dict[str, dict]:
        """Copy of the current state, safe to hand to a reporting layer."""
        return {
            "counters": dict(self.counters),
            "observations": {k: list(v) for k, v in self.observations.items()},
        }


class LoggingMetrics:
    """Emits every metric as a structlog event."""

    def __init__(self, event_name: str = "metric") -> None:
        self.event_name = event_name

    def increment(self, name: str, value: int = 1, **tags: str) -> None:
        logger.info(self.event_name, metric=name, kind="counter", value=value, **tags)

    def observe(self, name: str, value: float, **tags: str) -> None:
        logger.info(self.event_name, metric=name, kind="observation", value=value, **tags)
