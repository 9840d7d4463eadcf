"""In-process run metrics with label cardinality control.

Exporters are not part of this package; read the recorder's snapshot or
wrap it to forward values elsewhere.
"""

import logging
import re
from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_LABELS = (
    "trace_id",
    "span_id",
    "run_id",
    "request_id",
    "user_id",
    "resource_id",
    "session_id",
    "thread_id",
)

_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

LabelKey = tuple[tuple[str, str], ...]


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID.match(value))


class CardinalityFilter:
    """Drops metric labels that would explode series cardinality.

    A label is dropped when its key is in the blocked set (case-insensitive),
    or, with ``block_uuids``, when its key or value looks like a UUID.

    Example:
        ```python
        CardinalityFilter().filter_labels({"agent": "a1", "thread_id": "t1"})
        # {"agent": "a1"}
        ```
    """

    def __init__(
        self,
        blocked_labels: Iterable[str] = DEFAULT_BLOCKED_LABELS,
        block_uuids: bool = True,
    ) -> None:
        self._blocked = {label.lower() for label in blocked_labels}
        self._block_uuids = block_uuids

    def allows(self, key: str, value: Any) -> bool:
        if key.lower() in self._blocked:
            return False
        if self._block_uuids and (is_uuid(key) or is_uuid(value)):
            return False
        return True

    def filter_labels(self, labels: Mapping[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in labels.items() if self.allows(key, value)}


class MetricsRecorder:
    """Counters and histograms keyed by metric name and filtered labels."""

    def __init__(self, cardinality_filter: CardinalityFilter | None = None) -> None:
        self._filter = cardinality_filter or CardinalityFilter()
        self._counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[LabelKey, list[float]]] = defaultdict(lambda: defaultdict(list))

    def _key(self, labels: Mapping[str, Any] | None) -> LabelKey:
        filtered = self._filter.filter_labels(labels or {})
        return tuple(sorted((k, str(v)) for k, v in filtered.items()))

    def increment(self, name: str, value: float = 1.0, labels: Mapping[str, Any] | None = None) -> None:
        self._counters[name][self._key(labels)] += value

    def observe(self, name: str, value: float, labels: Mapping[str, Any] | None = None) -> None:
        self._histograms[name][self._key(labels)].append(value)

    def counter(self, name: str, labels: Mapping[str, Any] | None = None) -> float:
        return self._counters.get(name, {}).get(self._key(labels), 0.0)

    def observations(self, name: str, labels: Mapping[str, Any] | None = None) -> list[float]:
        return list(self._histograms.get(name, {}).get(self._key(labels), []))

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": {
                name: [{"labels": dict(key), "value": value} for key, value in series.items()]
                for name, series in self._counters.items()
            },
            "histograms": {
                name: [{"labels": dict(key), "values": list(values)} for key, values in series.items()]
                for name, series in self._histograms.items()
            },
        }
