from __future__ import annotations

import math
from collections import Counter, defaultdict, deque
from typing import Any, Deque, Dict, Optional, Sequence


def _nearest_rank(sorted_vals: Sequence[float], pct: float) -> Optional[float]:
    if not sorted_vals:
        return None
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_vals)))
    return float(sorted_vals[min(rank, len(sorted_vals)) - 1])


class Metrics:
    """In-process counters for rpc traffic, submissions and failure kinds.

    Three shapes: plain counters, counters grouped by reason (failure kind,
    rejection tag, rpc method) and bounded sample windows for latencies.
    """

    def __init__(self, max_samples: int = 1000) -> None:
        self._max_samples = int(max_samples)
        self._counters: Counter = Counter()
        self._reasons: Dict[str, Counter] = defaultdict(Counter)
        self._samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=self._max_samples))

    def reset(self) -> None:
        self._counters.clear()
        self._reasons.clear()
        self._samples.clear()

    def inc(self, name: str, n: int = 1) -> None:
        if name:
            self._counters[str(name)] += int(n)

    def inc_reason(self, group: str, reason: str, n: int = 1) -> None:
        if group and reason:
            self._reasons[str(group)][str(reason)] += int(n)

    def count(self, name: str) -> int:
        return int(self._counters[str(name)])

    def reason_count(self, group: str, reason: str) -> int:
        if str(group) not in self._reasons:
            return 0
        return int(self._reasons[str(group)][str(reason)])

    def observe(self, name: str, value: float) -> None:
        v = float(value)
        if name and not math.isnan(v):
            self._samples[str(name)].append(v)

    def summary(self, name: str) -> Dict[str, Any]:
        vals = sorted(self._samples.get(str(name)) or ())
        return {
            "count": len(vals),
            "p50": _nearest_rank(vals, 50.0),
            "p95": _nearest_rank(vals, 95.0),
            "max": vals[-1] if vals else None,
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "reason_counters": {group: dict(c) for group, c in self._reasons.items()},
            "histograms": {name: self.summary(name) for name in self._samples},
        }


METRICS = Metrics()
