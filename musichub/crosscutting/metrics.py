import json
import time
from datetime import datetime
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, asdict, field
from contextlib import contextmanager
import threading


@dataclass
class TimingMetrics:
    """Aggregated durations for one named operation."""
    name: str
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    @property
    def average_ms(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total_ms / self.count


@dataclass
class SessionMetrics:
    """Counters and timings collected during one client session."""
    started_at: datetime
    counters: Dict[str, int] = field(default_factory=dict)
    timings: Dict[str, TimingMetrics] = field(default_factory=dict)


class MetricsCollector:
    """Collects counters and timings for the client core.

    Well-known counters: search.dispatched, search.stale_dropped, search.failed,
    library.sync, library.sync_failed, library.rollbacks, playback.stale_callbacks, playback.errors.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.session_metrics = SessionMetrics(started_at=datetime.now())

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            counters = self.session_metrics.counters
            counters[name] = counters.get(name, 0) + amount

    def count(self, name: str) -> int:
        with self._lock:
            return self.session_metrics.counters.get(name, 0)

    def record_duration(self, name: str, duration_ms: float) -> None:
        with self._lock:
            timing = self.session_metrics.timings.get(name)
            if timing is None:
                timing = self.session_metrics.timings[name] = TimingMetrics(name=name)
            timing.count += 1
            timing.total_ms += duration_ms
            timing.max_ms = max(timing.max_ms, duration_ms)

    @contextmanager
    def timer(self, name: str):
        """Context manager recording the wall time of the block."""
        start = time.monotonic()
        try:
            yield self
        finally:
            self.record_duration(name, (time.monotonic() - start) * 1000)

    def get_timing(self, name: str) -> Optional[TimingMetrics]:
        with self._lock:
            return self.session_metrics.timings.get(name)

    def reset(self) -> None:
        with self._lock:
            self.session_metrics = SessionMetrics(started_at=datetime.now())

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for JSON serialization."""
        with self._lock:
            data = asdict(self.session_metrics)
            data['started_at'] = self.session_metrics.started_at.isoformat()
            for name, timing in self.session_metrics.timings.items():
                data['timings'][name]['average_ms'] = timing.average_ms
            return data

    def save_to_file(self, file_path: str) -> None:
        with open(file_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

    def summary_lines(self) -> List[str]:
        data = self.to_dict()
        lines = [f"{name}: {value}" for name, value in sorted(data['counters'].items())]
        for name, timing in sorted(data['timings'].items()):
            lines.append(f"{name}: {timing['count']} calls, avg {timing['average_ms']:.0f}ms, "
                         f"max {timing['max_ms']:.0f}ms")
        return lines
