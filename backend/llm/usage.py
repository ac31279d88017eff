import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class UsageEvent:
    label: str
    model: str
    temperature: float
    duration_ms: int
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_usage(cls, label: str, model: str, temperature: float, duration_ms: int, usage: dict | None):
        usage = usage or {}
        prompt = int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0)
        completion = int(usage.get("completion_tokens") or usage.get("output_tokens") or 0)
        total = int(usage.get("total_tokens") or (prompt + completion))
        return cls(
            label=label,
            model=model,
            temperature=temperature,
            duration_ms=duration_ms,
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total,
        )


def _bucket() -> dict:
    return {
        "requests": 0,
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
        "total_duration_ms": 0,
    }


def _add(bucket: dict, event: UsageEvent) -> None:
    bucket["requests"] += 1
    bucket["prompt_tokens"] += event.prompt_tokens
    bucket["completion_tokens"] += event.completion_tokens
    bucket["total_tokens"] += event.total_tokens
    bucket["total_duration_ms"] += event.duration_ms


def _averages(bucket: dict) -> dict:
    n = bucket["requests"]
    bucket["average_tokens_per_request"] = bucket["total_tokens"] / n if n else 0
    bucket["average_latency_ms"] = bucket["total_duration_ms"] / n if n else 0
    return bucket


class UsageAggregator:
    """Observer that keeps every usage event and sums them on demand.

    One aggregator can be shared by several pipelines running on worker
    threads.
    """

    def __init__(self):
        self._events: list[UsageEvent] = []
        self._lock = threading.Lock()

    def record(self, event: UsageEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[UsageEvent]:
        with self._lock:
            return list(self._events)

    def reset(self) -> None:
        with self._lock:
            self._events = []

    def summary(self) -> dict:
        events = self.events
        totals = _bucket()
        by_label: dict[str, dict] = {}
        for event in events:
            _add(totals, event)
            _add(by_label.setdefault(event.label, _bucket()), event)
        return {
            "totals": _averages(totals),
            "by_label": {label: _averages(b) for label, b in by_label.items()},
            "events": [asdict(e) for e in events],
        }
