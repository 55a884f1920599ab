from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops dashboards and tests.
    _counters[name] += value


def get_counter(name: str) -> int:
    return int(_counters.get(name, 0))


def external_call_stats(integration: str, window_s: int = 3600) -> dict[str, float | int | None]:
    # Summarize provider call health over a recent window.
    cutoff = time.time() - window_s
    samples = [s for s in _external_samples if s.integration == integration and s.ts >= cutoff]
    if not samples:
        return {"calls": 0, "error_rate": None, "avg_latency_ms": None}
    failures = sum(1 for s in samples if not s.success)
    return {
        "calls": len(samples),
        "error_rate": failures / len(samples),
        "avg_latency_ms": sum(s.latency_ms for s in samples) / len(samples),
    }


def reset_telemetry() -> None:
    _external_samples.clear()
    _counters.clear()
