from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class JobSample:
    ts: float
    job_name: str
    outcome: str
    duration_ms: float


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_job_samples: Deque[JobSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track control-plane request latency and status.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_job(*, job_name: str, outcome: str, duration_ms: float) -> None:
    # Capture job durations and outcomes per runner.
    _job_samples.append(
        JobSample(ts=time.time(), job_name=job_name, outcome=outcome, duration_ms=duration_ms)
    )
    increment_counter(f"job_{outcome}_total.{job_name}")


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def job_duration_stats(job_name: str) -> dict[str, float | None]:
    # Summarize recent durations for one job runner.
    durations = sorted(sample.duration_ms for sample in _job_samples if sample.job_name == job_name)
    if not durations:
        return {"p95": None, "max": None}
    idx = max(0, math.ceil(0.95 * len(durations)) - 1)
    return {"p95": durations[idx], "max": durations[-1]}


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    _request_samples.clear()
    _job_samples.clear()
    _counters.clear()
