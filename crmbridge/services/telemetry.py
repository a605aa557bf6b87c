from __future__ import annotations

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
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track inbound latency and status for webhook and task endpoints.
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture platform and queue call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def get_counter(name: str) -> int:
    return int(_counters.get(name, 0))


def reset_telemetry() -> None:
    # Allow tests to isolate counter assertions.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
