from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class TransportCallSample:
    ts: float
    channel: str
    latency_ms: float
    success: bool


_transport_samples: Deque[TransportCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_transport_call(*, channel: str, latency_ms: float, success: bool) -> None:
    # Capture transport latency and outcome per channel.
    _transport_samples.append(
        TransportCallSample(
            ts=time.time(),
            channel=channel,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def transport_latency_by_channel(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate p95/max latency and error rate per channel in the window.
    cutoff = time.time() - window_s
    by_channel: dict[str, list[TransportCallSample]] = defaultdict(list)
    for sample in _transport_samples:
        if sample.ts < cutoff:
            continue
        by_channel[sample.channel].append(sample)
    result: dict[str, dict[str, float | None]] = {}
    for channel, samples in by_channel.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        failures = sum(1 for sample in samples if not sample.success)
        result[channel] = {
            "p95": latencies[p95_idx],
            "max": latencies[-1],
            "error_rate": failures / len(samples),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Tests start from empty counters.
    _counters.clear()
    _transport_samples.clear()
