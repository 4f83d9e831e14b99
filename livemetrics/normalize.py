"""
Convert raw gateway telemetry documents into a canonical MetricsSnapshot.

The backend has shipped several payload shapes over time and the dashboard
accepts all of them:

* series: ``{"name", "unit", "data": [points]}`` or a bare list of points
* points: ``{"timestamp": <epoch ms | ISO-8601>, "value": <number | numeric string>}``
* status codes: ``{"2xx": n, ...}`` or ``[{"code": 404, "count": n}, ...]``
* summary counters: ``totalRequestsAllTime`` (monotonic) or ``totalRequests``
  (windowed), ``availability`` or ``uptime``, ``avgLatency`` or ``avgResponseTime``

``normalize`` is total: any input, including ``None`` or a non-object, yields
a fully populated snapshot.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .snapshot import (
    DEFAULT_AVAILABILITY_BUDGET,
    DEFAULT_AVAILABILITY_TARGET,
    DEFAULT_ERROR_RATE_TARGET,
    DEFAULT_LATENCY_TARGET_P95,
    DEFAULT_LATENCY_TARGET_P99,
    SLO,
    STATUS_BUCKETS,
    AvailabilitySLO,
    CircuitBreakers,
    ErrorRateSLO,
    LatencySeries,
    LatencySLO,
    MetricPoint,
    MetricsSnapshot,
    StatusCodes,
    Summary,
    TimeSeries,
)

_EMPTY: Mapping[str, Any] = {}


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_number(value: Any) -> float:
    """Coerce a number or numeric string to a finite float; anything else is 0."""
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            stripped = value.strip()
            number = float(stripped) if stripped else 0.0
        else:
            return 0.0
    except (ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def to_count(value: Any) -> int:
    return int(to_number(value))


def to_timestamp_ms(value: Any, now_ms: int) -> int:
    """Coerce epoch milliseconds or an ISO-8601 string; unparseable values become ``now_ms``."""
    if isinstance(value, bool):
        return now_ms
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else now_ms
    if not isinstance(value, str):
        return now_ms

    text = value.strip()
    if not text:
        return now_ms
    try:
        number = float(text)
    except ValueError:
        pass
    else:
        return int(number) if math.isfinite(number) else now_ms

    if text[-1] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return now_ms
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else _EMPTY


def _first_present(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _number_or(payload: Mapping[str, Any], key: str, default: float) -> float:
    value = payload.get(key)
    return default if value is None else to_number(value)


def _normalize_series(raw: Any, name: str, unit: str, now_ms: int) -> TimeSeries:
    raw_points: Any = None
    if isinstance(raw, Mapping):
        name = str(raw.get("name") or name)
        unit = str(raw.get("unit") or unit)
        raw_points = raw.get("data")
    elif isinstance(raw, (list, tuple)):
        raw_points = raw

    points: List[MetricPoint] = []
    if isinstance(raw_points, (list, tuple)):
        for point in raw_points:
            if not isinstance(point, Mapping):
                continue
            points.append(
                MetricPoint(
                    timestamp=to_timestamp_ms(point.get("timestamp"), now_ms),
                    value=to_number(point.get("value")),
                )
            )
    # Stable sort keeps backend order for points sharing a timestamp.
    points.sort(key=lambda point: point.timestamp)
    return TimeSeries(name=name, unit=unit, data=points)


def _normalize_status_codes(raw: Any) -> StatusCodes:
    buckets: Dict[str, int] = dict.fromkeys(STATUS_BUCKETS, 0)
    if isinstance(raw, Mapping):
        for bucket in STATUS_BUCKETS:
            if bucket in raw:
                buckets[bucket] = to_count(raw[bucket])
    elif isinstance(raw, (list, tuple)):
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            code = str(item.get("code", "")).strip()
            bucket = f"{code[:1]}xx"
            if bucket in buckets:
                buckets[bucket] += to_count(item.get("count"))
    return StatusCodes.from_buckets(buckets)


def _normalize_summary(raw: Mapping[str, Any]) -> Summary:
    return Summary(
        total_requests=to_number(_first_present(raw, "totalRequestsAllTime", "totalRequests")),
        avg_latency=to_number(_first_present(raw, "avgLatency", "avgResponseTime")),
        error_rate=to_number(raw.get("errorRate")),
        uptime=to_number(_first_present(raw, "availability", "uptime")),
    )


def _normalize_slo(raw: Mapping[str, Any], summary: Summary) -> SLO:
    availability = _section(raw, "availability")
    latency = _section(raw, "latency")
    error_rate = _section(raw, "errorRate")
    return SLO(
        availability=AvailabilitySLO(
            current=_number_or(availability, "current", summary.uptime),
            target=_number_or(availability, "target", DEFAULT_AVAILABILITY_TARGET),
            budget=_number_or(availability, "budget", DEFAULT_AVAILABILITY_BUDGET),
        ),
        latency=LatencySLO(
            p50=_number_or(latency, "p50", 0.0),
            p95=_number_or(latency, "p95", 0.0),
            p99=_number_or(latency, "p99", 0.0),
            target_p95=_number_or(latency, "targetP95", DEFAULT_LATENCY_TARGET_P95),
            target_p99=_number_or(latency, "targetP99", DEFAULT_LATENCY_TARGET_P99),
        ),
        error_rate=ErrorRateSLO(
            current=_number_or(error_rate, "current", summary.error_rate),
            target=_number_or(error_rate, "target", DEFAULT_ERROR_RATE_TARGET),
        ),
    )


def _normalize_circuit_breakers(raw: Mapping[str, Any]) -> CircuitBreakers:
    return CircuitBreakers(
        open=to_count(raw.get("open")),
        half_open=to_count(raw.get("halfOpen")),
        closed=to_count(raw.get("closed")),
    )


def normalize(raw: Any, now_ms: Optional[int] = None) -> MetricsSnapshot:
    payload: Mapping[str, Any] = raw if isinstance(raw, Mapping) else _EMPTY
    if now_ms is None:
        now_ms = _now_ms()

    summary = _normalize_summary(_section(payload, "summary"))
    latency = _section(payload, "latency")

    return MetricsSnapshot(
        summary=summary,
        request_rate=_normalize_series(payload.get("requestRate"), "Request Rate", "req/s", now_ms),
        latency=LatencySeries(
            p50=_normalize_series(latency.get("p50"), "P50 Latency", "ms", now_ms),
            p95=_normalize_series(latency.get("p95"), "P95 Latency", "ms", now_ms),
            p99=_normalize_series(latency.get("p99"), "P99 Latency", "ms", now_ms),
        ),
        error_rate=_normalize_series(payload.get("errorRate"), "Error Rate", "%", now_ms),
        status_codes=_normalize_status_codes(payload.get("statusCodes")),
        slo=_normalize_slo(_section(payload, "slo"), summary),
        circuit_breakers=_normalize_circuit_breakers(_section(payload, "circuitBreakers")),
    )
