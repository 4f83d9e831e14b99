from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


DEFAULT_AVAILABILITY_TARGET = 99.9
DEFAULT_AVAILABILITY_BUDGET = 100.0
DEFAULT_LATENCY_TARGET_P95 = 200.0
DEFAULT_LATENCY_TARGET_P99 = 500.0
DEFAULT_ERROR_RATE_TARGET = 0.1

STATUS_BUCKETS = ("2xx", "3xx", "4xx", "5xx")


class _SnapshotModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class MetricPoint(_SnapshotModel):
    timestamp: int
    value: float


class TimeSeries(_SnapshotModel):
    name: str
    unit: str
    data: List[MetricPoint] = Field(default_factory=list)


class LatencySeries(_SnapshotModel):
    p50: TimeSeries = Field(default_factory=lambda: TimeSeries(name="P50 Latency", unit="ms"))
    p95: TimeSeries = Field(default_factory=lambda: TimeSeries(name="P95 Latency", unit="ms"))
    p99: TimeSeries = Field(default_factory=lambda: TimeSeries(name="P99 Latency", unit="ms"))


class Summary(_SnapshotModel):
    total_requests: float = 0.0
    avg_latency: float = 0.0
    error_rate: float = 0.0
    uptime: float = 0.0


class StatusCodes(BaseModel):
    """Response counts bucketed by status class. Always exactly four buckets."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    status_2xx: int = Field(default=0, alias="2xx")
    status_3xx: int = Field(default=0, alias="3xx")
    status_4xx: int = Field(default=0, alias="4xx")
    status_5xx: int = Field(default=0, alias="5xx")

    @classmethod
    def from_buckets(cls, buckets: Dict[str, int]) -> "StatusCodes":
        return cls.model_validate({bucket: buckets.get(bucket, 0) for bucket in STATUS_BUCKETS})

    def as_buckets(self) -> Dict[str, int]:
        return self.model_dump(by_alias=True)


class AvailabilitySLO(_SnapshotModel):
    current: float = 0.0
    target: float = DEFAULT_AVAILABILITY_TARGET
    budget: float = DEFAULT_AVAILABILITY_BUDGET


class LatencySLO(_SnapshotModel):
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    target_p95: float = Field(default=DEFAULT_LATENCY_TARGET_P95, alias="targetP95")
    target_p99: float = Field(default=DEFAULT_LATENCY_TARGET_P99, alias="targetP99")


class ErrorRateSLO(_SnapshotModel):
    current: float = 0.0
    target: float = DEFAULT_ERROR_RATE_TARGET


class SLO(_SnapshotModel):
    availability: AvailabilitySLO = Field(default_factory=AvailabilitySLO)
    latency: LatencySLO = Field(default_factory=LatencySLO)
    error_rate: ErrorRateSLO = Field(default_factory=ErrorRateSLO)


class CircuitBreakers(_SnapshotModel):
    open: int = 0
    half_open: int = 0
    closed: int = 0


class MetricsSnapshot(_SnapshotModel):
    """Schema-stable telemetry snapshot handed to dashboard consumers.

    Every section is always present and every number is finite, so charts and
    stat cards can render it without null checks. Instances are immutable; a
    newer snapshot replaces an older one wholesale.
    """

    summary: Summary = Field(default_factory=Summary)
    request_rate: TimeSeries = Field(default_factory=lambda: TimeSeries(name="Request Rate", unit="req/s"))
    latency: LatencySeries = Field(default_factory=LatencySeries)
    error_rate: TimeSeries = Field(default_factory=lambda: TimeSeries(name="Error Rate", unit="%"))
    status_codes: StatusCodes = Field(default_factory=StatusCodes)
    slo: SLO = Field(default_factory=SLO)
    circuit_breakers: CircuitBreakers = Field(default_factory=CircuitBreakers)

    def to_public_dict(self) -> Dict[str, object]:
        return self.model_dump(by_alias=True)
