"""SLO evaluation over mission telemetry.

Pure aggregation: takes a list of events and a policy, returns a status per
objective. Nothing is written.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from mission_runtime.config import SloConfig
from mission_runtime.constants import SLO_MAX_LOOKBACK_DAYS, SLO_MIN_LOOKBACK_DAYS
from mission_runtime.models import TelemetryEvent, as_utc
from mission_runtime.telemetry import EVENT_DELIVERY, EVENT_MISSION_RUN

SloState = Literal["pass", "at_risk", "fail"]

_SEVERITY: dict[str, int] = {"pass": 0, "at_risk": 1, "fail": 2}


@dataclass
class SloStatus:
	name: str
	status: SloState
	observed: float | None
	threshold: float
	sample_size: int


@dataclass
class SloSummary:
	window_start: datetime
	window_end: datetime
	lookback_days: int
	total_events: int
	overall: SloState = "pass"


@dataclass
class SloReport:
	summary: SloSummary
	statuses: list[SloStatus] = field(default_factory=list)

	def to_dict(self) -> dict[str, object]:
		return {
			"summary": {
				"window_start": self.summary.window_start.isoformat(),
				"window_end": self.summary.window_end.isoformat(),
				"lookback_days": self.summary.lookback_days,
				"total_events": self.summary.total_events,
				"overall": self.summary.overall,
			},
			"statuses": [
				{
					"name": s.name,
					"status": s.status,
					"observed": s.observed,
					"threshold": s.threshold,
					"sample_size": s.sample_size,
				}
				for s in self.statuses
			],
		}


def clamp_lookback(days: int | None, default: int) -> int:
	value = default if days is None else days
	return max(SLO_MIN_LOOKBACK_DAYS, min(SLO_MAX_LOOKBACK_DAYS, int(value)))


def percentile(values: list[float], pct: float) -> float:
	"""Nearest-rank percentile; ``values`` must be non-empty."""
	ordered = sorted(values)
	rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
	return ordered[rank - 1]


def _floor_status(observed: float, floor: float, margin: float) -> SloState:
	if observed < floor:
		return "fail"
	if observed < min(1.0, floor * (1 + margin)):
		return "at_risk"
	return "pass"


def _ceiling_status(observed: float, ceiling: float, margin: float) -> SloState:
	if observed > ceiling:
		return "fail"
	if observed > ceiling * (1 - margin):
		return "at_risk"
	return "pass"


def _rate_objective(name: str, events: list[TelemetryEvent], floor: float, margin: float) -> SloStatus:
	counted = [e for e in events if e.outcome != "skipped"]
	if not counted:
		return SloStatus(name=name, status="pass", observed=None, threshold=floor, sample_size=0)
	rate = sum(1 for e in counted if e.outcome == "success") / len(counted)
	return SloStatus(
		name=name,
		status=_floor_status(rate, floor, margin),
		observed=round(rate, 4),
		threshold=floor,
		sample_size=len(counted),
	)


def evaluate(
	events: Iterable[TelemetryEvent],
	policy: SloConfig | None = None,
	now: datetime | None = None,
	lookback_days: int | None = None,
) -> SloReport:
	"""Status per objective for events inside the lookback window."""
	policy = policy or SloConfig()
	now = as_utc(now) if now is not None else datetime.now(timezone.utc)
	days = clamp_lookback(lookback_days, policy.lookback_days)
	window_start = now - timedelta(days=days)

	in_window = [e for e in events if window_start <= e.ts <= now]
	runs = [e for e in in_window if e.event_type == EVENT_MISSION_RUN]
	deliveries = [e for e in in_window if e.event_type == EVENT_DELIVERY]

	statuses = [_rate_objective("run_success_rate", runs, policy.success_rate_floor, policy.at_risk_margin)]

	latencies = [e.duration_ms for e in runs if e.duration_ms is not None]
	if latencies:
		p95 = percentile(latencies, 95)
		statuses.append(SloStatus(
			name="latency_p95_ms",
			status=_ceiling_status(p95, policy.latency_p95_ceiling_ms, policy.at_risk_margin),
			observed=round(p95, 1),
			threshold=policy.latency_p95_ceiling_ms,
			sample_size=len(latencies),
		))
	else:
		statuses.append(SloStatus(
			name="latency_p95_ms", status="pass", observed=None,
			threshold=policy.latency_p95_ceiling_ms, sample_size=0,
		))

	statuses.append(_rate_objective(
		"delivery_success_rate", deliveries, policy.delivery_success_rate_floor, policy.at_risk_margin,
	))

	overall = max((s.status for s in statuses), key=lambda s: _SEVERITY[s])
	return SloReport(
		summary=SloSummary(
			window_start=window_start,
			window_end=now,
			lookback_days=days,
			total_events=len(in_window),
			overall=overall,
		),
		statuses=statuses,
	)
