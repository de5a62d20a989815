"""Per-channel circuit breaker for delivery failure isolation.

A channel that keeps failing is short-circuited for a cooldown period instead
of being hit on every tick. States: CLOSED -> OPEN -> HALF_OPEN -> CLOSED/OPEN.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitBreakerState(Enum):
	CLOSED = "closed"
	OPEN = "open"
	HALF_OPEN = "half_open"


@dataclass
class ChannelBreaker:
	channel: str
	state: CircuitBreakerState = CircuitBreakerState.CLOSED
	failure_count: int = 0
	opened_at: float = 0.0
	trial_in_flight: bool = False


class CircuitBreakerRegistry:
	"""Breakers keyed by channel name (``telegram:<chat>``, ``discord:<hook>`` ...)."""

	def __init__(
		self,
		max_failures: int = 3,
		cooldown_seconds: float = 300.0,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._max_failures = max_failures
		self._cooldown_seconds = cooldown_seconds
		self._clock = clock
		self._breakers: dict[str, ChannelBreaker] = {}

	def _get(self, channel: str) -> ChannelBreaker:
		cb = self._breakers.get(channel)
		if cb is None:
			cb = ChannelBreaker(channel=channel)
			self._breakers[channel] = cb
		return cb

	def allow(self, channel: str) -> bool:
		"""Whether a send to ``channel`` may go out now."""
		cb = self._get(channel)
		if cb.state == CircuitBreakerState.CLOSED:
			return True
		if cb.state == CircuitBreakerState.OPEN:
			if self._clock() - cb.opened_at < self._cooldown_seconds:
				return False
			logger.info("Circuit breaker %s: OPEN -> HALF_OPEN", channel)
			cb.state = CircuitBreakerState.HALF_OPEN
			cb.trial_in_flight = True
			return True
		# HALF_OPEN: a single trial call at a time
		if cb.trial_in_flight:
			return False
		cb.trial_in_flight = True
		return True

	def record_success(self, channel: str) -> None:
		cb = self._get(channel)
		if cb.state != CircuitBreakerState.CLOSED:
			logger.info("Circuit breaker %s: %s -> CLOSED", channel, cb.state.value.upper())
		cb.state = CircuitBreakerState.CLOSED
		cb.failure_count = 0
		cb.trial_in_flight = False

	def record_failure(self, channel: str) -> None:
		cb = self._get(channel)
		cb.failure_count += 1
		cb.trial_in_flight = False
		if cb.state == CircuitBreakerState.HALF_OPEN or (
			cb.state == CircuitBreakerState.CLOSED and cb.failure_count >= self._max_failures
		):
			logger.warning(
				"Circuit breaker %s: %s -> OPEN (%d consecutive failures)",
				channel, cb.state.value.upper(), cb.failure_count,
			)
			cb.state = CircuitBreakerState.OPEN
			cb.opened_at = self._clock()

	def get_state(self, channel: str) -> CircuitBreakerState:
		return self._get(channel).state
