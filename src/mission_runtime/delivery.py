"""Notification delivery over Telegram and Discord.

Each target channel is sent to independently: one channel failing (or being
short-circuited by its breaker) never prevents delivery to the others. The
caller gets a per-channel ``DeliveryResult`` list and decides what to
dead-letter.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from mission_runtime.circuit_breaker import CircuitBreakerRegistry
from mission_runtime.config import DeliveryConfig
from mission_runtime.models import Mission, NotificationSchedule

logger = logging.getLogger(__name__)

TELEGRAM_MAX_LEN = 4096
DISCORD_MAX_LEN = 2000
MESSAGE_SEPARATOR = "\n---\n"
DISCORD_PREFIX = "discord:"
DISCORD_WEBHOOK_HOSTS = ("discord.com/api/webhooks", "discordapp.com/api/webhooks")


@dataclass
class DeliveryResult:
	channel_id: str
	ok: bool
	error: str | None = None
	status: int | None = None


class DeliverySender(Protocol):
	async def send(self, channel_id: str, text: str) -> DeliveryResult: ...


def split_message(text: str, max_len: int = TELEGRAM_MAX_LEN) -> list[str]:
	"""Split at separator boundaries so every part fits within ``max_len``."""
	if len(text) <= max_len:
		return [text]

	result: list[str] = []
	current = ""
	for chunk in text.split(MESSAGE_SEPARATOR):
		if len(chunk) > max_len:
			if current:
				result.append(current)
				current = ""
			for i in range(0, len(chunk), max_len):
				result.append(chunk[i:i + max_len])
		elif not current:
			current = chunk
		elif len(current) + len(MESSAGE_SEPARATOR) + len(chunk) <= max_len:
			current = current + MESSAGE_SEPARATOR + chunk
		else:
			result.append(current)
			current = chunk
	if current:
		result.append(current)
	return result


class TelegramSender:
	"""Sends messages through the Telegram Bot API."""

	def __init__(
		self,
		bot_token: str,
		parse_mode: str = "Markdown",
		timeout: float = 10.0,
		client: httpx.AsyncClient | None = None,
	) -> None:
		self._bot_token = bot_token
		self._parse_mode = parse_mode
		self._timeout = timeout
		self._client = client

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=self._timeout)
		return self._client

	async def send(self, channel_id: str, text: str) -> DeliveryResult:
		if not self._bot_token:
			return DeliveryResult(channel_id=channel_id, ok=False, error="telegram bot token not configured")
		client = await self._ensure_client()
		url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
		status: int | None = None
		try:
			for part in split_message(text, TELEGRAM_MAX_LEN):
				resp = await client.post(url, json={
					"chat_id": channel_id,
					"text": part,
					"parse_mode": self._parse_mode,
					"disable_web_page_preview": True,
				})
				status = resp.status_code
				resp.raise_for_status()
		except httpx.HTTPStatusError as exc:
			return DeliveryResult(channel_id=channel_id, ok=False, error=f"HTTP {exc.response.status_code}", status=status)
		except httpx.HTTPError as exc:
			return DeliveryResult(channel_id=channel_id, ok=False, error=str(exc) or type(exc).__name__)
		return DeliveryResult(channel_id=channel_id, ok=True, status=status)

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None


class DiscordWebhookSender:
	"""Posts messages to a Discord webhook URL (the channel id is the URL)."""

	def __init__(self, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
		self._timeout = timeout
		self._client = client

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=self._timeout)
		return self._client

	async def send(self, channel_id: str, text: str) -> DeliveryResult:
		if not channel_id.startswith("https://"):
			return DeliveryResult(channel_id=channel_id, ok=False, error="discord webhook must be an https URL")
		client = await self._ensure_client()
		status: int | None = None
		try:
			for part in split_message(text, DISCORD_MAX_LEN):
				resp = await client.post(channel_id, json={"content": part})
				status = resp.status_code
				resp.raise_for_status()
		except httpx.HTTPStatusError as exc:
			return DeliveryResult(channel_id=channel_id, ok=False, error=f"HTTP {exc.response.status_code}", status=status)
		except httpx.HTTPError as exc:
			return DeliveryResult(channel_id=channel_id, ok=False, error=str(exc) or type(exc).__name__)
		return DeliveryResult(channel_id=channel_id, ok=True, status=status)

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None


def route_channel(target: str) -> tuple[str, str]:
	"""Map a schedule target to ``(sender_name, channel_id)``.

	``discord:<webhook-url>`` and bare Discord webhook URLs go to Discord,
	anything else is a Telegram chat id.
	"""
	if target.startswith(DISCORD_PREFIX):
		return "discord", target[len(DISCORD_PREFIX):]
	if any(host in target.lower() for host in DISCORD_WEBHOOK_HOSTS):
		return "discord", target
	return "telegram", target


class DeliveryDispatcher:
	"""Fans a message out to every target with per-channel failure isolation."""

	def __init__(
		self,
		senders: dict[str, DeliverySender],
		breakers: CircuitBreakerRegistry | None = None,
	) -> None:
		self._senders = senders
		self._breakers = breakers

	async def deliver(self, targets: Sequence[str], text: str) -> list[DeliveryResult]:
		results: list[DeliveryResult] = []
		for target in targets:
			sender_name, channel_id = route_channel(target)
			sender = self._senders.get(sender_name)
			if sender is None:
				results.append(DeliveryResult(channel_id=target, ok=False, error=f"no sender for {sender_name}"))
				continue
			breaker_key = f"{sender_name}:{channel_id}"
			if self._breakers is not None and not self._breakers.allow(breaker_key):
				results.append(DeliveryResult(channel_id=target, ok=False, error="circuit open"))
				continue
			try:
				result = await sender.send(channel_id, text)
			except Exception as exc:
				logger.warning("Delivery to %s raised: %s", sender_name, exc)
				result = DeliveryResult(channel_id=channel_id, ok=False, error=str(exc) or type(exc).__name__)
			result.channel_id = target
			if self._breakers is not None:
				if result.ok:
					self._breakers.record_success(breaker_key)
				else:
					self._breakers.record_failure(breaker_key)
			if not result.ok:
				logger.warning("Delivery to %s failed: %s", sender_name, result.error)
			results.append(result)
		return results

	async def close(self) -> None:
		for sender in self._senders.values():
			close = getattr(sender, "close", None)
			if close is not None:
				await close()


@dataclass
class ExecutionResult:
	"""What one schedule execution produced, as seen by the scheduler."""

	ok: bool
	deliveries: list[DeliveryResult] = field(default_factory=list)
	error: str | None = None

	@property
	def ok_count(self) -> int:
		return sum(1 for d in self.deliveries if d.ok)

	@property
	def fail_count(self) -> int:
		return sum(1 for d in self.deliveries if not d.ok)


class ScheduleExecutor(Protocol):
	async def __call__(
		self, schedule: NotificationSchedule, mission: Mission | None,
	) -> ExecutionResult: ...


class NotificationExecutor:
	"""Default executor: deliver the schedule's message to its chat ids."""

	def __init__(self, dispatcher: DeliveryDispatcher) -> None:
		self._dispatcher = dispatcher

	async def __call__(
		self, schedule: NotificationSchedule, mission: Mission | None,
	) -> ExecutionResult:
		if not schedule.chat_ids:
			return ExecutionResult(ok=False, error="no delivery targets configured")
		text = schedule.message
		if mission is not None and mission.label and mission.label not in text:
			text = f"*{mission.label}*\n{text}"
		deliveries = await self._dispatcher.deliver(schedule.chat_ids, text)
		failed = [d for d in deliveries if not d.ok]
		if failed:
			return ExecutionResult(
				ok=False,
				deliveries=deliveries,
				error="; ".join(f"{d.channel_id}: {d.error}" for d in failed)[:500],
			)
		return ExecutionResult(ok=True, deliveries=deliveries)


def build_dispatcher(config: DeliveryConfig) -> DeliveryDispatcher:
	senders: dict[str, DeliverySender] = {
		"telegram": TelegramSender(
			config.telegram.bot_token,
			parse_mode=config.telegram.parse_mode,
			timeout=float(config.timeout),
		),
	}
	if config.discord.enabled:
		senders["discord"] = DiscordWebhookSender(timeout=float(config.timeout))
	breakers = None
	if config.circuit_breaker_enabled:
		breakers = CircuitBreakerRegistry(
			max_failures=config.circuit_breaker_max_failures,
			cooldown_seconds=float(config.circuit_breaker_cooldown_seconds),
		)
	return DeliveryDispatcher(senders, breakers)
