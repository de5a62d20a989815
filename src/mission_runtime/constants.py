"""Centralized defaults and limits."""

from __future__ import annotations

# Persisted schema versions
NOTIFICATION_STORE_SCHEMA_VERSION = 2
MISSION_STORE_SCHEMA_VERSION = 1
RESCHEDULE_STORE_SCHEMA_VERSION = 1

# Reschedule write path
RESCHEDULE_PAST_BUFFER_SECONDS = 10 * 60
CONFLICT_WINDOW_HOURS = 12
DURATION_BASE_SECONDS = 30
DURATION_PER_NODE_SECONDS = 45

# Scheduler defaults (seconds unless noted)
DEFAULT_TICK_INTERVAL = 30
MIN_TICK_INTERVAL = 10
MAX_TICK_INTERVAL = 300
DEFAULT_WINDOW_MINUTES = 10
MAX_WINDOW_MINUTES = 120
DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_TRIGGER_TIME = "09:00"

# Failed runs of one schedule on one local day
DEFAULT_MAX_ATTEMPTS_PER_RUN_KEY = 3
MAX_ATTEMPTS_PER_RUN_KEY = 8
DEFAULT_RETRY_BASE_SECONDS = 60
MIN_RETRY_BASE_SECONDS = 10
DEFAULT_RETRY_MAX_SECONDS = 15 * 60
MAX_RETRY_DELAY_SECONDS = 6 * 60 * 60

DEFAULT_LIMITS: dict[str, int] = {
	"max_runs_per_tick": 20,
	"max_runs_per_owner_per_tick": 4,
	"execution_timeout": 120,
	"calendar_timeout": 10,
	"delivery_timeout": 10,
	"dead_letter_list_limit": 100,
	"journal_list_limit": 100,
}

# Owner ids are sanitized to this many characters
MAX_OWNER_ID_LEN = 96

# SLO lookback bounds (days)
SLO_MIN_LOOKBACK_DAYS = 1
SLO_MAX_LOOKBACK_DAYS = 30

SCHEDULE_TRIGGER_NODE = "schedule-trigger"
