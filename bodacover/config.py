"""
Scheduler configuration.

Values come from environment variables (a .env file is loaded by the entry
points with python-dotenv). SchedulerSettings.from_env() reads them once
into an immutable settings object that is passed down explicitly.
"""

import os
from dataclasses import dataclass, field
from datetime import time
from typing import Mapping, Optional


DEFAULT_DB_PATH = "data/scheduler.db"
DEFAULT_TRIGGER_TIMES = "08:00,14:00,20:00"

# KES 1,048 deposit
DEFAULT_THRESHOLD_CENTS = 104_800
DEFAULT_CYCLE_DAYS = 30


def _env_bool(env: Mapping[str, str], key: str, default: str) -> bool:
    return env.get(key, default).strip().lower() in ("1", "true", "yes", "on")


def parse_trigger_times(value: str) -> tuple[time, ...]:
    """
    Parse "HH:MM,HH:MM,..." into sorted, distinct times of day.

    Raises:
        ValueError: If the list is empty or an entry is malformed
    """
    times = set()
    for raw in value.split(","):
        raw = raw.strip()
        if not raw:
            continue
        hours, _, minutes = raw.partition(":")
        times.add(time(int(hours), int(minutes or 0)))

    if not times:
        raise ValueError(f"No trigger times in {value!r}")

    return tuple(sorted(times))


@dataclass(frozen=True)
class SchedulerSettings:
    """Immutable runtime configuration."""

    enabled: bool = True
    db_path: str = DEFAULT_DB_PATH
    interval_seconds: float = 60.0
    lease_timeout_seconds: float = 300.0
    heartbeat_seconds: float = 10.0
    default_timeout_seconds: float = 900.0
    retry_base_seconds: float = 60.0
    retry_max_seconds: float = 3600.0
    batch_concurrency: int = 2
    max_workers: int = 4
    trigger_times: tuple[time, ...] = field(
        default_factory=lambda: parse_trigger_times(DEFAULT_TRIGGER_TIMES)
    )
    threshold_cents: int = DEFAULT_THRESHOLD_CENTS
    cycle_days: int = DEFAULT_CYCLE_DAYS
    alert_webhook_url: Optional[str] = None
    log_level: str = "INFO"
    log_dir: str = "logs"
    in_memory_collaborators: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SchedulerSettings":
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read instead of os.environ (tests)
        """
        env = os.environ if env is None else env

        return cls(
            enabled=_env_bool(env, "SCHEDULER_ENABLED", "true"),
            db_path=env.get("SCHEDULER_DB_PATH", DEFAULT_DB_PATH),
            interval_seconds=float(env.get("SCHEDULER_INTERVAL_SECONDS", "60")),
            lease_timeout_seconds=float(env.get("SCHEDULER_LEASE_TIMEOUT_SECONDS", "300")),
            heartbeat_seconds=float(env.get("SCHEDULER_HEARTBEAT_SECONDS", "10")),
            default_timeout_seconds=float(env.get("SCHEDULER_DEFAULT_TIMEOUT_SECONDS", "900")),
            retry_base_seconds=float(env.get("SCHEDULER_RETRY_BASE_SECONDS", "60")),
            retry_max_seconds=float(env.get("SCHEDULER_RETRY_MAX_SECONDS", "3600")),
            batch_concurrency=int(env.get("SCHEDULER_BATCH_CONCURRENCY", "2")),
            max_workers=int(env.get("SCHEDULER_MAX_WORKERS", "4")),
            trigger_times=parse_trigger_times(
                env.get("SETTLEMENT_TRIGGER_TIMES", DEFAULT_TRIGGER_TIMES)
            ),
            threshold_cents=int(env.get("SETTLEMENT_THRESHOLD_CENTS", str(DEFAULT_THRESHOLD_CENTS))),
            cycle_days=int(env.get("SETTLEMENT_CYCLE_DAYS", str(DEFAULT_CYCLE_DAYS))),
            alert_webhook_url=env.get("ALERT_WEBHOOK_URL") or None,
            log_level=env.get("LOG_LEVEL", "INFO"),
            log_dir=env.get("LOG_DIR", "logs"),
            in_memory_collaborators=_env_bool(env, "SCHEDULER_IN_MEMORY_COLLABORATORS", "false"),
        )
