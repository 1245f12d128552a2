"""Runtime configuration for the report job engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class SchedulerSettings:
    """Queue and stage execution settings."""

    max_attempts: int = 3
    poll_interval_seconds: float = 0.25
    max_parallel_stages: int = 1
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 30.0
    recover_on_start: bool = True


@dataclass(slots=True)
class DemoExecutorSettings:
    """Knobs for the built-in deterministic stage executor."""

    stage_seconds: float = 0.0
    fail_stages: tuple[str, ...] = ()


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".research_reports.db")
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    demo_executor: DemoExecutorSettings = field(default_factory=DemoExecutorSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("RESEARCH_REPORTS_DB_PATH", ".research_reports.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("RESEARCH_REPORTS_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            scheduler=SchedulerSettings(
                max_attempts=int(os.getenv("RESEARCH_REPORTS_MAX_ATTEMPTS", "3")),
                poll_interval_seconds=float(
                    os.getenv("RESEARCH_REPORTS_POLL_INTERVAL_SECONDS", "0.25"),
                ),
                max_parallel_stages=int(os.getenv("RESEARCH_REPORTS_MAX_PARALLEL_STAGES", "1")),
                retry_base_seconds=float(os.getenv("RESEARCH_REPORTS_RETRY_BASE_SECONDS", "2")),
                retry_max_seconds=float(os.getenv("RESEARCH_REPORTS_RETRY_MAX_SECONDS", "30")),
                recover_on_start=_env_bool("RESEARCH_REPORTS_RECOVER_ON_START", default=True),
            ),
            demo_executor=DemoExecutorSettings(
                stage_seconds=float(os.getenv("RESEARCH_REPORTS_DEMO_STAGE_SECONDS", "0")),
                fail_stages=_env_csv("RESEARCH_REPORTS_DEMO_FAIL_STAGES"),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("RESEARCH_REPORTS_USER_ID", "default_user"),
            ),
        )

    def validate_for_scheduler(self) -> None:
        """Raise configuration error if scheduler settings are out of range."""

        scheduler = self.scheduler
        if scheduler.max_attempts < 1:
            raise ValueError("RESEARCH_REPORTS_MAX_ATTEMPTS must be >= 1.")
        if scheduler.poll_interval_seconds <= 0:
            raise ValueError("RESEARCH_REPORTS_POLL_INTERVAL_SECONDS must be > 0.")
        if scheduler.max_parallel_stages < 1:
            raise ValueError("RESEARCH_REPORTS_MAX_PARALLEL_STAGES must be >= 1.")
        if scheduler.retry_base_seconds < 0 or scheduler.retry_max_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")
        if scheduler.retry_max_seconds < scheduler.retry_base_seconds:
            raise ValueError(
                "RESEARCH_REPORTS_RETRY_MAX_SECONDS must be >= RESEARCH_REPORTS_RETRY_BASE_SECONDS.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("RESEARCH_REPORTS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.demo_executor.stage_seconds < 0:
            raise ValueError("RESEARCH_REPORTS_DEMO_STAGE_SECONDS must be >= 0.")


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip().lower()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
