import os
from dataclasses import dataclass

from .daily_scores import RECOVERY_BASE_PROVIDERS


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str = ""
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"
    statement_timeout_ms: int = 15_000
    job_timeout_seconds: float = 60.0
    dedup_batch_size: int = 500
    baseline_window: int = 14
    recovery_model: str = "trend"

    def __post_init__(self) -> None:
        if not self.listen_database_url:
            object.__setattr__(self, "listen_database_url", self.database_url)
        if not 1 <= self.baseline_window <= 14:
            raise RuntimeError("VITALIS_BASELINE_WINDOW must be between 1 and 14")
        if self.recovery_model not in RECOVERY_BASE_PROVIDERS:
            raise RuntimeError(
                "VITALIS_RECOVERY_MODEL must be one of: " + ", ".join(RECOVERY_BASE_PROVIDERS)
            )

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            listen_database_url=os.environ.get("VITALIS_WORKER_LISTEN_DATABASE_URL", ""),
            poll_interval_seconds=float(os.environ.get("VITALIS_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("VITALIS_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("VITALIS_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("VITALIS_HEALTH_PORT", "8081")),
            log_format=os.environ.get("VITALIS_LOG_FORMAT", "json"),
            statement_timeout_ms=int(os.environ.get("VITALIS_STATEMENT_TIMEOUT_MS", "15000")),
            job_timeout_seconds=float(os.environ.get("VITALIS_JOB_TIMEOUT_SECONDS", "60")),
            dedup_batch_size=int(os.environ.get("VITALIS_DEDUP_BATCH_SIZE", "500")),
            baseline_window=int(os.environ.get("VITALIS_BASELINE_WINDOW", "14")),
            recovery_model=os.environ.get("VITALIS_RECOVERY_MODEL", "trend"),
        )
