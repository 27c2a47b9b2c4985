"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class OpsSettings(BaseSettings):
    workspace_dir: Path = Path(".opsloop")
    db_path: Path = Path(".opsloop/opsloop.db")
    log_level: str = "INFO"

    # HTTP surface
    server_host: str = "127.0.0.1"
    server_port: int = 8430
    heartbeat_secret: str = ""

    # Control loop
    heartbeat_interval_seconds: int = 300
    trigger_timeout_seconds: float = 4.0
    reaction_timeout_seconds: float = 3.0
    recovery_timeout_seconds: float = 10.0

    # Self-healing
    stale_threshold_minutes: int = 30
    orphan_threshold_minutes: int = 60

    # Reactions
    reaction_lookback_minutes: int = 5
    reaction_event_limit: int = 50
    max_reaction_depth: int = 3  # reactions to reactions stop here

    # Worker pool
    worker_id: str = "worker-1"
    worker_poll_seconds: float = 10.0
    worker_max_consecutive_errors: int = 5
    worker_backoff_seconds: float = 60.0

    model_config = {"env_prefix": "OPSLOOP_"}


settings = OpsSettings()
