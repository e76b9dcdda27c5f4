"""Configuration management for the health dashboard."""

import os
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


DEFAULT_E2E_COMMAND = ["npx", "cypress", "run", "--headless", "--browser", "chrome"]


class E2EConfig(BaseModel):
    """End-to-end runner process configuration."""
    command: list[str] = Field(default_factory=lambda: list(DEFAULT_E2E_COMMAND), description="Runner command and arguments")
    project_config_flag: str = Field(default="--config", description="Flag used to pass the target project")
    project_config_template: str = Field(default="projectId={project_id}", description="Value passed after the project flag")
    working_dir: Optional[str] = Field(default=None, description="Working directory for the runner")
    extra_env: Dict[str, str] = Field(default_factory=dict, description="Environment merged over the inherited one")
    shell: bool = Field(default=False, description="Run the command through the shell")

    timeout_ms: int = Field(default=10 * 60 * 1000, description="Wall-clock timeout per run")
    max_memory_mb: Optional[float] = Field(default=2048, description="Kill the run above this memory")
    max_cpu_percent: Optional[float] = Field(default=90, description="Warn above this CPU usage")
    check_interval_ms: int = Field(default=5000, description="Resource sampling interval")
    kill_grace_seconds: float = Field(default=5.0, description="Grace period between SIGTERM and SIGKILL")

    @field_validator("command")
    @classmethod
    def _command_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("e2e.command must not be empty")
        return value

    @field_validator("timeout_ms", "check_interval_ms")
    @classmethod
    def _positive_ms(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number of milliseconds")
        return value


class TelegramConfig(BaseModel):
    """Telegram notification settings."""
    enabled: bool = Field(default=True, description="Send notifications")
    bot_token: str = Field(default="", description="Bot token")
    chat_id: str = Field(default="", description="Target chat")
    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    initial_retry_delay_seconds: float = Field(default=1.0, ge=0, description="First backoff delay")

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.bot_token and self.chat_id)


class HealthwatchConfig(BaseModel):
    """Main configuration for the health dashboard."""

    log_level: str = Field(default="INFO", description="Logging level")
    db_path: str = Field(default="data/healthwatch.db", description="SQLite database file")

    # Single-flight lock
    lock_timeout_seconds: int = Field(default=30 * 60, gt=0, description="Lock expiry window")

    # Scheduling
    scheduler_enabled: bool = Field(default=False, description="Run the e2e sweep on a cron schedule")
    e2e_schedule_cron: str = Field(default="0 */6 * * *", description="Cron expression for the e2e sweep")

    # HTTP surface
    cron_secret: str = Field(default="", description="Bearer token for the cron endpoint")
    app_url: str = Field(default="http://localhost:8000", description="Public dashboard URL")

    e2e: E2EConfig = Field(default_factory=E2EConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)

    @field_validator("e2e_schedule_cron")
    @classmethod
    def _five_field_cron(cls, value: str) -> str:
        if len(value.split()) != 5:
            raise ValueError(f"Invalid cron expression: {value}")
        return value


def load_config(config_path: Optional[str] = None) -> HealthwatchConfig:
    """Load configuration from file or environment variables."""
    if config_path is None:
        config_path = os.getenv("HEALTHWATCH_CONFIG", "config/healthwatch.yaml")

    config_data = {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

    env_overrides = {
        "log_level": os.getenv("LOG_LEVEL"),
        "db_path": os.getenv("HEALTHWATCH_DB_PATH"),
        "lock_timeout_seconds": os.getenv("HEALTHWATCH_LOCK_TIMEOUT_SECONDS"),
        "cron_secret": os.getenv("CRON_SECRET"),
        "app_url": os.getenv("HEALTHWATCH_APP_URL"),
        "scheduler_enabled": os.getenv("HEALTHWATCH_SCHEDULER_ENABLED"),
    }
    for key, value in env_overrides.items():
        if value is not None:
            if key in ["lock_timeout_seconds"]:
                value = int(value)
            elif key in ["scheduler_enabled"]:
                value = value.lower() in ("true", "1", "yes")
            config_data[key] = value

    e2e_data = dict(config_data.get("e2e") or {})
    if os.getenv("E2E_TIMEOUT_MS") is not None:
        e2e_data["timeout_ms"] = int(os.environ["E2E_TIMEOUT_MS"])
    config_data["e2e"] = e2e_data

    telegram_data = dict(config_data.get("telegram") or {})
    for key, env_name in (("bot_token", "TELEGRAM_BOT_TOKEN"), ("chat_id", "TELEGRAM_CHAT_ID")):
        if os.getenv(env_name):
            telegram_data[key] = os.environ[env_name]
    config_data["telegram"] = telegram_data

    return HealthwatchConfig(**config_data)


def get_config() -> HealthwatchConfig:
    """Get the configuration instance."""
    return load_config()
