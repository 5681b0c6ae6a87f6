"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".productivity_agent")
    ai_base_url: str | None = None
    ai_api_token: str | None = None
    chat_model: str = "@cf/meta/llama-3.3-70b-instruct"
    embedding_model: str = "@cf/baai/bge-base-en-v1.5"
    ai_timeout: float = 30.0
    vector_index_url: str | None = None
    history_limit: int = 5
    scheduler_interval: float = 3600.0
    scheduled_workflows: list[str] = field(default_factory=lambda: ["deadline_scan"])
    reconnect_delay: float = 3.0
    log_level: str = "INFO"
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if data_dir := os.environ.get("PA_DATA_DIR"):
            config.data_dir = Path(data_dir)

        config.ai_base_url = os.environ.get("PA_AI_BASE_URL")
        config.ai_api_token = os.environ.get("PA_AI_API_TOKEN")

        if model := os.environ.get("PA_CHAT_MODEL"):
            config.chat_model = model

        if model := os.environ.get("PA_EMBEDDING_MODEL"):
            config.embedding_model = model

        if timeout := os.environ.get("PA_AI_TIMEOUT"):
            config.ai_timeout = float(timeout)

        config.vector_index_url = os.environ.get("PA_VECTOR_INDEX_URL")

        if limit := os.environ.get("PA_HISTORY_LIMIT"):
            config.history_limit = int(limit)

        if interval := os.environ.get("PA_SCHEDULER_INTERVAL"):
            config.scheduler_interval = float(interval)

        if workflows := os.environ.get("PA_SCHEDULED_WORKFLOWS"):
            config.scheduled_workflows = [w.strip() for w in workflows.split(",") if w.strip()]

        if delay := os.environ.get("PA_RECONNECT_DELAY"):
            config.reconnect_delay = float(delay)

        if level := os.environ.get("PA_LOG_LEVEL"):
            config.log_level = level.upper()

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("PA_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
