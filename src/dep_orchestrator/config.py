"""Configuration loading from environment variables."""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".dep_orchestrator" / "dpo.db")
    workspace_root: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    install_timeout: float = 300.0
    test_timeout: float = 300.0
    lint_timeout: float = 120.0
    cli_check_timeout: float = 30.0
    conflict_threshold: int = 10
    missed_job_grace: float = 5.0
    results_retention: int = 100
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("DPO_DB_PATH"):
            config.db_path = Path(db)

        if root := os.environ.get("DPO_WORKSPACE_ROOT"):
            config.workspace_root = Path(root)

        if timeout := os.environ.get("DPO_INSTALL_TIMEOUT"):
            config.install_timeout = float(timeout)

        if timeout := os.environ.get("DPO_TEST_TIMEOUT"):
            config.test_timeout = float(timeout)

        if timeout := os.environ.get("DPO_LINT_TIMEOUT"):
            config.lint_timeout = float(timeout)

        if timeout := os.environ.get("DPO_CLI_CHECK_TIMEOUT"):
            config.cli_check_timeout = float(timeout)

        if threshold := os.environ.get("DPO_CONFLICT_THRESHOLD"):
            config.conflict_threshold = int(threshold)

        if grace := os.environ.get("DPO_MISSED_JOB_GRACE"):
            config.missed_job_grace = float(grace)

        if retention := os.environ.get("DPO_RESULTS_RETENTION"):
            config.results_retention = int(retention)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("DPO_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
