"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class DevmindSettings(BaseSettings):
    anthropic_api_key: str = ""
    default_model: str = "claude-sonnet-4-20250514"
    workspace_dir: Path = Path(".devmind")
    log_level: str = "INFO"

    # Telemetry
    metrics_backend: str = "json"  # json, sqlite, memory
    metrics_history_limit: int = 100
    optimization_history_limit: int = 10

    # Optimization loop
    cooldown_hours: float = 24.0
    confidence_threshold: float = 0.7
    suggestion_timeout_seconds: float = 60.0
    analysis_interval_hours: float = 24.0

    # Post-mutation verification
    verification_error_lookback: int = 5
    verification_window_seconds: float = 0.0  # 0 = check synchronously

    # Artifacts live at {workspace_dir}/agents/<name>-agent{artifact_suffix}
    artifact_suffix: str = ".py"

    model_config = {"env_prefix": "DEVMIND_"}

    @property
    def agents_dir(self) -> Path:
        return self.workspace_dir / "agents"

    @property
    def backups_dir(self) -> Path:
        return self.workspace_dir / "backups"

    @property
    def reports_dir(self) -> Path:
        return self.workspace_dir / "reports"

    @property
    def db_path(self) -> Path:
        return self.workspace_dir / "devmind.db"

    @property
    def metrics_path(self) -> Path:
        return self.workspace_dir / "agent_metrics.json"


settings = DevmindSettings()
