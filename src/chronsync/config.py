"""Configuration management for chronsync."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_DIR_NAME = "chronsync"
CONFIG_FILE_NAME = "config.json"
USER_CONFIG_DIR = Path.home() / ".config" / CONFIG_DIR_NAME


class Settings(BaseSettings):
    """Daemon settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHRONSYNC_",
        # Later files override earlier ones
        env_file=(str(USER_CONFIG_DIR / ".env"), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_path: Path | None = Field(
        default=None,
        description="Task configuration file (default: ~/.config/chronsync/config.json)",
    )
    debounce_ms: int = Field(
        default=500,
        ge=0,
        description="Quiet period after a config change before reloading",
    )
    lookahead_years: int = Field(
        default=5,
        ge=1,
        description="How far ahead to search for a task's next fire time",
    )
    webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="HTTP timeout for failure webhooks",
    )
    state_dir: Path = Field(
        default=Path.home() / ".chronsync",
        description="Directory holding the PID and log files",
    )

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "chronsync.pid"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "chronsync.log"

    def config_search_paths(self, explicit: Path | None = None) -> list[Path]:
        """Candidate config file locations, in priority order.

        Args:
            explicit: Path given on the command line.

        Returns:
            Expanded candidate paths without duplicates.
        """
        if explicit is not None:
            return [Path(explicit).expanduser()]

        candidates: list[Path] = []
        if self.config_path:
            candidates.append(self.config_path.expanduser())

        xdg_home = os.environ.get("XDG_CONFIG_HOME")
        if xdg_home:
            candidates.append(Path(xdg_home) / CONFIG_DIR_NAME / CONFIG_FILE_NAME)

        candidates.append(USER_CONFIG_DIR / CONFIG_FILE_NAME)

        unique: list[Path] = []
        for path in candidates:
            if path not in unique:
                unique.append(path)
        return unique

    def resolve_config_path(self, explicit: Path | None = None) -> Path:
        """Pick the config file to use.

        Returns the first existing candidate, or the first candidate when
        none exists (so ``init`` knows where to write).
        """
        candidates = self.config_search_paths(explicit)
        for path in candidates:
            if path.exists():
                return path.absolute()
        return candidates[0].absolute()


# Global settings instance
settings = Settings()
