"""Configuration settings for WordPlay."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)


DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
EXPORTS_DIR = DATA_DIR / "exports"

# Scheduling defaults
INITIAL_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3
CONFLICT_WINDOW_SECONDS = 300  # 5 minutes


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    for directory in [DATA_DIR, EXPORTS_DIR]:
        directory.mkdir(parents=True, exist_ok=True)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class PathSettings:
    """Path configuration settings."""
    base_dir: Path = BASE_DIR
    data_dir: Path = DATA_DIR
    exports_dir: Path = EXPORTS_DIR


@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = os.getenv("DATABASE_URL", "sqlite:///wordplay.db")
    echo: bool = _env_flag("DATABASE_ECHO")


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


@dataclass
class SchedulerSettings:
    """Spaced repetition settings."""
    initial_ease_factor: float = float(os.getenv("INITIAL_EASE_FACTOR", str(INITIAL_EASE_FACTOR)))
    min_ease_factor: float = float(os.getenv("MIN_EASE_FACTOR", str(MIN_EASE_FACTOR)))
    new_items_limit: int = int(os.getenv("NEW_ITEMS_LIMIT", "10"))
    weak_items_limit: int = int(os.getenv("WEAK_ITEMS_LIMIT", "10"))
    mastery_threshold: int = int(os.getenv("MASTERY_THRESHOLD", "80"))


@dataclass
class SyncSettings:
    """Cross-device sync settings."""
    folder_name: str = os.getenv("SYNC_FOLDER_NAME", "WordPlay")
    file_name: str = os.getenv("SYNC_FILE_NAME", "wordplay-data.json")
    conflict_window_seconds: float = float(
        os.getenv("SYNC_CONFLICT_WINDOW_SECONDS", str(CONFLICT_WINDOW_SECONDS))
    )
    bump_identical_records: bool = _env_flag("SYNC_BUMP_IDENTICAL_RECORDS")
    debounce_seconds: float = float(os.getenv("SYNC_DEBOUNCE_SECONDS", "1.0"))
    drive_api_url: str = os.getenv("GOOGLE_DRIVE_API_URL", "https://www.googleapis.com/drive/v3")
    drive_upload_url: str = os.getenv(
        "GOOGLE_DRIVE_UPLOAD_URL", "https://www.googleapis.com/upload/drive/v3"
    )
    access_token: str = os.getenv("GOOGLE_ACCESS_TOKEN", "")
    request_timeout: float = float(os.getenv("SYNC_REQUEST_TIMEOUT", "30"))


@dataclass
class MonitoringSettings:
    """Prometheus metrics settings."""
    enabled: bool = _env_flag("METRICS_ENABLED")
    port: int = int(os.getenv("METRICS_PORT", "9090"))


def get_path_settings() -> PathSettings:
    """Get path settings."""
    return PathSettings()


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_scheduler_settings() -> SchedulerSettings:
    """Get scheduler settings."""
    return SchedulerSettings()


def get_sync_settings() -> SyncSettings:
    """Get sync settings."""
    return SyncSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    paths: PathSettings = field(default_factory=get_path_settings)
    database: DatabaseSettings = field(default_factory=get_database_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    scheduler: SchedulerSettings = field(default_factory=get_scheduler_settings)
    sync: SyncSettings = field(default_factory=get_sync_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.scheduler.min_ease_factor <= 0:
            raise ValueError("MIN_EASE_FACTOR must be positive")

        if self.scheduler.initial_ease_factor < self.scheduler.min_ease_factor:
            raise ValueError("INITIAL_EASE_FACTOR cannot be lower than MIN_EASE_FACTOR")

        if self.scheduler.new_items_limit < 0 or self.scheduler.weak_items_limit < 0:
            raise ValueError("NEW_ITEMS_LIMIT and WEAK_ITEMS_LIMIT cannot be negative")

        if not 0 <= self.scheduler.mastery_threshold <= 100:
            raise ValueError("MASTERY_THRESHOLD must be between 0 and 100")

        if self.sync.conflict_window_seconds < 0:
            raise ValueError("SYNC_CONFLICT_WINDOW_SECONDS cannot be negative")

        if self.sync.debounce_seconds < 0:
            raise ValueError("SYNC_DEBOUNCE_SECONDS cannot be negative")

        if not self.sync.file_name or not self.sync.folder_name:
            raise ValueError("SYNC_FOLDER_NAME and SYNC_FILE_NAME are required")


# Create global settings instance
settings = Settings()
settings.validate()
