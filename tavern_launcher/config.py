"""
Configuration for the launcher service.

Loads settings from environment variables with sensible defaults.
Launcher state is stored in ~/.tavern-launcher/, managed versions in ~/st-versions/
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _home() -> Path:
    return Path(os.environ.get("HOME") or os.environ.get("USERPROFILE") or "/data/data/com.termux/files/home")


@dataclass
class Config:
    """Launcher configuration."""

    # Paths
    home_dir: Path = field(default_factory=_home)
    data_dir: Path = None
    versions_dir: Path = None
    db_path: Path = None
    launcher_log: Path = None
    static_dir: Path = Path(__file__).parent / "static"

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
    log_buffer_size: int = int(os.environ.get("LOG_BUFFER_SIZE", "500"))

    # Control endpoint
    host: str = os.environ.get("LAUNCHER_HOST", "0.0.0.0")
    port: int = int(os.environ.get("LAUNCHER_PORT", "8080"))
    bind_retries: int = int(os.environ.get("BIND_RETRIES", "3"))
    bind_retry_delay: float = float(os.environ.get("BIND_RETRY_DELAY", "1.5"))

    # Managed application
    app_name: str = "sillytavern"
    app_port: int = int(os.environ.get("APP_PORT", "8000"))
    app_repo_url: str = os.environ.get("APP_REPO_URL", "https://github.com/SillyTavern/SillyTavern.git")
    app_command: tuple = ("node", "server.js", "--listen", "--whitelist", "false")
    health_path: str = "/version"
    probe_timeout: float = float(os.environ.get("PROBE_TIMEOUT", "2.0"))
    ready_interval: float = float(os.environ.get("READY_INTERVAL", "0.5"))
    ready_attempts: int = int(os.environ.get("READY_ATTEMPTS", "120"))
    stop_grace: float = float(os.environ.get("STOP_GRACE", "5"))
    reclaim_delay: float = float(os.environ.get("RECLAIM_DELAY", "1.0"))
    prespawn_delay: float = float(os.environ.get("PRESPAWN_DELAY", "0.5"))
    clone_timeout: int = int(os.environ.get("CLONE_TIMEOUT", "600"))
    npm_timeout: int = int(os.environ.get("NPM_TIMEOUT", "900"))

    # Port reclamation fallback: kill processes whose command line matches this
    reclaim_pattern: str = os.environ.get("RECLAIM_PATTERN", r"tavern_launcher")

    # API aggregation
    account_api_url: str = os.environ.get("ACCOUNT_API_URL", "https://user.daidaibird.top")
    upstream_api_url: str = os.environ.get("UPSTREAM_API_URL", "https://api.daidaibird.top")
    account_timeout: float = float(os.environ.get("ACCOUNT_TIMEOUT", "15"))
    upstream_timeout: float = float(os.environ.get("UPSTREAM_TIMEOUT", "120"))

    def search_paths(self) -> list[Path]:
        """Fixed locations where existing installations are commonly found."""
        termux_home = Path("/data/data/com.termux/files/home")
        return [
            self.home_dir / "SillyTavern",
            self.home_dir / "sillytavern",
            self.home_dir / "st",
            self.home_dir / "ST",
            termux_home / "SillyTavern",
            termux_home / "sillytavern",
        ]

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        if self.data_dir is None:
            self.data_dir = Path(os.environ.get("LAUNCHER_DATA_DIR", self.home_dir / ".tavern-launcher"))
        if self.versions_dir is None:
            self.versions_dir = Path(os.environ.get("VERSIONS_DIR", self.home_dir / "st-versions"))
        self.db_path = self.data_dir / "launcher.db"
        self.launcher_log = self.data_dir / "launcher.log"

        # Create directories
        self.data_dir.mkdir(parents=True, exist_ok=True)


config = Config()
