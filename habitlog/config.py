"""Runtime settings for habitlog.

All environment reads happen here so the app, the storage layer and the bank
client receive one resolved ``Settings`` object instead of reading globals.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent

STORAGE_BACKENDS = ("file", "blob", "sql")

_TRUTHY = {"1", "true", "t", "yes", "y", "on"}


@dataclass
class Settings:
    storage: str = "file"
    data_dir: str = "data"
    db_path: str = ""  # empty = <data_dir>/habitlog.db

    # Shared-secret keys (query param / header); empty bank_key disables the check
    csv_key: str = "change-me"
    reset_key: str = ""
    screen_time_key: str = ""
    bank_key: str = ""

    # SpareBank 1 personal banking API
    sb1_api_base: str = "https://api.sparebank1.no"
    sb1_client_id: str = ""
    sb1_client_secret: str = ""
    sb1_refresh_token: str = ""
    sb1_default_account_key: str = ""
    bank_keepalive: bool = False

    # Note shortening
    openai_api_key: str = ""
    openai_note_model: str = "gpt-4.1-mini"

    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 3000

    def __post_init__(self) -> None:
        if not self.db_path:
            self.db_path = str(Path(self.data_dir) / "habitlog.db")
        if not self.reset_key:
            self.reset_key = self.csv_key
        if not self.screen_time_key:
            self.screen_time_key = self.csv_key
        if self.storage not in STORAGE_BACKENDS:
            raise ValueError(f"Unknown storage backend {self.storage!r}; expected one of {STORAGE_BACKENDS}")

    @property
    def bank_configured(self) -> bool:
        return bool(self.sb1_client_id and self.sb1_client_secret and self.sb1_refresh_token)

    def ensure_dirs(self) -> None:
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def settings_from_env() -> Settings:
    """Assemble settings from env vars + defaults."""
    try:
        port = int(_env("PORT", "3000"))
    except ValueError:
        port = 3000
    return Settings(
        storage=_env("HABITLOG_STORAGE", "file").lower(),
        data_dir=_env("HABITLOG_DATA_DIR", "data"),
        db_path=_env("HABITLOG_DB_PATH"),
        csv_key=_env("CSV_KEY", "change-me"),
        reset_key=_env("RESET_KEY"),
        screen_time_key=_env("SCREEN_TIME_KEY"),
        bank_key=_env("BANK_KEY"),
        sb1_api_base=_env("SB1_API_BASE", "https://api.sparebank1.no"),
        sb1_client_id=_env("SB1_CLIENT_ID"),
        sb1_client_secret=_env("SB1_CLIENT_SECRET"),
        sb1_refresh_token=_env("SB1_REFRESH_TOKEN"),
        sb1_default_account_key=_env("SB1_DEFAULT_ACCOUNT_KEY"),
        bank_keepalive=_env("BANK_KEEPALIVE").lower() in _TRUTHY,
        openai_api_key=_env("OPENAI_API_KEY"),
        openai_note_model=_env("OPENAI_NOTE_MODEL", "gpt-4.1-mini"),
        log_level=_env("HABITLOG_LOG_LEVEL", "INFO").upper(),
        host=_env("HOST", "127.0.0.1"),
        port=port,
    )


def load_settings() -> Settings:
    """Load ``.env`` (secrets live there; the file itself is ignored by git) and resolve settings."""
    load_dotenv(dotenv_path=PROJECT_ROOT / ".env", override=False)
    return settings_from_env()
