import logging
import os
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = "analytics.sqlite3"
DEFAULT_POOL_SIZE = 10
DEFAULT_POOL_TIMEOUT = 30.0
DEFAULT_PORT = 3000


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _split_origins(raw: str) -> list[str]:
    return [o.strip() for o in raw.split(",") if o.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    sqlite_path: str = DEFAULT_SQLITE_PATH
    pool_size: int = DEFAULT_POOL_SIZE
    pool_timeout: float = DEFAULT_POOL_TIMEOUT
    port: int = DEFAULT_PORT
    # "*" lets any origin call the beacon / read endpoints
    cors_allow_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @property
    def is_postgres(self) -> bool:
        return self.database_url.startswith(("postgres://", "postgresql://"))

    @property
    def sqlite_file(self) -> str:
        """
        A sqlite:///path DATABASE_URL wins over ANALYTICS_DB.
        """
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[len("sqlite:///"):]
        return self.sqlite_path

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Read settings from the environment, after loading .env if one exists.
        Variables already set in the environment are not overridden.
        """
        load_dotenv(find_dotenv(usecwd=True))
        return cls(
            database_url=os.environ.get("DATABASE_URL", "").strip(),
            sqlite_path=os.environ.get("ANALYTICS_DB", DEFAULT_SQLITE_PATH),
            pool_size=max(1, _env_int("DB_POOL_SIZE", DEFAULT_POOL_SIZE)),
            pool_timeout=_env_float("DB_POOL_TIMEOUT", DEFAULT_POOL_TIMEOUT),
            port=_env_int("PORT", DEFAULT_PORT),
            cors_allow_origins=_split_origins(os.environ.get("CORS_ALLOW_ORIGINS", "*")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
