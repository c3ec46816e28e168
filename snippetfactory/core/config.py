import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = "sqlite:///./snippetfactory.db"
    TEST_DATABASE_URL: Optional[str] = None
    DB_TIMEOUT_SECONDS: float = 10.0  # pool checkout + SQLite busy timeout

    # Session auth (HS256 JWT, X-User-Id fallback for dev/tests)
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHMS: List[str] = ["HS256"]
    ALLOW_USER_ID_HEADER: bool = True

    # Programmatic API access
    API_KEY_PREFIX: str = "sf_"
    RATE_LIMIT_WINDOW_SECONDS: int = 3600

    # Usage recording
    USAGE_RECORD_TIMEOUT_SECONDS: float = 2.0
    USAGE_RECORDER_WORKERS: int = 4

    # Plans
    PLAN_REGISTRY_PATH: Optional[str] = None  # JSON override of the built-in tiers
    UPGRADE_URL: str = "/pricing"

    # Cron hook (subscription expiry sweep)
    CRON_SECRET: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("snippetfactory")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
        "CRON_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
