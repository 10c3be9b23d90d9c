import logging
from pathlib import Path
from typing import List, Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "challenge_quests.json"


class Settings(BaseSettings):
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    QUEST_CATALOG_PATH: str = str(DEFAULT_CATALOG_PATH)

    CHALLENGE_LENGTH_DAYS: int = 7
    TAB_BONUS_PERCENTAGE: int = 5

    # Push relay; unset means notifications are only logged
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0
    NOTIFICATION_URL_PATH: str = "/7-day-challenge"

    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return (self.ENV or "").lower() == "production"


settings = Settings()

_ALWAYS_REQUIRED = ["QUEST_CATALOG_PATH"]
_PRODUCTION_REQUIRED = ["DATABASE_URL", "NOTIFICATION_WEBHOOK_URL"]


def _problems(cfg: Settings) -> List[str]:
    required = _ALWAYS_REQUIRED + (_PRODUCTION_REQUIRED if cfg.is_production else [])
    missing = [key for key in required if not getattr(cfg, key, None)]

    problems = []
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")
    if cfg.QUEST_CATALOG_PATH and not Path(cfg.QUEST_CATALOG_PATH).is_file():
        problems.append(f"Quest catalog not found at {cfg.QUEST_CATALOG_PATH}")
    return problems


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Check required keys and rule bounds.

    Missing keys raise RuntimeError in strict mode and are logged as warnings
    otherwise. Out-of-range rule values always raise. Only key names are
    logged, never values.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("quest_engine")
    strict_mode = cfg.CONFIG_STRICT if strict is None else strict

    if cfg.CHALLENGE_LENGTH_DAYS < 1:
        raise RuntimeError("CHALLENGE_LENGTH_DAYS must be at least 1")
    if not 0 <= cfg.TAB_BONUS_PERCENTAGE <= 100:
        raise RuntimeError("TAB_BONUS_PERCENTAGE must be between 0 and 100")

    problems = _problems(cfg)
    if problems and strict_mode:
        raise RuntimeError("; ".join(problems))
    for problem in problems:
        log.warning(problem)
    return True
