from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    APP_NAME: str = "Quest Coach"
    DATABASE_URL: str = "sqlite:///data/quest_coach.db"
    DATA_DIR: Path = Path("data")
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:8050",
    ]

    # Authoring collaborator
    AI_PROVIDER: str = "openai"  # openai | anthropic | fallback
    AI_API_KEY: str | None = None
    AI_REASONING_MODEL: str | None = None
    AI_UTILITY_MODEL: str | None = None
    COLLABORATOR_TIMEOUT_SECONDS: float = 45.0
    COLLABORATOR_RETRY_BACKOFF_SECONDS: float = 2.0

    # Engine policy
    GOAL_DEFAULT_TIMELINE_DAYS: int = 90
    GOAL_MIN_TIMELINE_DAYS: int = 7
    GOAL_MAX_TIMELINE_DAYS: int = 365
    MAX_QUEST_REGENERATIONS_PER_DAY: int = 3
    QUEST_VALUE_CLAMP_MULTIPLE: float = 10.0
    MILESTONE_DEFAULT_BONUS_XP: int = 250

    # Scheduler
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_TIMEZONE: str = "UTC"
    QUEST_GENERATION_TIME: str = "00:00"  # HH:MM, local to SCHEDULER_TIMEZONE
    WEEKLY_REVIEW_DAY: int = 0  # 0 = Sunday ... 6 = Saturday
    SCHEDULER_POLL_SECONDS: int = 60
    BATCH_MAX_WORKERS: int = 8

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_scheduler_configuration(self) -> None:
        errors: list[str] = []
        parts = (self.QUEST_GENERATION_TIME or "").strip().split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            errors.append("QUEST_GENERATION_TIME must use HH:MM")
        elif not (0 <= int(parts[0]) <= 23 and 0 <= int(parts[1]) <= 59):
            errors.append("QUEST_GENERATION_TIME is out of range")
        if not 0 <= int(self.WEEKLY_REVIEW_DAY) <= 6:
            errors.append("WEEKLY_REVIEW_DAY must be between 0 (Sunday) and 6 (Saturday)")
        if int(self.MAX_QUEST_REGENERATIONS_PER_DAY) < 0:
            errors.append("MAX_QUEST_REGENERATIONS_PER_DAY must not be negative")
        if int(self.BATCH_MAX_WORKERS) < 1:
            errors.append("BATCH_MAX_WORKERS must be at least 1")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Invalid scheduler configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
