from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Plan Adherence Engine"
    SECRET_KEY: str = "change-me-in-production"
    DATABASE_URL: str = "sqlite:///data/adherence.db"
    DATA_DIR: Path = Path("data")
    CORS_ORIGINS: list[str] = [
        "http://localhost:8050",
        "http://localhost:8001",
        "https://localhost:8050",
    ]
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_HOURS: int = 72
    PLAN_CUTOFF_HOUR: int = 14
    STREAK_GRACE_DAYS: int = 1  # 0 = streak must include today, 1 = yesterday still live
    GOAL_SATISFIED_RATIO: float = 0.9
    ATOMIC_RETRY_ATTEMPTS: int = 3
    CHAT_TOKENS_PER_MESSAGE: int = 100
    POPULAR_ITEMS_LIMIT: int = 5
    VERIFICATION_MATCH_SCORE: int = 70
    SECURITY_HEADERS_ENABLED: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def validate_security_configuration(self) -> None:
        errors: list[str] = []
        if not 0 <= int(self.PLAN_CUTOFF_HOUR) <= 24:
            errors.append("PLAN_CUTOFF_HOUR must be between 0 and 24")
        if int(self.STREAK_GRACE_DAYS) < 0:
            errors.append("STREAK_GRACE_DAYS must not be negative")
        if not 2 <= int(self.ATOMIC_RETRY_ATTEMPTS) <= 3:
            errors.append("ATOMIC_RETRY_ATTEMPTS must be 2 or 3")
        if int(self.CHAT_TOKENS_PER_MESSAGE) < 1:
            errors.append("CHAT_TOKENS_PER_MESSAGE must be at least 1")
        if not float(self.GOAL_SATISFIED_RATIO) > 0:
            errors.append("GOAL_SATISFIED_RATIO must be greater than 0")
        if int(self.POPULAR_ITEMS_LIMIT) < 1:
            errors.append("POPULAR_ITEMS_LIMIT must be at least 1")
        if not 0 <= int(self.VERIFICATION_MATCH_SCORE) <= 100:
            errors.append("VERIFICATION_MATCH_SCORE must be between 0 and 100")
        if self.is_production_like and self.SECRET_KEY == "change-me-in-production":
            errors.append("SECRET_KEY must be changed from the default value")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Invalid configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
