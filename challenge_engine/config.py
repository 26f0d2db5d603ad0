from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    generation_timeout_seconds: float = 20.0

    secret_key: str = "dev-secret-change-me"
    database_path: str = "data/challenges.db"

    # JWT settings (tokens are issued by the identity provider)
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24  # 24 hours

    redis_url: str = "redis://localhost:6379/0"
    celery_task_always_eager: bool = False

    # Per-endpoint request ceilings
    start_rate_limit: int = 10
    start_rate_window_seconds: int = 60 * 60
    answer_rate_limit: int = 100
    answer_rate_window_seconds: int = 60

    # Abuse heuristics
    max_daily_challenges: int = 10
    challenge_cooldown_seconds: int = 60 * 60
    max_daily_perfect_scores: int = 5
    min_advanced_perfect_seconds: int = 300
    fraud_penalty_multiplier: float = 0.5

    class Config:
        env_file = ".env"


settings = Settings()
