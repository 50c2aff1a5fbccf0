"""Scholar Tokens — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class TokenSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (Token Registry) ────────────────────────────
    postgres_user: str = "scholar_tokens"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "token_registry"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    # Full URL override (e.g. sqlite:///./tokens.db for local runs)
    database_url: str = ""

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Trust assessment collaborator ──────────────────────────
    trust_assessor_enabled: bool = False
    trust_assessor_url: str = "http://localhost:8200"
    trust_assessor_api_key: str = ""
    trust_assessor_timeout_seconds: float = 20.0

    # ── Scoring policy ─────────────────────────────────────────
    qualifying_grade: float = 3.5
    max_grade: float = 4.0
    base_weight_gpa: int = 100
    base_weight_research: int = 150
    base_weight_leadership: int = 120
    grade_bonus_per_point: float = 200.0
    confidence_floor: float = 70.0
    confidence_bonus_rate: float = 0.5
    manual_verification_confidence: float = 85.0
    composite_carryover_rate: float = 0.25
    level_thresholds: list[int] = [0, 250, 500, 1000, 1750, 2750, 4000, 5500, 7500, 10000]
    rarity_thresholds: dict[str, int] = {
        "common": 0,
        "rare": 250,
        "epic": 500,
        "legendary": 1000,
        "mythic": 2500,
    }

    # ── Stacking ───────────────────────────────────────────────
    stacking_rules_path: str = ""

    # ── Concurrency ────────────────────────────────────────────
    max_write_attempts: int = 5

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = TokenSettings()
