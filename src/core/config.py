"""Application settings for the generation pipeline."""

import json
import os
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TRUSTED_DOMAINS = [
    "edu.co",
    "edu.mx",
    "edu.ar",
    "edu.pe",
    "edu.ec",
    "khanacademy.org",
    "es.khanacademy.org",
    "coursera.org",
    "edx.org",
    "icfes.gov.co",
    "mineducacion.gov.co",
    "colombiaaprende.edu.co",
    "santillana.com.co",
    "sm.com.co",
    "norma.com.co",
    "wikipedia.org",
    "es.wikipedia.org",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env"), env_file_encoding="utf-8")

    # App
    APP_NAME: str = "Superate"
    ENVIRONMENT: str = "development"  # development | production | test

    # Generative endpoint (Gemini through Vertex AI or an API key)
    GEMINI_MODEL: str = "gemini-2.5-flash"
    GEMINI_PROJECT_ID: str = "superate-ia"
    GEMINI_REGION: str = "us-central1"
    # GEMINI_API_KEY is optional; when absent Vertex AI + ADC is used
    GEMINI_API_KEY: str | None = None
    # Service account file used only in local development
    GOOGLE_APPLICATION_CREDENTIALS_PATH: str | None = None
    PROMPT_VERSION: str = "2.5.0"

    # Scheduler
    GENERATION_MAX_REQUESTS_PER_WINDOW: int = 10
    GENERATION_WINDOW_SECONDS: float = 60.0
    GENERATION_MIN_DELAY_SECONDS: float = 2.0
    GENERATION_MAX_RETRIES: int = 3
    GENERATION_TIMEOUT_SECONDS: float = 420.0
    GENERATION_TIMEOUT_MULTIPLE_IMAGES_SECONDS: float = 600.0
    GENERATION_RETRY_DELAY_SECONDS: float = 8.0
    GENERATION_RATE_LIMIT_PENALTY_SECONDS: float = 45.0
    GENERATION_TIMEOUT_PENALTY_SECONDS: float = 15.0

    # External search providers
    YOUTUBE_API_KEY: str | None = None
    GOOGLE_CSE_API_KEY: str | None = None
    GOOGLE_CSE_ID: str | None = None
    WEB_SEARCH_MAX_PAGES: int = 3

    # Resource cache capacities and per-request return counts
    VIDEO_CACHE_CAPACITY: int = 20
    VIDEOS_PER_TOPIC: int = 7
    LINK_CACHE_CAPACITY: int = 50
    LINKS_PER_TOPIC: int = 10
    EXERCISE_CACHE_CAPACITY: int = 20
    EXERCISES_PER_TOPIC: int = 5

    # Validation gate
    # Accept list or CSV/JSON string from env; normalized to list[str] by validators
    TRUSTED_DOMAINS: list[str] | str = DEFAULT_TRUSTED_DOMAINS
    LINK_PROBE_TIMEOUT_SECONDS: float = 10.0
    LINK_PROBE_PAUSE_SECONDS: float = 0.5

    # Orchestration
    ORCHESTRATION_TIMEOUT_SECONDS: float = 900.0
    JUSTIFICATION_DELAY_SECONDS: float = 2.0

    # Persistence
    DATABASE_URL: str = "sqlite+aiosqlite:///./superate.db"
    STORE_TIMEOUT_SECONDS: float = 30.0

    @field_validator("TRUSTED_DOMAINS", mode="before")
    @classmethod
    def assemble_trusted_domains(cls, v: object) -> list[str]:
        """Allow list, CSV string, or JSON array string for trusted domains."""
        if isinstance(v, list):
            return [str(i).strip().lower() for i in v]
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    parsed = json.loads(s)
                except json.JSONDecodeError as e:
                    raise ValueError(
                        "TRUSTED_DOMAINS must be a CSV list or JSON array string"
                    ) from e
                if not isinstance(parsed, list):
                    raise ValueError("TRUSTED_DOMAINS JSON must be a list")
                return [str(i).strip().lower() for i in parsed]
            # CSV fallback
            return [i.strip().lower() for i in s.split(",") if i.strip()]
        raise ValueError("Invalid TRUSTED_DOMAINS type; expected str or list[str]")

    @model_validator(mode="after")
    def _validate_cache_sizes(self) -> "Settings":
        """Ensure each per-topic return count fits inside its cache capacity."""
        if isinstance(self.TRUSTED_DOMAINS, str):
            self.TRUSTED_DOMAINS = self.assemble_trusted_domains(self.TRUSTED_DOMAINS)
        pairs = (
            ("VIDEOS_PER_TOPIC", self.VIDEOS_PER_TOPIC, self.VIDEO_CACHE_CAPACITY),
            ("LINKS_PER_TOPIC", self.LINKS_PER_TOPIC, self.LINK_CACHE_CAPACITY),
            (
                "EXERCISES_PER_TOPIC",
                self.EXERCISES_PER_TOPIC,
                self.EXERCISE_CACHE_CAPACITY,
            ),
        )
        for name, count, capacity in pairs:
            if count < 1 or count > capacity:
                raise ValueError(
                    f"{name} must be between 1 and its cache capacity ({capacity})"
                )
        if self.GENERATION_MAX_RETRIES < 1:
            raise ValueError("GENERATION_MAX_RETRIES must be at least 1")
        if self.GENERATION_MAX_REQUESTS_PER_WINDOW < 1:
            raise ValueError("GENERATION_MAX_REQUESTS_PER_WINDOW must be at least 1")
        return self

    @property
    def service_account_email(self) -> str:
        return f"{self.GEMINI_PROJECT_ID}@appspot.gserviceaccount.com"


@lru_cache
def get_settings() -> Settings:
    env = os.getenv("ENVIRONMENT", "development").lower()
    if env not in {"development", "production", "test"}:
        raise ValueError("ENVIRONMENT must be 'development', 'production', or 'test'")

    if env == "production":
        env_file = ".env.prod"
    elif env == "development":
        env_file = ".env.dev"
    else:
        # test environment - no env file needed, use defaults
        env_file = ""

    # Local credential files are a development convenience only
    if env == "production" and os.getenv("GOOGLE_APPLICATION_CREDENTIALS_PATH"):
        raise RuntimeError(
            "GOOGLE_APPLICATION_CREDENTIALS_PATH must not be set in production; "
            "use application default credentials"
        )

    # pydantic-settings supports _env_file at runtime; mypy doesn't type it.
    return Settings(_env_file=env_file or None)  # type: ignore[call-arg]
