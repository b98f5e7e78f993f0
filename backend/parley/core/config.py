from typing import Annotated, Any
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field, AnyUrl, BeforeValidator


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",")]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    APP_NAME: str = "Parley"
    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str

    # OpenAI (text-completion collaborator for classify/extract)
    OPENAI_API_KEY: str
    OPENAI_MODEL: str = "gpt-4o-mini"
    COMPLETION_TIMEOUT_SECONDS: float = 30.0

    # Google Workspace provider (Gmail send + Calendar booking)
    GOOGLE_ACCESS_TOKEN: str = ""
    GOOGLE_CALENDAR_ID: str = "primary"

    # Shared secret for the cron trigger endpoint
    CRON_SECRET: str = ""

    # Time handling
    DEFAULT_TIMEZONE: str = "America/New_York"
    BUSINESS_HOURS_START: int = 9
    BUSINESS_HOURS_END: int = 17
    PROPOSAL_SLOT_COUNT: int = 3
    PROPOSAL_WINDOW_DAYS: int = 7

    # SLA rules
    SLA_DEFAULT_HOURS: float = 24.0
    SLA_WARNING_FRACTION: float = 0.75
    SLA_ADAPTIVE_MIN_RESPONSES: int = 3
    SLA_ADAPTIVE_MULTIPLIER: float = 1.5
    MAX_FOLLOW_UP_ATTEMPTS: int = 3

    # Draft queue
    DRAFT_EXPIRY_HOURS: int = 48
    DRAFT_MAX_RETRIES: int = 3

    # Entity linking thresholds (0-100)
    LINK_AUTO_THRESHOLD: int = 85
    LINK_SUGGEST_THRESHOLD: int = 60

    # Jobs
    JOB_BATCH_SIZE: int = 50
    REMINDER_LEAD_HOURS: int = 24
    NO_SHOW_GRACE_MINUTES: int = 30
    STUCK_REQUEST_HOURS: int = 48

    # Kill switch: when off, approved drafts stay queued and nothing is executed
    SCHEDULER_AUTOMATION_ENABLED: bool = True

    FRONTEND_HOST: str = "http://localhost:5173"
    BACKEND_CORS_ORIGINS: Annotated[list[AnyUrl] | str, BeforeValidator(parse_cors)] = [
        "http://localhost:8000"
    ]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ALL_CORS_ORIGINS(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS] + [
            self.FRONTEND_HOST
        ]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
