from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MULTI_PART_TLDS: tuple[str, ...] = (
    "co.uk",
    "co.nz",
    "co.za",
    "co.jp",
    "co.kr",
    "co.in",
    "com.au",
    "com.br",
    "com.mx",
    "com.sg",
    "com.hk",
    "com.cn",
    "org.uk",
    "org.au",
    "net.au",
    "gov.uk",
    "ac.uk",
)

DEFAULT_PERSONAL_EMAIL_DOMAINS: tuple[str, ...] = (
    "gmail.com",
    "googlemail.com",
    "yahoo.com",
    "yahoo.co.uk",
    "hotmail.com",
    "hotmail.co.uk",
    "outlook.com",
    "live.com",
    "msn.com",
    "aol.com",
    "icloud.com",
    "me.com",
    "mac.com",
    "protonmail.com",
    "proton.me",
    "zoho.com",
    "yandex.com",
    "gmx.com",
    "mail.com",
)

DEFAULT_ELIGIBLE_OP_STATUSES: tuple[str, ...] = (
    "1 - Onboarding In Progress",
    "2 - Onboarded",
    "3 - Testimonial Done",
)

BILLING_CYCLES = {"monthly", "quarterly", "28_day"}


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


def _split_list(value: Any, *, lowercase: bool) -> list[str]:
    if value in (None, "", []):
        return []
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = [str(part).strip() for part in value]
    else:
        raise ValueError("Expected a list or comma-separated string")
    if lowercase:
        items = [item.lower() for item in items]
    return [item for item in items if item]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/attribution.db",
        description="SQLAlchemy compatible database URL for the attribution store",
    )
    production_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Pooled Postgres connection string used when ENVIRONMENT=production",
    )
    source_database_url: AnyUrl | str | None = Field(
        default=None,
        description="Read-only connection string for the CRM/outreach source store (defaults to the attribution store)",
    )
    attribution_window_days: int = Field(
        default=31,
        description="Default number of days after first send during which a conversion is billable",
        ge=0,
    )
    review_window_days: int = Field(
        default=7,
        description="Default number of days after a billing period ends before it is overdue",
        ge=0,
    )
    review_auto_confirm_days: int = Field(
        default=7,
        description="Days a client review may stay pending before it is confirmed automatically",
        ge=1,
    )
    default_billing_cycle: str = Field(
        default="monthly",
        description="Billing cycle assigned to newly synced clients (monthly|quarterly|28_day)",
    )
    default_rev_share_rate: float = Field(
        default=0.10,
        description="Revenue share rate assigned to newly synced clients",
        ge=0,
        le=1,
    )
    default_estimated_acv: float = Field(
        default=10000.0,
        description="Estimated annual contract value used for auto-billing when no revenue was submitted",
        ge=0,
    )
    lookup_chunk_size: int = Field(
        default=100,
        description="Number of emails/domains sent per send-history lookup query",
        ge=1,
    )
    processing_batch_size: int = Field(
        default=1000,
        description="Number of conversion events processed between job checkpoints",
        ge=1,
    )
    job_stale_after_minutes: int = Field(
        default=30,
        description="Running jobs without a checkpoint for this long are treated as abandoned and resumed",
        ge=1,
    )
    multi_part_tlds: list[str] | str = Field(
        default_factory=lambda: list(DEFAULT_MULTI_PART_TLDS),
        description="Public suffixes spanning two labels (comma-separated list or array)",
    )
    personal_email_domains: list[str] | str = Field(
        default_factory=lambda: list(DEFAULT_PERSONAL_EMAIL_DOMAINS),
        description="Consumer mailbox domains excluded from soft matching",
    )
    eligible_op_statuses: list[str] | str = Field(
        default_factory=lambda: list(DEFAULT_ELIGIBLE_OP_STATUSES),
        description="Client operational statuses that are synced and processed",
    )
    always_include_clients: list[str] | str = Field(
        default_factory=list,
        description="Client names processed regardless of operational status",
    )
    skip_clients: list[str] | str = Field(
        default_factory=list,
        description="Client names never processed",
    )
    pipeline_db_retry_attempts: int = Field(
        default=3,
        description="Number of attempts for source-store lookups when transient errors occur",
        ge=1,
    )
    pipeline_db_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [1.0, 2.0, 4.0],
        description="Comma-separated list or array of backoff delays (seconds) between retry attempts",
    )

    @field_validator("database_url", "production_db_url", "source_database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.strip() == "":
            return None
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("production_db_url")
    @classmethod
    def _require_postgres_scheme(cls, value: Any) -> Any:
        if value is None:
            return value
        scheme = str(value).split(":", 1)[0].lower()
        valid_schemes = {
            "postgres",
            "postgresql",
            "postgresql+psycopg",
            "postgresql+asyncpg",
        }
        if scheme not in valid_schemes:
            raise ValueError(
                "PRODUCTION_DB_URL must be a PostgreSQL connection string (e.g. postgresql://...)."
            )
        return value

    @field_validator("default_billing_cycle")
    @classmethod
    def _validate_billing_cycle(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in BILLING_CYCLES:
            raise ValueError(
                "default_billing_cycle must be one of: " + ", ".join(sorted(BILLING_CYCLES))
            )
        return normalized

    @field_validator("multi_part_tlds", "personal_email_domains", mode="after")
    @classmethod
    def _parse_domain_lists(cls, value: Any) -> list[str]:
        return _split_list(value, lowercase=True)

    @field_validator("eligible_op_statuses", "always_include_clients", "skip_clients", mode="after")
    @classmethod
    def _parse_name_lists(cls, value: Any) -> list[str]:
        return _split_list(value, lowercase=False)

    @field_validator("pipeline_db_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [1.0, 2.0, 4.0]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            if not tokens:
                raise ValueError("PIPELINE_DB_RETRY_BACKOFF_SECONDS must contain at least one value")
            value = tokens
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("PIPELINE_DB_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay < 0:
                    raise ValueError("PIPELINE_DB_RETRY_BACKOFF_SECONDS entries must not be negative")
                backoff.append(delay)
            if not backoff:
                raise ValueError("PIPELINE_DB_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "PIPELINE_DB_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    @property
    def resolved_database_url(self) -> str:
        environment = self.environment.lower()
        if environment == "production":
            if not self.production_db_url:
                raise ValueError(
                    "PRODUCTION_DB_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.production_db_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def resolved_source_database_url(self) -> str:
        if self.source_database_url:
            return _ensure_sqlalchemy_postgres_scheme(str(self.source_database_url))
        return self.resolved_database_url

    @property
    def pipeline_db_retry_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.pipeline_db_retry_backoff_seconds)
        if not sequence:
            return (1.0,)
        return sequence


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
