from functools import lru_cache
from typing import List, Optional

from json import loads as json_loads, JSONDecodeError

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the Averon access service.

    All values come from environment variables or .env.
    This is the single source of truth for:
    - environment (dev/staging/prod)
    - database URL + statement/pool timeouts
    - CORS / allowed origins
    - docs toggle
    - auth / token settings
    - invitation lifetimes and abuse limits
    """

    # - env_file: .env
    # - extra="ignore": tolerate unrelated env vars from the hosting platform
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # High-level environment flags
    environment: str = Field(
        default="dev",
        description="Deployment environment identifier (dev|staging|prod)",
    )
    debug: bool = Field(default=True)

    # Database
    database_url: str = Field(
        default="sqlite:///./averon.db",
        description="SQLAlchemy-style DB URL (SQLite for dev, Postgres in prod).",
    )
    db_statement_timeout_ms: int = Field(
        default=5000,
        description="Per-statement timeout applied to Postgres connections.",
    )
    db_pool_timeout_seconds: int = Field(
        default=10,
        description="Max seconds to wait for a pooled connection.",
    )

    # Auth / tokens
    jwt_secret: str = Field(
        default="supersecret",
        description="JWT signing secret; override in all non-dev environments.",
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm. HS256 by default.",
    )
    access_token_expire_minutes: int = Field(
        default=60,
        description="Access token lifetime in minutes.",
    )

    # CORS / frontends
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description=(
            "Allowed frontend origins. Can be either a comma-separated string like "
            '"http://localhost:3000,http://127.0.0.1:3000" or a JSON list like '
            '["http://localhost:3000","http://127.0.0.1:3000"].'
        ),
    )

    # API docs toggle
    enable_docs: bool = Field(
        default=False,
        description="If true, exposes /docs and /redoc.",
    )

    # Invitations
    public_app_url: Optional[str] = Field(
        default=None,
        description="Origin used to build invite URLs. Falls back to the request base URL.",
    )
    invite_default_ttl_hours: int = Field(default=72)
    invite_max_ttl_hours: int = Field(
        default=24 * 30,
        description="Upper bound for expires_in_hours (30 days).",
    )

    invite_issue_rate_limit: int = Field(default=60)
    invite_issue_rate_window: int = Field(default=60 * 60)
    invite_redeem_rate_limit: int = Field(default=10)
    invite_redeem_rate_window: int = Field(default=60)

    # Observability budgets
    slow_http_ms: float = Field(default=1500.0)
    slow_db_query_ms: float = Field(default=250.0)
    slow_db_total_ms: float = Field(default=800.0)
    log_db_sql: bool = Field(default=False)

    def origins_list(self) -> List[str]:
        """
        Normalize ALLOWED_ORIGINS into a clean List[str] for CORSMiddleware.

        Supports two formats:
        - Comma-separated string:
            ALLOWED_ORIGINS=http://127.0.0.1:3000,http://localhost:3000
        - JSON array:
            ALLOWED_ORIGINS=["http://127.0.0.1:3000","http://localhost:3000"]
        """
        raw = self.allowed_origins
        if not raw:
            return []

        raw_str = str(raw).strip()

        if raw_str.startswith("[") and raw_str.endswith("]"):
            try:
                parsed = json_loads(raw_str)
                if isinstance(parsed, list):
                    return [str(o).strip() for o in parsed if str(o).strip()]
            except JSONDecodeError:
                # Fall back to naive split if JSON is malformed
                pass

        return [o.strip() for o in raw_str.split(",") if o.strip()]

    @property
    def is_prod(self) -> bool:
        """
        Convenience flag: true if running in a production-like environment.
        """
        return self.environment.lower() in {"prod", "production"}


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings instance so the app only parses env once.
    """
    return Settings()


settings = get_settings()
