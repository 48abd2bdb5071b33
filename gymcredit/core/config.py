from decimal import Decimal
from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]
_DEFAULT_OVERRIDE_ROLES = ["OWNER", "ADMIN", "MANAGER"]


def _parse_list(v: Any, default: List[str]) -> List[str]:
    try:
        if v is None or v == "":
            return default.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return default.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or default.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or default.copy()
    except ValueError:
        return default.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="gymcredit", alias="MONGODB_DB_NAME")

    # Redis (arq worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_list(getattr(self, "cors_origins_raw", None), _DEFAULT_CORS)

    # Redemption
    access_credit_cost: Decimal = Field(default=Decimal("10.00"), alias="ACCESS_CREDIT_COST")
    override_roles_raw: str = Field(
        default="OWNER,ADMIN,MANAGER",
        alias="OVERRIDE_ROLES",
        description="Staff roles allowed to override access checks",
    )

    @property
    def override_roles(self) -> List[str]:
        roles = _parse_list(getattr(self, "override_roles_raw", None), _DEFAULT_OVERRIDE_ROLES)
        return [r.upper() for r in roles]

    # Optimistic concurrency
    ledger_max_retries: int = Field(default=5, alias="LEDGER_MAX_RETRIES")
    pass_max_retries: int = Field(default=3, alias="PASS_MAX_RETRIES")
    # PENDING access-event claims older than this are considered abandoned
    redemption_claim_ttl_seconds: int = Field(default=60, alias="REDEMPTION_CLAIM_TTL_SECONDS")

    # Worker: minute of each hour the pass expiry sweep runs
    pass_expiry_sweep_minute: int = Field(default=5, alias="PASS_EXPIRY_SWEEP_MINUTE")


@lru_cache
def get_settings() -> Settings:
    return Settings()
