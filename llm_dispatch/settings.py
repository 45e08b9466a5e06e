"""Settings configuration for the dispatch engine."""

from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from llm_dispatch.models import PlanTier, Region

# Load environment variables from .env file
load_dotenv()


class PolicyDefaults(BaseModel):
    """Boot-time values for the process-wide policy flags.

    Each field maps to a POLICY__<FIELD_NAME> environment variable. List
    fields accept JSON (e.g. POLICY__DISABLED_PROVIDERS='["gpt-5.1"]').
    """

    disabled_providers: list[str] = Field(default_factory=list)
    disabled_families: list[str] = Field(
        default_factory=list, description="Kill every provider of a vendor family"
    )
    force_cheap_plans: list[PlanTier] = Field(
        default_factory=list, description="Plans pinned to the cheapest provider"
    )
    emergency_mode: bool = Field(default=False, description="Cheap providers only, all plans")
    maintenance_mode: bool = Field(default=False, description="Pause every request")
    global_pressure_override: Optional[float] = Field(
        default=None, description="Replaces computed pressure when set (clamped to 0-1)"
    )
    max_pressure_cap: float = Field(default=1.0, ge=0.0, le=1.0)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Settings
    app_env: str = Field(default="development", description="Application environment")
    log_level: str = Field(default="INFO", description="Logging level")

    # Circuit breaker
    circuit_failure_threshold: int = Field(
        default=5, ge=1, description="Consecutive failures before a provider circuit opens"
    )
    circuit_cooldown_seconds: float = Field(
        default=60.0, gt=0.0, description="How long an open circuit excludes its provider"
    )

    # Policy override layer
    policy_history_size: int = Field(default=100, ge=1, le=10_000)
    policy: PolicyDefaults = Field(default_factory=PolicyDefaults)

    # Quota ledger
    quota_min_tokens: int = Field(
        default=1000, ge=0, description="Headroom a provider needs to count as having quota"
    )
    default_region: Region = Field(default=Region.IN)

    # Session pressure cache
    pressure_cache_max_sessions: int = Field(
        default=10_000, ge=1, description="Sessions held before least recently used are evicted"
    )

    # Redis (Optional - backs the quota ledger when set)
    redis_url: Optional[str] = Field(
        default=None, description="Redis connection URL (redis://localhost:6379/0)"
    )
    redis_key_prefix: str = Field(default="dispatch:", description="Redis key namespace prefix")


def load_settings() -> Settings:
    """Load settings with proper error handling."""
    try:
        return Settings()
    except Exception as e:
        error_msg = f"Failed to load settings: {e}"
        if "policy" in str(e).lower():
            error_msg += "\nCheck the POLICY__* variables in your .env file"
        raise ValueError(error_msg) from e
