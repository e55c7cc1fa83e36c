"""
Central feature flags. One file controls every optional dependency.

Set via environment variables (prefix FF_) or .env file.
When a flag is OFF, the system skips that integration. Nothing crashes.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Realtime ─────────────────────────────────────────────────────
    use_redis: bool = Field(default=True, alias="FF_USE_REDIS")
    # ON  → Memory events published over Redis pub/sub. Needs REDIS_URL.
    # OFF → Notifications silently skipped.

    # ── LLM Provider ─────────────────────────────────────────────────
    llm_provider: str = Field(default="openai", alias="FF_LLM_PROVIDER")
    # "openai" → OpenAI-compatible endpoint. Needs OPENAI_API_KEY.
    # "gemini" → Gemini's OpenAI-compatible endpoint. Needs GEMINI_API_KEY.

    # ── Long-term memory ─────────────────────────────────────────────
    enable_long_term_memory: bool = Field(default=True, alias="FF_ENABLE_LONG_TERM_MEMORY")
    # ON  → Episodes + knowledge facts are read into prompts and built in the background.
    # OFF → Only short-term and medium-term tiers are used.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
