from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    service_name: str = "ledger-engine"
    default_currency: str = "RUB"
    log_level: str = "INFO"

    # Entry embeddings; the client also honours OPENAI_API_KEY
    embeddings_enabled: bool = True
    openai_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"

    select_limit_default: int = 20
    select_limit_max: int = 50

    model_config = SettingsConfigDict(env_prefix="LEDGER_", env_file=".env", extra="ignore")


settings = Settings()
