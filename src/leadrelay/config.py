"""leadrelay configuration via pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings

DEFAULT_CONFIG_DIR = Path.home() / ".leadrelay"


class Settings(BaseSettings):
    log_level: str = "INFO"

    # OAuth app registered in the CRM portal
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:3000/oauth/callback"
    domain: str = ""
    scopes: str = "crm"
    token_url: str = "https://oauth.bitrix.info/oauth/token/"

    # A directory for the JSON store, or an SQLAlchemy URL ("sqlite:///tokens.db")
    storage_url: str = str(DEFAULT_CONFIG_DIR)

    # Outbound calls
    api_timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0

    model_config = {"env_prefix": "LEADRELAY_", "env_file": ".env", "extra": "ignore"}

    @property
    def scope_list(self) -> list[str]:
        return [s.strip() for s in self.scopes.replace(" ", ",").split(",") if s.strip()]

    @property
    def uses_sql_storage(self) -> bool:
        return "://" in self.storage_url

    @property
    def storage_dir(self) -> Path:
        return Path(self.storage_url).expanduser()

    @property
    def oauth_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)
