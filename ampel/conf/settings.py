from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .cache import CacheSettings
from .merge import MergeSettings
from .providers import ProviderSettings


class CredentialSettings(BaseSettings):
    """Stored provider credential configuration."""

    credential_encryption_key: SecretStr | None = Field(
        default=None,
        description="Secret used to encrypt provider access tokens at rest (required for the credential store)",
    )
    token_refresh_margin_seconds: int = Field(
        default=60,
        description="Refresh expiring provider tokens this many seconds before they expire",
    )


class Settings(CacheSettings, ProviderSettings, MergeSettings, CredentialSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    project_name: str = "ampel"
    debug: bool = False
