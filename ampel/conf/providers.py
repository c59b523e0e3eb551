from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class ProviderSettings(BaseSettings):
    """Provider API endpoints and HTTP client configuration."""

    github_api_url: str = Field(
        default="https://api.github.com",
        description="Base URL for the GitHub REST API (GitHub Enterprise: https://host/api/v3)",
    )
    gitlab_url: str = Field(
        default="https://gitlab.com",
        description="Base URL of the GitLab instance (the /api/v4 suffix is added automatically)",
    )
    bitbucket_api_url: str = Field(
        default="https://api.bitbucket.org/2.0",
        description="Base URL for the Bitbucket Cloud REST API",
    )

    provider_request_timeout: float = Field(
        default=30.0,
        description="Per-call timeout in seconds for provider API requests",
    )
    provider_connect_timeout: float = Field(
        default=10.0,
        description="Connection timeout in seconds for provider API requests",
    )
    provider_user_agent: str = Field(
        default="Ampel/1.0",
        description="User-Agent header sent to providers",
    )
    provider_page_size: int = Field(
        default=100,
        description="Page size used when listing repositories and diff files",
    )
    provider_max_pages: int = Field(
        default=50,
        description="Upper bound on pages fetched for a single paginated listing",
    )

    @field_validator("provider_page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        """Providers cap page sizes at 100."""
        if not 1 <= v <= 100:
            raise ValueError("provider_page_size must be between 1 and 100")
        return v

    @field_validator("provider_request_timeout", "provider_connect_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts must be positive")
        return v
