from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from ampel.models import MergeStrategy


class MergeSettings(BaseSettings):
    """Bulk merge pacing, batch limits and rate-limit backoff policy."""

    merge_delay_seconds: float = Field(
        default=1.0,
        description="Delay between consecutive merges in the same repository",
    )
    merge_max_batch_size: int = Field(
        default=50,
        description="Maximum number of pull requests accepted in one bulk merge request",
    )
    merge_rate_limit_max_attempts: int = Field(
        default=3,
        description="Maximum provider attempts per item when the provider reports rate limiting",
    )
    merge_backoff_base_seconds: float = Field(
        default=1.0,
        description="Base delay for exponential backoff after a rate-limited call",
    )
    merge_backoff_max_seconds: float = Field(
        default=60.0,
        description="Upper bound for a single backoff wait",
    )
    merge_concurrent_repositories: bool = Field(
        default=True,
        description="Process repository partitions concurrently (items within a repository are always sequential)",
    )
    default_merge_strategy: MergeStrategy = Field(
        default=MergeStrategy.SQUASH,
        description="Strategy used when a bulk merge request does not specify one",
    )
    delete_branch_default: bool = Field(
        default=False,
        description="Delete source branches after merge when the request does not specify",
    )
    skip_review_requirement: bool = Field(
        default=False,
        description="Do not require an approving review for a pull request to be green",
    )

    @field_validator("merge_delay_seconds")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if not 0 <= v <= 300:
            raise ValueError("merge_delay_seconds must be between 0 and 300")
        return v

    @field_validator("merge_max_batch_size", "merge_rate_limit_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("merge_backoff_base_seconds", "merge_backoff_max_seconds")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Backoff values cannot be negative")
        return v
