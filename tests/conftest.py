import os

# Set required environment variables for testing BEFORE any ampel imports
# This must happen before settings are loaded
if "CREDENTIAL_ENCRYPTION_KEY" not in os.environ:
    os.environ["CREDENTIAL_ENCRYPTION_KEY"] = "test-secret-key-for-testing-purposes-only-min-32-chars"

from collections.abc import Callable
from typing import Any

import pytest
from pydantic import SecretStr

from ampel.conf.settings import Settings
from ampel.models import (
    CiCheck,
    CiCheckConclusion,
    CiCheckStatus,
    Provider,
    PullRequest,
    Repository,
    Review,
    ReviewState,
)
from ampel.services.credentials import ProviderCredentials


@pytest.fixture
def settings() -> Settings:
    """Settings with pacing and backoff waits disabled."""
    return Settings(
        merge_delay_seconds=0,
        merge_backoff_base_seconds=0,
        cache_enabled=True,
        cache_redis_host=None,
        skip_review_requirement=False,
    )


@pytest.fixture
def credentials() -> ProviderCredentials:
    return ProviderCredentials(token=SecretStr("test_token"), account_id="account-1", username="tester")


@pytest.fixture
def repository() -> Repository:
    return Repository(
        id="repo-1",
        provider=Provider.GITHUB,
        owner="octocat",
        name="hello-world",
        full_name="octocat/hello-world",
        account_id="account-1",
    )


@pytest.fixture
def make_pull_request() -> Callable[..., PullRequest]:
    """Factory for a green pull request; keyword arguments override fields."""

    def _make(**overrides: Any) -> PullRequest:
        fields: dict[str, Any] = {
            "id": "repo-1#1",
            "provider": Provider.GITHUB,
            "repository_id": "repo-1",
            "number": 1,
            "title": "Add feature",
            "author": "octocat",
            "source_branch": "feature",
            "target_branch": "main",
            "is_mergeable": True,
            "ci_checks": [CiCheck("build", CiCheckStatus.COMPLETED, CiCheckConclusion.SUCCESS)],
            "reviews": [Review("reviewer", ReviewState.APPROVED)],
        }
        fields.update(overrides)
        return PullRequest(**fields)

    return _make
