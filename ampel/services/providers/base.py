"""Provider adapter interface."""

from abc import ABC, abstractmethod

import httpx

from ampel.conf.providers import ProviderSettings
from ampel.models import DiffFile, MergeOutcome, MergeStrategy, Provider, PullRequest, Repository, TokenValidation
from ampel.services.credentials import ProviderCredentials

from .client import ProviderAPIClient


def pull_request_key(repository_id: str, number: int) -> str:
    """Stable pull request id derived from the tracked repository and the provider number."""
    return f"{repository_id}#{number}"


class GitProvider(ProviderAPIClient, ABC):
    """One source-control provider behind the canonical model.

    Adapters are used as async context managers. Every operation either returns
    canonical data or raises a :class:`~ampel.errors.ProviderError`; native
    payloads never leave the adapter.
    """

    provider_type: Provider

    def __init__(
        self,
        credentials: ProviderCredentials,
        base_url: str,
        settings: ProviderSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, settings=settings, transport=transport)
        self.credentials = credentials

    @abstractmethod
    async def validate_credentials(self) -> TokenValidation:
        """Check that the credentials work and report who they belong to.

        Raises:
            AuthError: If the provider rejects the credentials
        """

    @abstractmethod
    async def list_repositories(self) -> list[Repository]:
        """List repositories the account can access, following pagination."""

    @abstractmethod
    async def get_pull_request(self, repository: Repository, number: int) -> PullRequest:
        """Fetch a pull request with its CI checks and reviews."""

    @abstractmethod
    async def get_pull_request_diff(self, repository: Repository, number: int) -> list[DiffFile]:
        """Fetch the normalized per-file diff of a pull request."""

    @abstractmethod
    async def merge_pull_request(
        self,
        repository: Repository,
        number: int,
        strategy: MergeStrategy,
        delete_branch: bool = False,
        source_branch: str | None = None,
    ) -> MergeOutcome:
        """Merge a pull request.

        ``source_branch`` names the branch of ``repository`` to delete when ``delete_branch`` is set and the
        provider needs a separate call for it. Callers pass ``None`` for branches that live in a fork.

        Raises:
            PreconditionError: If the provider reports the pull request as not mergeable
            ConflictError: If the pull request has conflicts or its head moved
        """

    def _pull_request_resource(self, repository: Repository, number: int) -> str:
        return f"Pull request #{number} in {repository.full_name}"

    def _repository_id(self, provider_id: object) -> str:
        return f"{self.provider_type.value}:{provider_id}"
