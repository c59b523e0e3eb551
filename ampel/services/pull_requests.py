"""Read path: pull request status and cached diffs."""

from dataclasses import dataclass
from logging import getLogger
from typing import Any

from aiocache import BaseCache
from pydantic import BaseModel, ValidationError

from ampel.conf.settings import Settings
from ampel.models import DiffStatus, PullRequest, Repository
from ampel.services.cache import get_cache
from ampel.services.credentials import TokenAccessor
from ampel.services.diff import summarize_diff
from ampel.services.providers import GitProvider, ProviderFactory
from ampel.services.status import AmpelStatus, Blocker, collect_blockers, status_from_blockers

logger = getLogger(__name__)


class DiffFileResponse(BaseModel):
    file_path: str
    status: DiffStatus
    additions: int
    deletions: int
    changes: int
    patch: str | None = None
    previous_filename: str | None = None
    language: str | None = None
    is_binary: bool = False


class DiffResponse(BaseModel):
    """Diff of one pull request as served to clients."""

    files: list[DiffFileResponse]
    total_files: int
    total_additions: int
    total_deletions: int
    cached: bool = False


@dataclass
class PullRequestStatus:
    pull_request: PullRequest
    status: AmpelStatus
    blockers: list[Blocker]


def diff_cache_key(pull_request_id: str) -> str:
    return f"diff:pr:{pull_request_id}"


class PullRequestService:
    """Fetches pull requests through provider adapters and classifies them."""

    def __init__(
        self,
        settings: Settings,
        provider_factory: ProviderFactory,
        token_accessor: TokenAccessor,
        cache: BaseCache | None = None,
    ) -> None:
        self.settings = settings
        self.provider_factory = provider_factory
        self.token_accessor = token_accessor
        self._cache = cache

    @property
    def cache(self) -> BaseCache:
        if self._cache is None:
            self._cache = get_cache("persistent")
        return self._cache

    async def _adapter(self, repository: Repository) -> GitProvider:
        credentials = await self.token_accessor.get(repository.account_id)
        return self.provider_factory.create(repository.provider, credentials)

    async def list_repositories(self, account_id: str) -> list[Repository]:
        credentials = await self.token_accessor.get(account_id)
        if credentials.provider is None:
            raise ValueError(f"Account {account_id} has no provider configured")
        async with self.provider_factory.create(credentials.provider, credentials) as adapter:
            return await adapter.list_repositories()

    async def get_pull_request_status(self, repository: Repository, number: int) -> PullRequestStatus:
        """Fetch a pull request and classify it, keeping every blocker for display."""
        async with await self._adapter(repository) as adapter:
            pull_request = await adapter.get_pull_request(repository, number)

        blockers = collect_blockers(pull_request, skip_review_requirement=self.settings.skip_review_requirement)
        return PullRequestStatus(
            pull_request=pull_request,
            status=status_from_blockers(blockers),
            blockers=blockers,
        )

    async def get_diff(self, pull_request_id: str, repository: Repository, number: int) -> DiffResponse:
        """Return the normalized diff, served from cache when a fresh copy exists.

        Args:
            pull_request_id: Id used as the cache key
            repository: Repository the pull request belongs to
            number: Provider pull request number
        """
        key = diff_cache_key(pull_request_id)
        if self.settings.cache_enabled:
            cached = await self._get_cached_diff(key)
            if cached is not None:
                logger.debug(f"Diff cache hit for {pull_request_id}")
                return cached

        async with await self._adapter(repository) as adapter:
            files = await adapter.get_pull_request_diff(repository, number)

        summary = summarize_diff(files)
        response = DiffResponse(
            files=[DiffFileResponse.model_validate(diff_file, from_attributes=True) for diff_file in summary.files],
            total_files=summary.total_files,
            total_additions=summary.total_additions,
            total_deletions=summary.total_deletions,
        )

        if self.settings.cache_enabled:
            await self.cache.set(key, response.model_dump(mode="json"), ttl=self.settings.diff_cache_ttl)
        return response

    async def _get_cached_diff(self, key: str) -> DiffResponse | None:
        data: Any = await self.cache.get(key)
        if data is None:
            return None
        try:
            response = DiffResponse.model_validate(data)
        except ValidationError:
            logger.warning(f"Discarding malformed cached diff under {key}")
            await self.cache.delete(key)
            return None
        response.cached = True
        return response

    async def invalidate_diff(self, pull_request_id: str) -> None:
        """Drop the cached diff, called whenever the pull request is synced."""
        await self.cache.delete(diff_cache_key(pull_request_id))
