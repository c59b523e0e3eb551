"""Bitbucket Cloud REST API (2.0) adapter.

Bitbucket app passwords authenticate with HTTP Basic auth and therefore need
the account username as well as the token.
"""

from logging import getLogger
from typing import Any

import httpx

from ampel.conf.providers import ProviderSettings
from ampel.errors import AuthError, ConflictError, NotFoundError, PreconditionError, ProviderAPIError
from ampel.models import (
    CiCheck,
    CiCheckConclusion,
    CiCheckStatus,
    DiffFile,
    MergeOutcome,
    MergeStrategy,
    Provider,
    PullRequest,
    PullRequestState,
    Repository,
    Review,
    ReviewState,
    TokenValidation,
)
from ampel.services.credentials import ProviderCredentials
from ampel.services.diff import normalize_bitbucket_diffstat, split_git_diff

from .base import GitProvider, pull_request_key
from .client import parse_datetime

logger = getLogger(__name__)

MERGE_STRATEGY_MAP: dict[MergeStrategy, str] = {
    MergeStrategy.MERGE: "merge_commit",
    MergeStrategy.SQUASH: "squash",
    MergeStrategy.REBASE: "fast_forward",
}

BUILD_STATE_MAP: dict[str, tuple[CiCheckStatus, CiCheckConclusion | None]] = {
    "INPROGRESS": (CiCheckStatus.IN_PROGRESS, None),
    "SUCCESSFUL": (CiCheckStatus.COMPLETED, CiCheckConclusion.SUCCESS),
    "FAILED": (CiCheckStatus.COMPLETED, CiCheckConclusion.FAILURE),
    "STOPPED": (CiCheckStatus.COMPLETED, CiCheckConclusion.FAILURE),
}

PR_STATE_MAP: dict[str, PullRequestState] = {
    "OPEN": PullRequestState.OPEN,
    "MERGED": PullRequestState.MERGED,
    "DECLINED": PullRequestState.CLOSED,
    "SUPERSEDED": PullRequestState.CLOSED,
}


def map_commit_status(entry: dict[str, Any]) -> CiCheck:
    raw_state = entry.get("state")
    mapped = BUILD_STATE_MAP.get(raw_state) if isinstance(raw_state, str) else None
    if mapped is None:
        logger.warning(f"Unmapped bitbucket build state {raw_state!r}, defaulting to queued")
        mapped = (CiCheckStatus.QUEUED, None)
    status, conclusion = mapped
    return CiCheck(
        name=entry.get("name") or entry.get("key") or "build",
        status=status,
        conclusion=conclusion,
        url=entry.get("url"),
    )


def map_participants(participants: Any) -> list[Review]:
    """Turn pull request participants into reviews; participants who have not acted are skipped."""
    reviews = []
    for participant in participants if isinstance(participants, list) else []:
        if not isinstance(participant, dict):
            continue
        user = participant.get("user") or {}
        author = user.get("nickname") or user.get("display_name") or "unknown"
        submitted_at = parse_datetime(participant.get("participated_on"))
        if participant.get("state") == "changes_requested":
            reviews.append(Review(author=author, state=ReviewState.CHANGES_REQUESTED, submitted_at=submitted_at))
        elif participant.get("approved"):
            reviews.append(Review(author=author, state=ReviewState.APPROVED, submitted_at=submitted_at))
    return reviews


def _link(payload: dict[str, Any], name: str) -> str | None:
    link = (payload.get("links") or {}).get(name) or {}
    return link.get("href") if isinstance(link, dict) else None


def _repository_name(endpoint: dict[str, Any], repository: Repository) -> str:
    return (endpoint.get("repository") or {}).get("full_name") or repository.full_name


class BitbucketProvider(GitProvider):
    provider_type = Provider.BITBUCKET
    display_name = "Bitbucket"

    def __init__(
        self,
        credentials: ProviderCredentials,
        settings: ProviderSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or ProviderSettings()
        base_url = credentials.instance_url or settings.bitbucket_api_url
        super().__init__(credentials, base_url, settings=settings, transport=transport)

    def _auth(self) -> httpx.Auth | None:
        return httpx.BasicAuth(self.credentials.username or "", self.credentials.token.get_secret_value())

    def _repository_path(self, repository: Repository) -> str:
        return f"/repositories/{repository.full_name}"

    def _pull_request_path(self, repository: Repository, number: int) -> str:
        return f"{self._repository_path(repository)}/pullrequests/{number}"

    async def _get_all_pages(
        self, path: str, params: dict[str, Any] | None = None, resource: str | None = None
    ) -> list[dict[str, Any]]:
        """Follow Bitbucket's ``next`` links, capped at ``provider_max_pages`` pages."""
        values: list[dict[str, Any]] = []
        next_url: str | None = path
        page_params: dict[str, Any] | None = {**(params or {}), "pagelen": self.settings.provider_page_size}
        pages = 0

        while next_url and pages < self.settings.provider_max_pages:
            data = await self._get_json(next_url, resource=resource, params=page_params)
            pages += 1
            if not isinstance(data, dict):
                break
            values.extend(entry for entry in data.get("values") or [] if isinstance(entry, dict))
            next_url = data.get("next")
            # The next link already carries the query string
            page_params = None

        if next_url:
            logger.warning(f"Stopped paginating {path} after {self.settings.provider_max_pages} pages")
        return values

    async def validate_credentials(self) -> TokenValidation:
        if not self.credentials.username:
            raise AuthError("Bitbucket app passwords require a username")

        user = await self._get_json("/user", resource="Authenticated user")
        return TokenValidation(
            is_valid=True,
            user_id=user.get("uuid") or user.get("account_id"),
            username=user.get("username") or user.get("nickname"),
            avatar_url=_link(user, "avatar"),
        )

    async def list_repositories(self) -> list[Repository]:
        entries = await self._get_all_pages("/repositories", params={"role": "member"}, resource="Repositories")
        repositories = []
        for entry in entries:
            full_name = entry.get("full_name")
            if not full_name or "/" not in full_name:
                logger.warning("Skipping Bitbucket repository without a full name")
                continue
            workspace, slug = full_name.split("/", 1)
            repositories.append(
                Repository(
                    id=self._repository_id(entry.get("uuid")),
                    provider=self.provider_type,
                    owner=workspace,
                    name=slug,
                    full_name=full_name,
                    provider_id=entry.get("uuid") or "",
                    account_id=self.credentials.account_id,
                    description=entry.get("description") or None,
                    url=_link(entry, "html"),
                    default_branch=(entry.get("mainbranch") or {}).get("name") or "main",
                    is_private=bool(entry.get("is_private")),
                )
            )
        return repositories

    async def get_pull_request(self, repository: Repository, number: int) -> PullRequest:
        resource = self._pull_request_resource(repository, number)
        data = await self._get_json(self._pull_request_path(repository, number), resource=resource)

        raw_state = data.get("state")
        state = PR_STATE_MAP.get(raw_state) if isinstance(raw_state, str) else None
        if state is None:
            logger.warning(f"Unmapped bitbucket pull request state {raw_state!r}, defaulting to open")
            state = PullRequestState.OPEN

        source = data.get("source") or {}
        destination = data.get("destination") or {}
        return PullRequest(
            id=pull_request_key(repository.id, number),
            provider=self.provider_type,
            repository_id=repository.id,
            number=data.get("id", number),
            title=data.get("title") or "",
            author=(data.get("author") or {}).get("nickname") or "unknown",
            source_branch=(source.get("branch") or {}).get("name") or "",
            target_branch=(destination.get("branch") or {}).get("name") or repository.default_branch,
            is_draft=bool(data.get("draft")),
            # Bitbucket only reports conflicts through the diff, so conflicts surface when merging.
            has_conflicts=False,
            is_mergeable=None,
            ci_checks=await self._get_statuses(repository, number),
            reviews=map_participants(data.get("participants")),
            comments_count=data.get("comment_count") or 0,
            state=state,
            url=_link(data, "html"),
            description=data.get("description") or None,
            head_sha=(source.get("commit") or {}).get("hash"),
            created_at=parse_datetime(data.get("created_on")),
            updated_at=parse_datetime(data.get("updated_on")),
            is_cross_repository=_repository_name(source, repository) != _repository_name(destination, repository),
        )

    async def _get_statuses(self, repository: Repository, number: int) -> list[CiCheck]:
        try:
            entries = await self._get_all_pages(
                f"{self._pull_request_path(repository, number)}/statuses",
                resource=f"Build statuses for pull request #{number}",
            )
        except (NotFoundError, ProviderAPIError) as e:
            logger.info(f"No build statuses available for {repository.full_name}#{number}: {e.message}")
            return []
        return [map_commit_status(entry) for entry in entries]

    async def get_pull_request_diff(self, repository: Repository, number: int) -> list[DiffFile]:
        resource = self._pull_request_resource(repository, number)
        entries = await self._get_all_pages(f"{self._pull_request_path(repository, number)}/diffstat", resource=resource)

        patches: dict[str, str] = {}
        try:
            response = await self._request("GET", f"{self._pull_request_path(repository, number)}/diff", resource=resource)
        except (NotFoundError, ProviderAPIError) as e:
            logger.info(f"Raw diff unavailable for {repository.full_name}#{number}, returning stats only: {e.message}")
        else:
            patches = split_git_diff(response.text)

        return normalize_bitbucket_diffstat(entries, patches)

    async def merge_pull_request(
        self,
        repository: Repository,
        number: int,
        strategy: MergeStrategy,
        delete_branch: bool = False,
        source_branch: str | None = None,
    ) -> MergeOutcome:
        resource = self._pull_request_resource(repository, number)
        response = await self._request(
            "POST",
            f"{self._pull_request_path(repository, number)}/merge",
            resource=resource,
            json={
                "type": "pullrequest",
                "merge_strategy": MERGE_STRATEGY_MAP[strategy],
                "close_source_branch": delete_branch,
            },
            error_overrides={
                400: PreconditionError(f"{resource} is not mergeable; refresh and try again"),
                409: ConflictError(f"{resource} has conflicts; refresh and try again"),
            },
        )
        data = self._json(response)
        merged = data.get("state") == "MERGED"
        return MergeOutcome(
            merged=merged,
            sha=(data.get("merge_commit") or {}).get("hash"),
            message="Merged" if merged else f"Pull request state is {data.get('state')}",
        )
