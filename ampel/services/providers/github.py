"""GitHub REST API adapter."""

from logging import getLogger
from typing import Any
from urllib.parse import quote

import httpx

from ampel.conf.providers import ProviderSettings
from ampel.errors import ConflictError, NotFoundError, PreconditionError, ProviderAPIError, ProviderError
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
from ampel.services.diff import normalize_github_files

from .base import GitProvider, pull_request_key
from .client import parse_datetime

logger = getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"

CHECK_STATUS_MAP: dict[str, CiCheckStatus] = {
    "queued": CiCheckStatus.QUEUED,
    "waiting": CiCheckStatus.QUEUED,
    "requested": CiCheckStatus.QUEUED,
    "pending": CiCheckStatus.QUEUED,
    "in_progress": CiCheckStatus.IN_PROGRESS,
    "completed": CiCheckStatus.COMPLETED,
}

CHECK_CONCLUSION_MAP: dict[str, CiCheckConclusion] = {
    "success": CiCheckConclusion.SUCCESS,
    "neutral": CiCheckConclusion.SUCCESS,
    "skipped": CiCheckConclusion.SUCCESS,
    "failure": CiCheckConclusion.FAILURE,
    "cancelled": CiCheckConclusion.FAILURE,
    "action_required": CiCheckConclusion.FAILURE,
    "stale": CiCheckConclusion.FAILURE,
    "startup_failure": CiCheckConclusion.FAILURE,
    "timed_out": CiCheckConclusion.TIMED_OUT,
}

REVIEW_STATE_MAP: dict[str, ReviewState] = {
    "APPROVED": ReviewState.APPROVED,
    "CHANGES_REQUESTED": ReviewState.CHANGES_REQUESTED,
    "COMMENTED": ReviewState.COMMENTED,
}


def map_check_run(entry: dict[str, Any]) -> CiCheck:
    """Map a GitHub check run onto a canonical CI check."""
    raw_status = entry.get("status")
    status = CHECK_STATUS_MAP.get(raw_status) if isinstance(raw_status, str) else None
    if status is None:
        logger.warning(f"Unmapped github check status {raw_status!r}, defaulting to queued")
        status = CiCheckStatus.QUEUED

    conclusion = None
    raw_conclusion = entry.get("conclusion")
    if status == CiCheckStatus.COMPLETED and raw_conclusion is not None:
        conclusion = CHECK_CONCLUSION_MAP.get(raw_conclusion)
        if conclusion is None:
            logger.warning(f"Unmapped github check conclusion {raw_conclusion!r}")

    return CiCheck(
        name=entry.get("name") or "check",
        status=status,
        conclusion=conclusion,
        url=entry.get("html_url") or entry.get("details_url"),
    )


def map_review(entry: dict[str, Any]) -> Review | None:
    """Map a submitted GitHub review; pending reviews (no submission time) are ignored."""
    submitted_at = parse_datetime(entry.get("submitted_at"))
    if submitted_at is None:
        return None
    # DISMISSED and anything GitHub adds later carry no approval signal
    state = REVIEW_STATE_MAP.get(entry.get("state") or "", ReviewState.COMMENTED)
    user = entry.get("user") or {}
    return Review(author=user.get("login") or "unknown", state=state, submitted_at=submitted_at)


def _pull_request_state(data: dict[str, Any]) -> PullRequestState:
    if data.get("merged") or data.get("merged_at"):
        return PullRequestState.MERGED
    if data.get("state") == "closed":
        return PullRequestState.CLOSED
    return PullRequestState.OPEN


class GitHubProvider(GitProvider):
    provider_type = Provider.GITHUB
    display_name = "GitHub"

    def __init__(
        self,
        credentials: ProviderCredentials,
        settings: ProviderSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or ProviderSettings()
        base_url = settings.github_api_url
        if credentials.instance_url:
            # GitHub Enterprise Server serves the REST API under /api/v3
            base_url = credentials.instance_url.rstrip("/")
            if "api.github.com" not in base_url and not base_url.endswith("/api/v3"):
                base_url = f"{base_url}/api/v3"
        super().__init__(credentials, base_url, settings=settings, transport=transport)

    def _headers(self) -> dict[str, str]:
        return {
            **super()._headers(),
            "Authorization": f"Bearer {self.credentials.token.get_secret_value()}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    async def validate_credentials(self) -> TokenValidation:
        response = await self._request("GET", "/user", resource="Authenticated user")
        user = self._json(response)
        scopes = [scope.strip() for scope in response.headers.get("X-OAuth-Scopes", "").split(",") if scope.strip()]
        return TokenValidation(
            is_valid=True,
            user_id=str(user.get("id")) if user.get("id") is not None else None,
            username=user.get("login"),
            email=user.get("email"),
            avatar_url=user.get("avatar_url"),
            scopes=scopes,
        )

    async def list_repositories(self) -> list[Repository]:
        entries = await self._get_paginated("/user/repos", params={"sort": "updated"}, resource="Repositories")
        repositories = []
        for entry in entries:
            full_name = entry.get("full_name")
            if not full_name or "/" not in full_name:
                logger.warning("Skipping GitHub repository without a full name")
                continue
            owner, name = full_name.split("/", 1)
            repositories.append(
                Repository(
                    id=self._repository_id(entry.get("id")),
                    provider=self.provider_type,
                    owner=(entry.get("owner") or {}).get("login") or owner,
                    name=entry.get("name") or name,
                    full_name=full_name,
                    provider_id=str(entry.get("id", "")),
                    account_id=self.credentials.account_id,
                    description=entry.get("description"),
                    url=entry.get("html_url"),
                    default_branch=entry.get("default_branch") or "main",
                    is_private=bool(entry.get("private")),
                    is_archived=bool(entry.get("archived")),
                )
            )
        return repositories

    async def get_pull_request(self, repository: Repository, number: int) -> PullRequest:
        resource = self._pull_request_resource(repository, number)
        data = await self._get_json(f"/repos/{repository.full_name}/pulls/{number}", resource=resource)

        head = data.get("head") or {}
        base = data.get("base") or {}
        head_sha = head.get("sha")
        head_repository = (head.get("repo") or {}).get("full_name")
        base_repository = (base.get("repo") or {}).get("full_name") or repository.full_name
        ci_checks = await self._get_check_runs(repository, head_sha) if head_sha else []
        reviews = await self._get_reviews(repository, number)

        return PullRequest(
            id=pull_request_key(repository.id, number),
            provider=self.provider_type,
            repository_id=repository.id,
            number=data.get("number", number),
            title=data.get("title") or "",
            author=(data.get("user") or {}).get("login") or "unknown",
            source_branch=head.get("ref") or "",
            target_branch=base.get("ref") or repository.default_branch,
            is_draft=bool(data.get("draft")),
            has_conflicts=data.get("mergeable_state") == "dirty",
            is_mergeable=data.get("mergeable"),
            ci_checks=ci_checks,
            reviews=reviews,
            additions=data.get("additions") or 0,
            deletions=data.get("deletions") or 0,
            comments_count=(data.get("comments") or 0) + (data.get("review_comments") or 0),
            changed_files=data.get("changed_files") or 0,
            state=_pull_request_state(data),
            url=data.get("html_url"),
            description=data.get("body"),
            head_sha=head_sha,
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            # A deleted fork leaves head.repo empty
            is_cross_repository=head_repository != base_repository,
        )

    async def _get_check_runs(self, repository: Repository, sha: str) -> list[CiCheck]:
        try:
            data = await self._get_json(
                f"/repos/{repository.full_name}/commits/{sha}/check-runs",
                resource=f"Checks for {sha[:7]}",
                params={"per_page": self.settings.provider_page_size},
            )
        except (NotFoundError, ProviderAPIError) as e:
            logger.info(f"No check runs available for {repository.full_name}@{sha[:7]}: {e.message}")
            return []
        runs = data.get("check_runs", []) if isinstance(data, dict) else []
        return [map_check_run(run) for run in runs if isinstance(run, dict)]

    async def _get_reviews(self, repository: Repository, number: int) -> list[Review]:
        entries = await self._get_paginated(
            f"/repos/{repository.full_name}/pulls/{number}/reviews",
            resource=f"Reviews for pull request #{number}",
        )
        reviews = (map_review(entry) for entry in entries)
        return [review for review in reviews if review is not None]

    async def get_pull_request_diff(self, repository: Repository, number: int) -> list[DiffFile]:
        entries = await self._get_paginated(
            f"/repos/{repository.full_name}/pulls/{number}/files",
            resource=self._pull_request_resource(repository, number),
        )
        return normalize_github_files(entries)

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
            "PUT",
            f"/repos/{repository.full_name}/pulls/{number}/merge",
            resource=resource,
            json={"merge_method": strategy.value},
            error_overrides={
                405: PreconditionError(f"{resource} is not mergeable; refresh and try again"),
                409: ConflictError(f"{resource} head changed since it was selected; refresh and try again"),
                422: PreconditionError(f"{resource} cannot be merged with {strategy.value}; refresh and try again"),
            },
        )
        data = self._json(response)
        outcome = MergeOutcome(
            merged=bool(data.get("merged")),
            sha=data.get("sha"),
            message=data.get("message") or "",
        )

        if outcome.merged and delete_branch:
            if source_branch:
                await self._delete_branch(repository, source_branch)
            else:
                logger.info(f"No branch of {repository.full_name} to delete after merging {resource}")
        return outcome

    async def _delete_branch(self, repository: Repository, branch: str) -> None:
        try:
            await self._request(
                "DELETE",
                f"/repos/{repository.full_name}/git/refs/heads/{quote(branch, safe='/')}",
                resource=f"Branch {branch}",
            )
        except ProviderError as e:
            # The merge already happened, so a leftover branch is not an item failure.
            logger.warning(f"Could not delete branch {branch} in {repository.full_name}: {e.message}")
        else:
            logger.info(f"Deleted branch {branch} in {repository.full_name}")

