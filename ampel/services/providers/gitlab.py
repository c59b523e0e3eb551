"""GitLab REST API (v4) adapter."""

from logging import getLogger
from typing import Any
from urllib.parse import quote

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
from ampel.services.diff import normalize_gitlab_diffs

from .base import GitProvider, pull_request_key
from .client import parse_datetime

logger = getLogger(__name__)

# Job status -> (status, conclusion)
JOB_STATUS_MAP: dict[str, tuple[CiCheckStatus, CiCheckConclusion | None]] = {
    "created": (CiCheckStatus.QUEUED, None),
    "pending": (CiCheckStatus.QUEUED, None),
    "waiting_for_resource": (CiCheckStatus.QUEUED, None),
    "preparing": (CiCheckStatus.QUEUED, None),
    "scheduled": (CiCheckStatus.QUEUED, None),
    "manual": (CiCheckStatus.QUEUED, None),
    "running": (CiCheckStatus.IN_PROGRESS, None),
    "success": (CiCheckStatus.COMPLETED, CiCheckConclusion.SUCCESS),
    "skipped": (CiCheckStatus.COMPLETED, CiCheckConclusion.SUCCESS),
    "failed": (CiCheckStatus.COMPLETED, CiCheckConclusion.FAILURE),
    "canceled": (CiCheckStatus.COMPLETED, CiCheckConclusion.FAILURE),
}

MR_STATE_MAP: dict[str, PullRequestState] = {
    "opened": PullRequestState.OPEN,
    "merged": PullRequestState.MERGED,
    "closed": PullRequestState.CLOSED,
    "locked": PullRequestState.CLOSED,
}


def map_job(entry: dict[str, Any]) -> CiCheck:
    raw_status = entry.get("status")
    mapped = JOB_STATUS_MAP.get(raw_status) if isinstance(raw_status, str) else None
    if mapped is None:
        logger.warning(f"Unmapped gitlab job status {raw_status!r}, defaulting to queued")
        mapped = (CiCheckStatus.QUEUED, None)
    status, conclusion = mapped
    return CiCheck(name=entry.get("name") or "job", status=status, conclusion=conclusion, url=entry.get("web_url"))


def _is_mergeable(merge_status: Any) -> bool | None:
    if merge_status == "can_be_merged":
        return True
    if merge_status == "cannot_be_merged":
        return False
    # unchecked, checking and cannot_be_merged_recheck are still being computed
    return None


def _changed_files(value: Any) -> int:
    # GitLab reports very large MRs as "1000+"
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        digits = value.rstrip("+")
        if digits.isdigit():
            return int(digits)
    return 0


class GitLabProvider(GitProvider):
    provider_type = Provider.GITLAB
    display_name = "GitLab"

    def __init__(
        self,
        credentials: ProviderCredentials,
        settings: ProviderSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or ProviderSettings()
        instance_url = (credentials.instance_url or settings.gitlab_url).rstrip("/")
        if not instance_url.endswith("/api/v4"):
            instance_url = f"{instance_url}/api/v4"
        super().__init__(credentials, instance_url, settings=settings, transport=transport)

    def _headers(self) -> dict[str, str]:
        return {
            **super()._headers(),
            "Authorization": f"Bearer {self.credentials.token.get_secret_value()}",
        }

    @staticmethod
    def _project_path(repository: Repository) -> str:
        return f"/projects/{quote(repository.full_name, safe='')}"

    def _merge_request_path(self, repository: Repository, number: int) -> str:
        return f"{self._project_path(repository)}/merge_requests/{number}"

    def _merge_request_resource(self, repository: Repository, number: int) -> str:
        return f"Merge request !{number} in {repository.full_name}"

    async def validate_credentials(self) -> TokenValidation:
        user = await self._get_json("/user", resource="Authenticated user")
        scopes: list[str] = []
        expires_at = None
        try:
            token_info = await self._get_json("/personal_access_tokens/self", resource="Access token")
        except (AuthError, NotFoundError, ProviderAPIError) as e:
            # /user already succeeded; OAuth tokens and older GitLab versions cannot introspect themselves
            logger.debug(f"GitLab token introspection unavailable: {e.message}")
        else:
            if isinstance(token_info, dict):
                scopes = [scope for scope in token_info.get("scopes") or [] if isinstance(scope, str)]
                expires_at = parse_datetime(token_info.get("expires_at"))

        return TokenValidation(
            is_valid=True,
            user_id=str(user.get("id")) if user.get("id") is not None else None,
            username=user.get("username"),
            email=user.get("email"),
            avatar_url=user.get("avatar_url"),
            scopes=scopes,
            expires_at=expires_at,
        )

    async def list_repositories(self) -> list[Repository]:
        entries = await self._get_paginated(
            "/projects",
            params={"membership": "true", "order_by": "updated_at"},
            resource="Projects",
        )
        repositories = []
        for entry in entries:
            full_name = entry.get("path_with_namespace")
            if not full_name or "/" not in full_name:
                logger.warning("Skipping GitLab project without a namespace path")
                continue
            # Subgroups nest, so the owner is everything before the last segment
            owner, name = full_name.rsplit("/", 1)
            repositories.append(
                Repository(
                    id=self._repository_id(entry.get("id")),
                    provider=self.provider_type,
                    owner=owner,
                    name=entry.get("path") or name,
                    full_name=full_name,
                    provider_id=str(entry.get("id", "")),
                    account_id=self.credentials.account_id,
                    description=entry.get("description"),
                    url=entry.get("web_url"),
                    default_branch=entry.get("default_branch") or "main",
                    is_private=entry.get("visibility") != "public",
                    is_archived=bool(entry.get("archived")),
                )
            )
        return repositories

    async def get_pull_request(self, repository: Repository, number: int) -> PullRequest:
        resource = self._merge_request_resource(repository, number)
        data = await self._get_json(self._merge_request_path(repository, number), resource=resource)

        raw_state = data.get("state")
        state = MR_STATE_MAP.get(raw_state) if isinstance(raw_state, str) else None
        if state is None:
            logger.warning(f"Unmapped gitlab merge request state {raw_state!r}, defaulting to open")
            state = PullRequestState.OPEN

        target_project = data.get("target_project_id")
        source_project = data.get("source_project_id", target_project)
        return PullRequest(
            id=pull_request_key(repository.id, number),
            provider=self.provider_type,
            repository_id=repository.id,
            number=data.get("iid", number),
            title=data.get("title") or "",
            author=(data.get("author") or {}).get("username") or "unknown",
            source_branch=data.get("source_branch") or "",
            target_branch=data.get("target_branch") or repository.default_branch,
            is_draft=bool(data.get("draft", data.get("work_in_progress", False))),
            has_conflicts=bool(data.get("has_conflicts")),
            is_mergeable=_is_mergeable(data.get("merge_status")),
            ci_checks=await self._get_pipeline_jobs(repository, number),
            reviews=await self._get_approvals(repository, number),
            comments_count=data.get("user_notes_count") or 0,
            changed_files=_changed_files(data.get("changes_count")),
            state=state,
            url=data.get("web_url"),
            description=data.get("description"),
            head_sha=data.get("sha"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            is_cross_repository=source_project != target_project,
        )

    async def _get_pipeline_jobs(self, repository: Repository, number: int) -> list[CiCheck]:
        try:
            pipelines = await self._get_json(
                f"{self._merge_request_path(repository, number)}/pipelines",
                resource=f"Pipelines for merge request !{number}",
            )
            if not isinstance(pipelines, list) or not pipelines:
                return []
            # Pipelines are returned newest first
            pipeline_id = pipelines[0].get("id")
            jobs = await self._get_paginated(
                f"{self._project_path(repository)}/pipelines/{pipeline_id}/jobs",
                resource=f"Jobs for pipeline {pipeline_id}",
            )
        except (NotFoundError, ProviderAPIError) as e:
            logger.info(f"No pipeline jobs available for {repository.full_name}!{number}: {e.message}")
            return []
        return [map_job(job) for job in jobs]

    async def _get_approvals(self, repository: Repository, number: int) -> list[Review]:
        try:
            data = await self._get_json(
                f"{self._merge_request_path(repository, number)}/approvals",
                resource=f"Approvals for merge request !{number}",
            )
        except (NotFoundError, ProviderAPIError) as e:
            logger.info(f"No approvals available for {repository.full_name}!{number}: {e.message}")
            return []

        approved_by = data.get("approved_by") if isinstance(data, dict) else None
        reviews = []
        for approval in approved_by or []:
            user = approval.get("user") if isinstance(approval, dict) else None
            user = user or {}
            if user.get("username"):
                reviews.append(Review(author=user["username"], state=ReviewState.APPROVED))
        return reviews

    async def get_pull_request_diff(self, repository: Repository, number: int) -> list[DiffFile]:
        entries = await self._get_paginated(
            f"{self._merge_request_path(repository, number)}/diffs",
            resource=self._merge_request_resource(repository, number),
        )
        return normalize_gitlab_diffs(entries)

    async def merge_pull_request(
        self,
        repository: Repository,
        number: int,
        strategy: MergeStrategy,
        delete_branch: bool = False,
        source_branch: str | None = None,
    ) -> MergeOutcome:
        resource = self._merge_request_resource(repository, number)
        if strategy == MergeStrategy.REBASE:
            # Merge commits vs fast-forward is a project setting; only squash is chosen per request.
            logger.info(f"GitLab merges {resource} with the project's configured merge method")

        response = await self._request(
            "PUT",
            f"{self._merge_request_path(repository, number)}/merge",
            resource=resource,
            json={
                "squash": strategy == MergeStrategy.SQUASH,
                "should_remove_source_branch": delete_branch,
            },
            error_overrides={
                405: PreconditionError(f"{resource} is not mergeable; refresh and try again"),
                406: ConflictError(f"{resource} has conflicts; refresh and try again"),
                409: ConflictError(f"{resource} head changed since it was selected; refresh and try again"),
                422: PreconditionError(f"{resource} cannot be merged yet; refresh and try again"),
            },
        )
        data = self._json(response)
        merged = data.get("state") == "merged"
        return MergeOutcome(
            merged=merged,
            sha=data.get("merge_commit_sha") or data.get("squash_commit_sha"),
            message="Merged" if merged else f"Merge request state is {data.get('state')}",
        )
