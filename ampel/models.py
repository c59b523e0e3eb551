"""Canonical, provider-agnostic domain model."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

if TYPE_CHECKING:
    from ampel.services.status import AmpelStatus


class Provider(str, Enum):
    """Supported source-control providers."""

    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"


class PullRequestState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


class CiCheckStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class CiCheckConclusion(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"


class ReviewState(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"


class DiffStatus(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    COPIED = "copied"
    UNCHANGED = "unchanged"


class MergeStrategy(str, Enum):
    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"


class MergeItemStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Repository:
    """A repository discovered through a provider account."""

    id: str
    provider: Provider
    owner: str
    name: str
    full_name: str
    provider_id: str = ""
    account_id: str = ""
    description: str | None = None
    url: str | None = None
    default_branch: str = "main"
    is_private: bool = False
    is_archived: bool = False


# Provider listings return the same shape as tracked repositories.
DiscoveredRepository = Repository


@dataclass(frozen=True)
class CiCheck:
    name: str
    status: CiCheckStatus
    conclusion: CiCheckConclusion | None = None  # Only meaningful when status is completed
    url: str | None = None


@dataclass(frozen=True)
class Review:
    author: str
    state: ReviewState
    submitted_at: datetime | None = None


@dataclass
class PullRequest:
    """Canonical pull request.

    ``status`` is always derived from the other fields and is never stored.
    """

    id: str
    provider: Provider
    repository_id: str
    number: int
    title: str
    author: str
    source_branch: str
    target_branch: str
    is_draft: bool = False
    has_conflicts: bool = False
    is_mergeable: bool | None = None  # None means the provider has not computed it yet
    ci_checks: list[CiCheck] = field(default_factory=list)
    reviews: list[Review] = field(default_factory=list)
    additions: int = 0
    deletions: int = 0
    comments_count: int = 0
    changed_files: int = 0
    state: PullRequestState = PullRequestState.OPEN
    url: str | None = None
    description: str | None = None
    head_sha: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    is_cross_repository: bool = False  # head branch lives in a fork

    @property
    def status(self) -> "AmpelStatus":
        """Traffic-light status computed from the current field values."""
        from ampel.services.status import classify

        return classify(self)


@dataclass(frozen=True)
class DiffFile:
    file_path: str
    status: DiffStatus
    additions: int
    deletions: int
    changes: int
    patch: str | None = None
    previous_filename: str | None = None
    language: str | None = None
    is_binary: bool = False


@dataclass(frozen=True)
class TokenValidation:
    is_valid: bool
    user_id: str | None = None
    username: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    scopes: list[str] = field(default_factory=list)
    expires_at: datetime | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class MergeOutcome:
    merged: bool
    sha: str | None = None
    message: str = ""


@dataclass(frozen=True)
class MergeItemError:
    code: str
    message: str


@dataclass
class MergeOperationItem:
    """One pull request inside a merge operation, owned exclusively by that operation."""

    pull_request_id: str
    repository_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    attempts: int = 0
    status: MergeItemStatus = MergeItemStatus.PENDING
    error: MergeItemError | None = None
    merge_sha: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in (MergeItemStatus.SUCCEEDED, MergeItemStatus.FAILED)


@dataclass
class MergeOperation:
    strategy: MergeStrategy
    delete_branch: bool
    items: tuple[MergeOperationItem, ...]
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return all(item.is_finished for item in self.items)

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.status == MergeItemStatus.SUCCEEDED)

    @property
    def failed_count(self) -> int:
        return sum(1 for item in self.items if item.status == MergeItemStatus.FAILED)

    @property
    def status(self) -> str:
        """Summary status: pending, running, completed, partial or failed."""
        if all(item.status == MergeItemStatus.PENDING for item in self.items):
            return "pending"
        if not self.is_terminal:
            return "running"
        if self.failed_count == 0:
            return "completed"
        if self.success_count == 0:
            return "failed"
        return "partial"
