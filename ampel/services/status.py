"""Traffic-light (ampel) status classification for pull requests."""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from ampel.models import CiCheckConclusion, CiCheckStatus, PullRequest, ReviewState

FAILED_CONCLUSIONS = frozenset({CiCheckConclusion.FAILURE, CiCheckConclusion.TIMED_OUT})
PENDING_STATUSES = frozenset({CiCheckStatus.QUEUED, CiCheckStatus.IN_PROGRESS})


class AmpelStatus(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"
    # Only used for repositories without open pull requests
    NONE = "none"


class BlockerSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class BlockerKind(str, Enum):
    CONFLICTS = "conflicts"
    CI_FAILED = "ci_failed"
    CI_PENDING = "ci_pending"
    CHANGES_REQUESTED = "changes_requested"
    AWAITING_APPROVAL = "awaiting_approval"
    DRAFT = "draft"


@dataclass(frozen=True)
class Blocker:
    kind: BlockerKind
    severity: BlockerSeverity
    message: str


def collect_blockers(pr: PullRequest, skip_review_requirement: bool = False) -> list[Blocker]:
    """Collect every condition preventing a pull request from being green.

    All blockers are returned for display; :func:`classify` only looks at the
    highest severity.

    Args:
        pr: Canonical pull request
        skip_review_requirement: Suppress the missing-approval warning (for
            organizations that do not require reviews)

    Returns:
        Blockers in a stable order: conflicts, CI, reviews, draft
    """
    blockers: list[Blocker] = []

    if pr.has_conflicts:
        blockers.append(Blocker(BlockerKind.CONFLICTS, BlockerSeverity.ERROR, "Pull request has merge conflicts"))

    failed = [
        check.name
        for check in pr.ci_checks
        if check.status == CiCheckStatus.COMPLETED and check.conclusion in FAILED_CONCLUSIONS
    ]
    if failed:
        blockers.append(
            Blocker(BlockerKind.CI_FAILED, BlockerSeverity.ERROR, f"CI checks failed: {', '.join(failed)}")
        )
    else:
        pending = [check.name for check in pr.ci_checks if check.status in PENDING_STATUSES]
        if pending:
            blockers.append(
                Blocker(BlockerKind.CI_PENDING, BlockerSeverity.WARNING, f"CI checks pending: {', '.join(pending)}")
            )

    # Every review counts, so an older "changes requested" is not cleared by a later approval.
    requesters = sorted({review.author for review in pr.reviews if review.state == ReviewState.CHANGES_REQUESTED})
    if requesters:
        blockers.append(
            Blocker(
                BlockerKind.CHANGES_REQUESTED,
                BlockerSeverity.ERROR,
                f"Changes requested by {', '.join(requesters)}",
            )
        )
    elif not skip_review_requirement and not any(review.state == ReviewState.APPROVED for review in pr.reviews):
        blockers.append(Blocker(BlockerKind.AWAITING_APPROVAL, BlockerSeverity.WARNING, "Awaiting approval"))

    if pr.is_draft:
        blockers.append(Blocker(BlockerKind.DRAFT, BlockerSeverity.WARNING, "Pull request is a draft"))

    return blockers


def status_from_blockers(blockers: Iterable[Blocker]) -> AmpelStatus:
    severities = {blocker.severity for blocker in blockers}
    if BlockerSeverity.ERROR in severities:
        return AmpelStatus.RED
    if BlockerSeverity.WARNING in severities:
        return AmpelStatus.YELLOW
    return AmpelStatus.GREEN


def classify(pr: PullRequest, skip_review_requirement: bool = False) -> AmpelStatus:
    """Reduce a pull request to green, yellow or red."""
    return status_from_blockers(collect_blockers(pr, skip_review_requirement))


def status_for_repository(pr_statuses: Iterable[AmpelStatus]) -> AmpelStatus:
    """Aggregate status for a repository: the worst status among its open pull requests."""
    statuses = {status for status in pr_statuses if status != AmpelStatus.NONE}
    if not statuses:
        return AmpelStatus.NONE
    if AmpelStatus.RED in statuses:
        return AmpelStatus.RED
    if AmpelStatus.YELLOW in statuses:
        return AmpelStatus.YELLOW
    return AmpelStatus.GREEN


def get_status_color(status: AmpelStatus) -> str:
    """Get the Rich color name used to render a status."""
    color_map = {
        AmpelStatus.GREEN: "green",
        AmpelStatus.YELLOW: "yellow",
        AmpelStatus.RED: "red",
    }
    return color_map.get(status, "white")
