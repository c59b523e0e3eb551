"""Tests for the traffic-light status classifier."""

import itertools

import pytest

from ampel.models import CiCheck, CiCheckConclusion, CiCheckStatus, Review, ReviewState
from ampel.services.status import (
    AmpelStatus,
    BlockerKind,
    BlockerSeverity,
    classify,
    collect_blockers,
    get_status_color,
    status_for_repository,
)


def test_green_when_no_blockers(make_pull_request) -> None:
    pr = make_pull_request()

    assert collect_blockers(pr) == []
    assert classify(pr) == AmpelStatus.GREEN
    assert pr.status == AmpelStatus.GREEN


def test_conflicts_dominate_passing_ci_and_approval(make_pull_request) -> None:
    pr = make_pull_request(has_conflicts=True)

    assert classify(pr) == AmpelStatus.RED
    assert [b.kind for b in collect_blockers(pr)] == [BlockerKind.CONFLICTS]


def test_draft_only_is_yellow(make_pull_request) -> None:
    pr = make_pull_request(is_draft=True)

    blockers = collect_blockers(pr)
    assert classify(pr) == AmpelStatus.YELLOW
    assert [(b.kind, b.severity) for b in blockers] == [(BlockerKind.DRAFT, BlockerSeverity.WARNING)]


@pytest.mark.parametrize("conclusion", [CiCheckConclusion.FAILURE, CiCheckConclusion.TIMED_OUT])
def test_failed_ci_is_red(make_pull_request, conclusion: CiCheckConclusion) -> None:
    pr = make_pull_request(
        ci_checks=[
            CiCheck("lint", CiCheckStatus.COMPLETED, CiCheckConclusion.SUCCESS),
            CiCheck("tests", CiCheckStatus.COMPLETED, conclusion),
        ]
    )

    blockers = collect_blockers(pr)
    assert classify(pr) == AmpelStatus.RED
    assert blockers[0].kind == BlockerKind.CI_FAILED
    assert "tests" in blockers[0].message


def test_pending_ci_is_yellow(make_pull_request) -> None:
    pr = make_pull_request(ci_checks=[CiCheck("tests", CiCheckStatus.IN_PROGRESS)])

    assert classify(pr) == AmpelStatus.YELLOW
    assert collect_blockers(pr)[0].kind == BlockerKind.CI_PENDING


def test_pending_ci_not_reported_when_another_check_failed(make_pull_request) -> None:
    pr = make_pull_request(
        ci_checks=[
            CiCheck("tests", CiCheckStatus.COMPLETED, CiCheckConclusion.FAILURE),
            CiCheck("deploy", CiCheckStatus.QUEUED),
        ]
    )

    kinds = [b.kind for b in collect_blockers(pr)]
    assert BlockerKind.CI_FAILED in kinds
    assert BlockerKind.CI_PENDING not in kinds


def test_completed_check_without_conclusion_is_not_a_blocker(make_pull_request) -> None:
    pr = make_pull_request(ci_checks=[CiCheck("tests", CiCheckStatus.COMPLETED, None)])

    assert classify(pr) == AmpelStatus.GREEN


def test_changes_requested_anywhere_is_red(make_pull_request) -> None:
    pr = make_pull_request(
        reviews=[
            Review("alice", ReviewState.CHANGES_REQUESTED),
            Review("alice", ReviewState.APPROVED),
        ]
    )

    blockers = collect_blockers(pr)
    assert classify(pr) == AmpelStatus.RED
    assert blockers[0].kind == BlockerKind.CHANGES_REQUESTED
    assert "alice" in blockers[0].message


def test_missing_approval_is_yellow(make_pull_request) -> None:
    pr = make_pull_request(reviews=[Review("bob", ReviewState.COMMENTED)])

    assert classify(pr) == AmpelStatus.YELLOW
    assert collect_blockers(pr)[0].kind == BlockerKind.AWAITING_APPROVAL


def test_skip_review_requirement_suppresses_approval_warning(make_pull_request) -> None:
    pr = make_pull_request(reviews=[])

    assert classify(pr) == AmpelStatus.YELLOW
    assert classify(pr, skip_review_requirement=True) == AmpelStatus.GREEN


def test_skip_review_requirement_keeps_changes_requested(make_pull_request) -> None:
    pr = make_pull_request(reviews=[Review("alice", ReviewState.CHANGES_REQUESTED)])

    assert classify(pr, skip_review_requirement=True) == AmpelStatus.RED


def test_all_blockers_collected(make_pull_request) -> None:
    pr = make_pull_request(
        has_conflicts=True,
        is_draft=True,
        ci_checks=[CiCheck("tests", CiCheckStatus.QUEUED)],
        reviews=[],
    )

    assert [b.kind for b in collect_blockers(pr)] == [
        BlockerKind.CONFLICTS,
        BlockerKind.CI_PENDING,
        BlockerKind.AWAITING_APPROVAL,
        BlockerKind.DRAFT,
    ]
    assert classify(pr) == AmpelStatus.RED


def test_status_follows_field_changes(make_pull_request) -> None:
    pr = make_pull_request()
    assert pr.status == AmpelStatus.GREEN

    pr.has_conflicts = True
    assert pr.status == AmpelStatus.RED


CHECK_OPTIONS = [
    [],
    [CiCheck("a", CiCheckStatus.COMPLETED, CiCheckConclusion.SUCCESS)],
    [CiCheck("a", CiCheckStatus.QUEUED)],
    [CiCheck("a", CiCheckStatus.COMPLETED, CiCheckConclusion.TIMED_OUT)],
]
REVIEW_OPTIONS = [
    [],
    [Review("a", ReviewState.APPROVED)],
    [Review("a", ReviewState.COMMENTED)],
    [Review("a", ReviewState.CHANGES_REQUESTED)],
]


def test_classifier_is_total(make_pull_request) -> None:
    """Every combination yields exactly one status, green only without blockers."""
    for is_draft, has_conflicts, checks, reviews in itertools.product(
        [False, True], [False, True], CHECK_OPTIONS, REVIEW_OPTIONS
    ):
        pr = make_pull_request(is_draft=is_draft, has_conflicts=has_conflicts, ci_checks=checks, reviews=reviews)
        status = classify(pr)

        assert status in (AmpelStatus.GREEN, AmpelStatus.YELLOW, AmpelStatus.RED)
        assert (status == AmpelStatus.GREEN) == (collect_blockers(pr) == [])


def test_status_for_repository_is_worst_status() -> None:
    assert status_for_repository([AmpelStatus.GREEN, AmpelStatus.YELLOW]) == AmpelStatus.YELLOW
    assert status_for_repository([AmpelStatus.GREEN, AmpelStatus.RED, AmpelStatus.YELLOW]) == AmpelStatus.RED
    assert status_for_repository([AmpelStatus.GREEN]) == AmpelStatus.GREEN


def test_status_for_repository_without_pull_requests() -> None:
    assert status_for_repository([]) == AmpelStatus.NONE
    assert status_for_repository([AmpelStatus.NONE]) == AmpelStatus.NONE


def test_get_status_color() -> None:
    assert get_status_color(AmpelStatus.RED) == "red"
    assert get_status_color(AmpelStatus.NONE) == "white"
