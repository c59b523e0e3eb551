from io import StringIO

import pytest
from rich.console import Console

from ampel.models import CiCheck, CiCheckConclusion, CiCheckStatus, DiffStatus, Review, ReviewState
from ampel.services.formatter import (
    format_diff,
    format_merge_result,
    format_pull_request_status,
    format_repositories,
    show_progress,
)
from ampel.services.merge import BulkMergeResult, MergeItemResult
from ampel.services.pull_requests import DiffFileResponse, DiffResponse, PullRequestStatus
from ampel.services.status import AmpelStatus, collect_blockers, status_from_blockers


@pytest.fixture
def output() -> StringIO:
    return StringIO()


@pytest.fixture
def console(output: StringIO) -> Console:
    return Console(file=output, width=120)


def _status(pull_request) -> PullRequestStatus:
    blockers = collect_blockers(pull_request)
    return PullRequestStatus(pull_request=pull_request, status=status_from_blockers(blockers), blockers=blockers)


def test_format_green_pull_request(make_pull_request, console: Console, output: StringIO) -> None:
    format_pull_request_status(_status(make_pull_request(url="https://github.com/o/r/pull/1")), console)

    text = output.getvalue()
    assert "#1 GREEN" in text
    assert "Add feature" in text
    assert "feature -> main" in text
    assert "CI Checks" in text
    assert "Ready to merge." in text
    assert "https://github.com/o/r/pull/1" in text


def test_format_red_pull_request_lists_blockers(make_pull_request, console: Console, output: StringIO) -> None:
    pull_request = make_pull_request(
        ci_checks=[CiCheck("tests", CiCheckStatus.COMPLETED, CiCheckConclusion.FAILURE)],
        reviews=[Review("bob", ReviewState.CHANGES_REQUESTED)],
        is_draft=True,
    )

    result = _status(pull_request)
    format_pull_request_status(result, console)

    text = output.getvalue()
    assert result.status == AmpelStatus.RED
    assert "RED" in text
    assert "CI checks failed: tests" in text
    assert "Changes requested by bob" in text
    assert "Pull request is a draft" in text
    assert "Ready to merge." not in text


def test_format_diff(console: Console, output: StringIO) -> None:
    diff = DiffResponse(
        files=[
            DiffFileResponse(
                file_path="src/new.py",
                status=DiffStatus.RENAMED,
                additions=4,
                deletions=2,
                changes=6,
                previous_filename="src/old.py",
                language="Python",
                patch="@@ -1 +1 @@\n-a\n+b",
            ),
            DiffFileResponse(
                file_path="logo.png", status=DiffStatus.ADDED, additions=0, deletions=0, changes=0, is_binary=True
            ),
        ],
        total_files=2,
        total_additions=4,
        total_deletions=2,
        cached=True,
    )

    format_diff(diff, console=console)

    text = output.getvalue()
    assert "Changed Files" in text
    assert "src/old.py -> src/new.py" in text
    assert "binary" in text
    assert "2 files" in text
    assert "(cached)" in text
    assert "+b" not in text


def test_format_diff_with_patches(console: Console, output: StringIO) -> None:
    diff = DiffResponse(
        files=[
            DiffFileResponse(
                file_path="a.txt", status=DiffStatus.MODIFIED, additions=1, deletions=1, changes=2, patch="-old\n+new"
            )
        ],
        total_files=1,
        total_additions=1,
        total_deletions=1,
    )

    format_diff(diff, show_patches=True, console=console)

    text = output.getvalue()
    assert "+new" in text
    assert "(cached)" not in text


def test_format_empty_diff(console: Console, output: StringIO) -> None:
    format_diff(DiffResponse(files=[], total_files=0, total_additions=0, total_deletions=0), console=console)

    assert "no file changes" in output.getvalue()


def test_format_merge_result(console: Console, output: StringIO) -> None:
    result = BulkMergeResult(
        operation_id="op-7",
        status="partial",
        total=2,
        success=1,
        failed=1,
        results=[
            MergeItemResult(pull_request_id="repo#1", success=True, merge_sha="abc123", attempts=1),
            MergeItemResult(
                pull_request_id="repo#2",
                success=False,
                error="Pull request #2 has merge conflicts; refresh and try again",
                error_code="conflict",
                attempts=1,
            ),
        ],
    )

    format_merge_result(result, console)

    text = output.getvalue()
    assert "Merge Operation op-7" in text
    assert "abc123" in text
    assert "conflict" in text
    assert "1 succeeded" in text
    assert "1 failed" in text


def test_format_empty_merge_result(console: Console, output: StringIO) -> None:
    result = BulkMergeResult(operation_id="op-8", status="completed", total=0, success=0, failed=0, results=[])

    format_merge_result(result, console)

    assert "No pull requests were merged." in output.getvalue()


def test_format_repositories(repository, console: Console, output: StringIO) -> None:
    format_repositories([repository], console)

    text = output.getvalue()
    assert "octocat/hello-world" in text
    assert "github" in text
    assert "public" in text
    assert "1 repositories" in text


def test_show_progress() -> None:
    progress = show_progress("Loading...")

    assert len(progress.tasks) == 1
    assert progress.tasks[0].description == "Loading..."


def test_format_pull_request_with_brackets_in_provider_text(
    make_pull_request, console: Console, output: StringIO
) -> None:
    pull_request = make_pull_request(
        title="Handle [/] in config parser",
        source_branch="fix/[bold]",
        author="[red]mallory",
        ci_checks=[CiCheck("lint [py3.12]", CiCheckStatus.COMPLETED, CiCheckConclusion.FAILURE)],
    )

    format_pull_request_status(_status(pull_request), console)

    text = output.getvalue()
    assert "Handle [/] in config parser" in text
    assert "fix/[bold] -> main by [red]mallory" in text
    assert "lint [py3.12]" in text
    assert "CI checks failed: lint [py3.12]" in text


def test_format_diff_and_merge_result_with_brackets(console: Console, output: StringIO) -> None:
    diff = DiffResponse(
        files=[
            DiffFileResponse(
                file_path="app/[id]/page.tsx", status=DiffStatus.ADDED, additions=3, deletions=0, changes=3
            )
        ],
        total_files=1,
        total_additions=3,
        total_deletions=0,
    )
    result = BulkMergeResult(
        operation_id="op-9",
        status="failed",
        total=1,
        success=0,
        failed=1,
        results=[
            MergeItemResult(
                pull_request_id="repo#3",
                success=False,
                error="Branch [/main] is protected; refresh and try again",
                error_code="precondition",
            )
        ],
    )

    format_diff(diff, console=console)
    format_merge_result(result, console)

    text = output.getvalue()
    assert "app/[id]/page.tsx" in text
    assert "Branch [/main] is protected" in text
