"""Tests for the Bitbucket adapter."""

import base64
import json

import httpx
import pytest
from pydantic import SecretStr

from ampel.conf.providers import ProviderSettings
from ampel.errors import AuthError, PreconditionError
from ampel.models import (
    CiCheckConclusion,
    CiCheckStatus,
    DiffStatus,
    MergeStrategy,
    Provider,
    PullRequestState,
    Repository,
    ReviewState,
)
from ampel.services.credentials import ProviderCredentials
from ampel.services.providers.bitbucket import BitbucketProvider, map_commit_status, map_participants

PR_PATH = "/2.0/repositories/team/service/pullrequests/3"

RAW_DIFF = """diff --git a/src/app.py b/src/app.py
index 1..2 100644
--- a/src/app.py
+++ b/src/app.py
@@ -1 +1,2 @@
-print("hi")
+print("hello")
+print("world")
"""


@pytest.fixture
def bitbucket_repository() -> Repository:
    return Repository(
        id="repo-bb",
        provider=Provider.BITBUCKET,
        owner="team",
        name="service",
        full_name="team/service",
        account_id="account-1",
    )


def _provider(handler, username: str | None = "alice") -> BitbucketProvider:
    credentials = ProviderCredentials(token=SecretStr("app-password"), account_id="account-1", username=username)
    return BitbucketProvider(credentials, settings=ProviderSettings(), transport=httpx.MockTransport(handler))


def _routes(routes: dict[tuple[str, str], httpx.Response], calls: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"type": "error"})
        return routes[key]

    return handler


@pytest.mark.asyncio
async def test_uses_basic_auth() -> None:
    calls: list[httpx.Request] = []
    routes = {("GET", "/2.0/user"): httpx.Response(200, json={"uuid": "{u1}", "username": "alice"})}

    async with _provider(_routes(routes, calls)) as provider:
        validation = await provider.validate_credentials()

    expected = base64.b64encode(b"alice:app-password").decode()
    assert calls[0].headers["Authorization"] == f"Basic {expected}"
    assert validation.user_id == "{u1}"
    assert validation.username == "alice"


@pytest.mark.asyncio
async def test_validate_credentials_requires_username() -> None:
    calls: list[httpx.Request] = []

    async with _provider(_routes({}, calls), username=None) as provider:
        with pytest.raises(AuthError, match="username"):
            await provider.validate_credentials()

    assert calls == []


@pytest.mark.asyncio
async def test_list_repositories_follows_next_links() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("page") == "2":
            return httpx.Response(
                200, json={"values": [{"uuid": "{r2}", "full_name": "team/two", "is_private": True}]}
            )
        assert request.url.params["role"] == "member"
        return httpx.Response(
            200,
            json={
                "values": [{"uuid": "{r1}", "full_name": "team/one", "mainbranch": {"name": "trunk"}}],
                "next": "https://api.bitbucket.org/2.0/repositories?role=member&page=2",
            },
        )

    async with _provider(handler) as provider:
        repositories = await provider.list_repositories()

    assert [r.full_name for r in repositories] == ["team/one", "team/two"]
    assert repositories[0].default_branch == "trunk"
    assert repositories[1].is_private
    assert repositories[0].id == "bitbucket:{r1}"


@pytest.mark.asyncio
async def test_get_pull_request(bitbucket_repository) -> None:
    routes = {
        ("GET", PR_PATH): httpx.Response(
            200,
            json={
                "id": 3,
                "title": "Add endpoint",
                "state": "OPEN",
                "draft": False,
                "author": {"nickname": "alice"},
                "source": {"branch": {"name": "endpoint"}, "commit": {"hash": "abc"}},
                "destination": {"branch": {"name": "main"}},
                "comment_count": 2,
                "participants": [
                    {"user": {"nickname": "bob"}, "approved": True, "state": "approved"},
                    {"user": {"nickname": "carol"}, "approved": False, "state": None},
                ],
                "links": {"html": {"href": "https://bitbucket.org/team/service/pull-requests/3"}},
            },
        ),
        ("GET", f"{PR_PATH}/statuses"): httpx.Response(
            200, json={"values": [{"key": "ci", "name": "Pipeline", "state": "INPROGRESS"}]}
        ),
    }

    async with _provider(_routes(routes)) as provider:
        pr = await provider.get_pull_request(bitbucket_repository, 3)

    assert pr.source_branch == "endpoint"
    assert pr.target_branch == "main"
    assert pr.head_sha == "abc"
    assert pr.comments_count == 2
    assert pr.state == PullRequestState.OPEN
    assert pr.url == "https://bitbucket.org/team/service/pull-requests/3"
    assert not pr.is_cross_repository
    assert [(r.author, r.state) for r in pr.reviews] == [("bob", ReviewState.APPROVED)]
    assert [(c.name, c.status) for c in pr.ci_checks] == [("Pipeline", CiCheckStatus.IN_PROGRESS)]


def test_map_participants_changes_requested() -> None:
    reviews = map_participants(
        [
            {"user": {"nickname": "dave"}, "approved": False, "state": "changes_requested"},
            "garbage",
        ]
    )

    assert [(r.author, r.state) for r in reviews] == [("dave", ReviewState.CHANGES_REQUESTED)]


@pytest.mark.parametrize(
    "state,expected_status,expected_conclusion",
    [
        ("SUCCESSFUL", CiCheckStatus.COMPLETED, CiCheckConclusion.SUCCESS),
        ("FAILED", CiCheckStatus.COMPLETED, CiCheckConclusion.FAILURE),
        ("STOPPED", CiCheckStatus.COMPLETED, CiCheckConclusion.FAILURE),
        ("INPROGRESS", CiCheckStatus.IN_PROGRESS, None),
        ("PAUSED", CiCheckStatus.QUEUED, None),
    ],
)
def test_map_commit_status(state, expected_status, expected_conclusion) -> None:
    check = map_commit_status({"key": "ci", "state": state})

    assert check.status == expected_status
    assert check.conclusion == expected_conclusion


@pytest.mark.asyncio
async def test_get_pull_request_diff_attaches_patches(bitbucket_repository) -> None:
    routes = {
        ("GET", f"{PR_PATH}/diffstat"): httpx.Response(
            200,
            json={
                "values": [
                    {
                        "status": "modified",
                        "lines_added": 2,
                        "lines_removed": 1,
                        "old": {"path": "src/app.py"},
                        "new": {"path": "src/app.py"},
                    },
                    {"status": "MOVED", "old": {"path": "a.txt"}, "new": {"path": "b.txt"}},
                ]
            },
        ),
        ("GET", f"{PR_PATH}/diff"): httpx.Response(200, text=RAW_DIFF),
    }

    async with _provider(_routes(routes)) as provider:
        files = await provider.get_pull_request_diff(bitbucket_repository, 3)

    assert files[0].status == DiffStatus.MODIFIED
    assert files[0].patch is not None
    assert files[0].patch.startswith("@@ -1 +1,2 @@")
    assert files[0].language == "Python"
    assert files[1].status == DiffStatus.RENAMED
    assert files[1].previous_filename == "a.txt"
    assert files[1].patch is None


@pytest.mark.asyncio
async def test_get_pull_request_diff_without_raw_diff(bitbucket_repository) -> None:
    routes = {
        ("GET", f"{PR_PATH}/diffstat"): httpx.Response(
            200, json={"values": [{"status": "added", "lines_added": 1, "new": {"path": "x.go"}}]}
        ),
    }

    async with _provider(_routes(routes)) as provider:
        files = await provider.get_pull_request_diff(bitbucket_repository, 3)

    assert files[0].status == DiffStatus.ADDED
    assert files[0].patch is None


@pytest.mark.parametrize(
    "strategy,native",
    [
        (MergeStrategy.MERGE, "merge_commit"),
        (MergeStrategy.SQUASH, "squash"),
        (MergeStrategy.REBASE, "fast_forward"),
    ],
)
@pytest.mark.asyncio
async def test_merge_strategy_mapping(bitbucket_repository, strategy: MergeStrategy, native: str) -> None:
    calls: list[httpx.Request] = []
    routes = {
        ("POST", f"{PR_PATH}/merge"): httpx.Response(200, json={"state": "MERGED", "merge_commit": {"hash": "beef"}})
    }

    async with _provider(_routes(routes, calls)) as provider:
        outcome = await provider.merge_pull_request(bitbucket_repository, 3, strategy, delete_branch=True)

    body = json.loads(calls[0].content)
    assert body["merge_strategy"] == native
    assert body["close_source_branch"] is True
    assert outcome.merged
    assert outcome.sha == "beef"


@pytest.mark.asyncio
async def test_merge_bad_request_is_precondition(bitbucket_repository) -> None:
    routes = {("POST", f"{PR_PATH}/merge"): httpx.Response(400, json={"type": "error"})}

    async with _provider(_routes(routes)) as provider:
        with pytest.raises(PreconditionError, match="refresh"):
            await provider.merge_pull_request(bitbucket_repository, 3, MergeStrategy.MERGE)
