"""Bulk merge orchestration.

Items are partitioned by repository. Items inside a partition run strictly in
submission order with ``merge_delay_seconds`` between them; partitions run as
concurrent tasks (or one after another when ``merge_concurrent_repositories``
is off) and report finished items over a queue to a single aggregator, which
is the only place the operation is persisted.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging import getLogger
from typing import Protocol, TypeVar

from pydantic import BaseModel

from ampel.conf.merge import MergeSettings
from ampel.errors import (
    AmpelError,
    AuthError,
    ErrorCode,
    NotFoundError,
    OperationInProgressError,
    OperationNotFoundError,
    PreconditionError,
    RateLimitedError,
    ValidationError,
)
from ampel.models import (
    MergeItemError,
    MergeItemStatus,
    MergeOperation,
    MergeOperationItem,
    MergeOutcome,
    MergeStrategy,
    PullRequest,
    PullRequestState,
    Repository,
)
from ampel.services.credentials import TokenAccessor
from ampel.services.providers import GitProvider, ProviderFactory
from ampel.services.status import AmpelStatus, classify

logger = getLogger(__name__)

T = TypeVar("T")


class BulkMergeRequest(BaseModel):
    pull_request_ids: list[str]
    strategy: MergeStrategy | None = None
    delete_branch: bool | None = None


class MergeItemResult(BaseModel):
    pull_request_id: str
    success: bool
    error: str | None = None
    error_code: str | None = None
    merge_sha: str | None = None
    attempts: int = 0


class BulkMergeResult(BaseModel):
    operation_id: str
    status: str
    total: int
    success: int
    failed: int
    results: list[MergeItemResult]


@dataclass(frozen=True)
class MergeTarget:
    """Where a tracked pull request lives."""

    pull_request_id: str
    repository: Repository
    number: int


class PullRequestDirectory(Protocol):
    """Resolves tracked pull request ids to their repository and number."""

    async def resolve(self, pull_request_id: str) -> MergeTarget | None: ...


class InMemoryPullRequestDirectory:
    def __init__(self, targets: Iterable[MergeTarget] = ()) -> None:
        self._targets = {target.pull_request_id: target for target in targets}

    def add(self, target: MergeTarget) -> None:
        self._targets[target.pull_request_id] = target

    async def resolve(self, pull_request_id: str) -> MergeTarget | None:
        return self._targets.get(pull_request_id)


class MergeOperationStore(Protocol):
    async def save(self, operation: MergeOperation) -> None: ...

    async def get(self, operation_id: str) -> MergeOperation | None: ...


class InMemoryMergeOperationStore:
    def __init__(self) -> None:
        self._operations: dict[str, MergeOperation] = {}

    async def save(self, operation: MergeOperation) -> None:
        self._operations[operation.id] = operation

    async def get(self, operation_id: str) -> MergeOperation | None:
        return self._operations.get(operation_id)


@dataclass
class _Execution:
    """State shared by the partitions of one execution of an operation."""

    operation: MergeOperation
    targets: dict[str, MergeTarget]
    # account id -> message of the account-wide auth failure
    failed_accounts: dict[str, str] = field(default_factory=dict)


class MergeOrchestrator:
    """Drives provider adapters to merge many pull requests with per-item outcomes."""

    def __init__(
        self,
        settings: MergeSettings,
        provider_factory: ProviderFactory,
        token_accessor: TokenAccessor,
        directory: PullRequestDirectory,
        store: MergeOperationStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Pacing, batch size and backoff policy
            provider_factory: Builds an adapter per repository provider
            token_accessor: Per-account credentials for this orchestrator's lifetime
            directory: Resolves pull request ids to repositories
            store: Where operations are kept; in-memory when omitted
            sleep: Coroutine used for pacing and backoff waits
        """
        self.settings = settings
        self.provider_factory = provider_factory
        self.token_accessor = token_accessor
        self.directory = directory
        self.store = store or InMemoryMergeOperationStore()
        self._sleep = sleep
        self._running: set[str] = set()

    async def create_operation(self, request: BulkMergeRequest) -> MergeOperation:
        """Validate a bulk merge request and record it as a pending operation.

        Raises:
            ValidationError: If the request is empty, too large, has duplicates or
                references unknown pull requests. No provider is contacted.
        """
        ids = request.pull_request_ids
        if not ids:
            raise ValidationError("Select at least one pull request to merge")

        max_batch = self.settings.merge_max_batch_size
        if len(ids) > max_batch:
            raise ValidationError(f"Cannot merge more than {max_batch} pull requests at once (got {len(ids)})")

        duplicates = sorted({pr_id for pr_id in ids if ids.count(pr_id) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate pull requests in request: {', '.join(duplicates)}")

        targets = []
        missing = []
        for pr_id in ids:
            target = await self.directory.resolve(pr_id)
            if target is None:
                missing.append(pr_id)
            else:
                targets.append(target)
        if missing:
            raise ValidationError(f"Unknown pull requests: {', '.join(missing)}")

        operation = MergeOperation(
            strategy=request.strategy or self.settings.default_merge_strategy,
            delete_branch=(
                request.delete_branch if request.delete_branch is not None else self.settings.delete_branch_default
            ),
            items=tuple(
                MergeOperationItem(pull_request_id=target.pull_request_id, repository_id=target.repository.id)
                for target in targets
            ),
        )
        await self.store.save(operation)
        logger.info(f"Created merge operation {operation.id} with {len(operation.items)} items")
        return operation

    async def get_operation(self, operation_id: str) -> MergeOperation:
        operation = await self.store.get(operation_id)
        if operation is None:
            raise OperationNotFoundError(f"Merge operation {operation_id} not found")
        return operation

    async def execute(self, operation_id: str) -> BulkMergeResult:
        """Run every pending item of an operation.

        This is the entry point a job queue calls once per operation.
        """
        operation = await self.get_operation(operation_id)
        pending = [item for item in operation.items if item.status == MergeItemStatus.PENDING]
        await self._run(operation, pending)
        return self._result(operation, operation.items)

    async def bulk_merge(self, request: BulkMergeRequest) -> BulkMergeResult:
        """Create an operation and execute it synchronously."""
        operation = await self.create_operation(request)
        return await self.execute(operation.id)

    async def retry_failed(self, operation_id: str) -> BulkMergeResult:
        """Re-execute only the failed items of an operation.

        Succeeded items are never touched. With no failed items this is a no-op
        and the result lists no items.
        """
        operation = await self.get_operation(operation_id)
        failed = [item for item in operation.items if item.status == MergeItemStatus.FAILED]
        if not failed:
            logger.info(f"Merge operation {operation_id} has no failed items to retry")
            return self._result(operation, [])

        if operation.id in self._running:
            raise OperationInProgressError(f"Merge operation {operation_id} is still running")

        for item in failed:
            item.status = MergeItemStatus.PENDING
            item.error = None
        operation.completed_at = None
        logger.info(f"Retrying {len(failed)} failed items of merge operation {operation_id}")

        await self._run(operation, failed)
        return self._result(operation, failed)

    async def _run(self, operation: MergeOperation, items: list[MergeOperationItem]) -> None:
        if operation.id in self._running:
            raise OperationInProgressError(f"Merge operation {operation.id} is already running")
        if not items:
            return

        self._running.add(operation.id)
        try:
            targets = {}
            for item in items:
                target = await self.directory.resolve(item.pull_request_id)
                if target is not None:
                    targets[item.pull_request_id] = target
            execution = _Execution(operation=operation, targets=targets)

            partitions = self._partition(items)
            queue: asyncio.Queue[MergeOperationItem | None] = asyncio.Queue()
            if self.settings.merge_concurrent_repositories:
                workers = [
                    asyncio.create_task(self._process_partitions(execution, [partition], queue))
                    for partition in partitions
                ]
            else:
                workers = [asyncio.create_task(self._process_partitions(execution, partitions, queue))]

            await self._collect(operation, queue, len(workers))
            await asyncio.gather(*workers)

            if operation.is_terminal:
                operation.completed_at = datetime.now(timezone.utc)
            await self.store.save(operation)
            logger.info(
                f"Merge operation {operation.id} finished as {operation.status}: "
                f"{operation.success_count} succeeded, {operation.failed_count} failed"
            )
        finally:
            self._running.discard(operation.id)

    @staticmethod
    def _partition(items: list[MergeOperationItem]) -> list[list[MergeOperationItem]]:
        partitions: dict[str, list[MergeOperationItem]] = {}
        for item in items:
            partitions.setdefault(item.repository_id, []).append(item)
        return list(partitions.values())

    async def _collect(
        self,
        operation: MergeOperation,
        queue: "asyncio.Queue[MergeOperationItem | None]",
        workers: int,
    ) -> None:
        """Aggregate finished items until every worker has signalled completion."""
        done = 0
        while done < workers:
            item = await queue.get()
            if item is None:
                done += 1
                continue
            await self.store.save(operation)

    async def _process_partitions(
        self,
        execution: _Execution,
        partitions: list[list[MergeOperationItem]],
        queue: "asyncio.Queue[MergeOperationItem | None]",
    ) -> None:
        try:
            for partition in partitions:
                for index, item in enumerate(partition):
                    if index > 0 and self.settings.merge_delay_seconds > 0:
                        await self._sleep(self.settings.merge_delay_seconds)
                    await self._process_item(execution, item)
                    await queue.put(item)
        finally:
            await queue.put(None)

    async def _process_item(self, execution: _Execution, item: MergeOperationItem) -> None:
        operation = execution.operation
        item.status = MergeItemStatus.IN_PROGRESS
        item.attempts += 1
        logger.info(f"Merging {item.pull_request_id} (operation {operation.id}, attempt {item.attempts})")

        target = execution.targets.get(item.pull_request_id)
        if target is None:
            self._fail(item, NotFoundError("Pull request is no longer tracked; refresh and try again"))
            return

        account_id = target.repository.account_id
        if account_id in execution.failed_accounts:
            self._fail(item, AuthError(execution.failed_accounts[account_id]))
            return

        try:
            credentials = await self.token_accessor.get(account_id)
            async with self.provider_factory.create(target.repository.provider, credentials) as adapter:
                pull_request = await self._revalidate(adapter, target)
                source_branch = pull_request.source_branch or None
                if operation.delete_branch and pull_request.is_cross_repository:
                    logger.info(f"Leaving the fork branch of {item.pull_request_id} in place")
                    source_branch = None
                outcome = await self._with_backoff(
                    f"merge {item.pull_request_id}",
                    lambda: adapter.merge_pull_request(
                        target.repository,
                        target.number,
                        operation.strategy,
                        delete_branch=operation.delete_branch,
                        source_branch=source_branch,
                    ),
                )
        except AuthError as e:
            if e.account_fatal:
                logger.warning(f"Credentials for account {account_id} rejected, skipping its remaining items")
                execution.failed_accounts[account_id] = e.message
                self.token_accessor.invalidate(account_id)
            self._fail(item, e)
        except AmpelError as e:
            self._fail(item, e)
        except Exception:
            logger.exception(f"Unexpected error merging {item.pull_request_id} in operation {operation.id}")
            self._fail_with(item, ErrorCode.UNEXPECTED, "Unexpected error while merging; try again later")
        else:
            self._record_outcome(item, outcome)

    async def _revalidate(self, adapter: GitProvider, target: MergeTarget) -> PullRequest:
        """Fetch the pull request again and make sure it can still be merged.

        Raises:
            PreconditionError: If the pull request changed since it was selected
        """
        pull_request = await self._with_backoff(
            f"refresh {target.pull_request_id}",
            lambda: adapter.get_pull_request(target.repository, target.number),
        )

        reason = None
        if pull_request.state != PullRequestState.OPEN:
            reason = f"is already {pull_request.state.value}"
        elif pull_request.has_conflicts:
            reason = "has merge conflicts"
        elif pull_request.is_mergeable is False:
            reason = "is not mergeable"
        elif classify(pull_request, self.settings.skip_review_requirement) == AmpelStatus.RED:
            reason = "has failing checks or requested changes"

        if reason:
            raise PreconditionError(f"Pull request #{target.number} {reason}; refresh and try again")
        return pull_request

    async def _with_backoff(self, description: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a provider call, retrying only when the provider reports rate limiting."""
        attempt = 0
        while True:
            try:
                return await call()
            except RateLimitedError as e:
                attempt += 1
                if attempt >= self.settings.merge_rate_limit_max_attempts:
                    logger.warning(f"Giving up on {description} after {attempt} rate-limited attempts")
                    raise
                wait_time = self._backoff_delay(attempt, e.retry_after)
                logger.warning(
                    f"Rate limited during {description} (attempt {attempt}/"
                    f"{self.settings.merge_rate_limit_max_attempts}). Waiting {wait_time} seconds before retry..."
                )
                await self._sleep(wait_time)

    def _backoff_delay(self, attempt: int, retry_after: float | None) -> float:
        if retry_after is not None:
            wait_time = retry_after
        else:
            wait_time = self.settings.merge_backoff_base_seconds * 2 ** (attempt - 1)
        return min(wait_time, self.settings.merge_backoff_max_seconds)

    def _record_outcome(self, item: MergeOperationItem, outcome: MergeOutcome) -> None:
        if not outcome.merged:
            message = outcome.message or "Provider did not merge the pull request"
            self._fail(item, PreconditionError(f"{message}; refresh and try again"))
            return
        item.status = MergeItemStatus.SUCCEEDED
        item.merge_sha = outcome.sha
        item.error = None
        logger.info(f"Merged {item.pull_request_id} ({outcome.sha})")

    def _fail(self, item: MergeOperationItem, error: AmpelError) -> None:
        self._fail_with(item, error.code, error.message)

    def _fail_with(self, item: MergeOperationItem, code: ErrorCode, message: str) -> None:
        item.status = MergeItemStatus.FAILED
        item.error = MergeItemError(code=code.value, message=message)
        logger.info(f"Merge of {item.pull_request_id} failed: [{code.value}] {message}")

    @staticmethod
    def _result(operation: MergeOperation, items: Iterable[MergeOperationItem]) -> BulkMergeResult:
        results = [
            MergeItemResult(
                pull_request_id=item.pull_request_id,
                success=item.status == MergeItemStatus.SUCCEEDED,
                error=item.error.message if item.error else None,
                error_code=item.error.code if item.error else None,
                merge_sha=item.merge_sha,
                attempts=item.attempts,
            )
            for item in items
        ]
        return BulkMergeResult(
            operation_id=operation.id,
            status=operation.status,
            total=len(results),
            success=sum(1 for result in results if result.success),
            failed=sum(1 for result in results if not result.success),
            results=results,
        )
