"""Background execution of merge operations.

This module wraps FastAPI BackgroundTasks in a small job queue interface so the
HTTP layer can accept a bulk merge, return the operation id immediately and
poll the operation while it runs.
"""

import inspect
from collections.abc import Awaitable, Callable
from logging import getLogger
from typing import Protocol

from fastapi import BackgroundTasks

from ampel.errors import AmpelError
from ampel.services.merge import BulkMergeRequest, BulkMergeResult, MergeOrchestrator

logger = getLogger(__name__)

CompletionCallback = Callable[[BulkMergeResult], Awaitable[None] | None]


class JobQueue(Protocol):
    def enqueue(self, operation_id: str) -> None: ...

    def on_complete(self, operation_id: str, callback: CompletionCallback) -> None: ...


class BackgroundMergeQueue:
    """Job queue that runs each operation once as a FastAPI background task."""

    def __init__(self, orchestrator: MergeOrchestrator, background_tasks: BackgroundTasks) -> None:
        self.orchestrator = orchestrator
        self.background_tasks = background_tasks
        self._callbacks: dict[str, list[CompletionCallback]] = {}

    def enqueue(self, operation_id: str) -> None:
        self.background_tasks.add_task(self.run_operation, operation_id)
        logger.info(f"Scheduled merge operation {operation_id}")

    def on_complete(self, operation_id: str, callback: CompletionCallback) -> None:
        self._callbacks.setdefault(operation_id, []).append(callback)

    async def run_operation(self, operation_id: str) -> BulkMergeResult | None:
        """Execute an operation and notify its completion callbacks.

        Failures are logged rather than raised, since nothing awaits a background
        task. Item level failures are already part of the result.
        """
        callbacks = self._callbacks.pop(operation_id, [])
        try:
            result = await self.orchestrator.execute(operation_id)
        except AmpelError as e:
            logger.error(f"Merge operation {operation_id} could not run: {e}")
            return None
        except Exception as e:
            logger.exception(f"Merge operation {operation_id} crashed: {e}")
            return None

        for callback in callbacks:
            try:
                outcome = callback(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.exception(f"Completion callback for merge operation {operation_id} failed: {e}")
        return result


async def schedule_bulk_merge(
    background_tasks: BackgroundTasks,
    orchestrator: MergeOrchestrator,
    request: BulkMergeRequest,
    on_complete: CompletionCallback | None = None,
) -> str:
    """Validate a bulk merge request and queue it for background execution.

    Args:
        background_tasks: FastAPI BackgroundTasks instance
        orchestrator: Orchestrator that owns the operation
        request: The bulk merge request
        on_complete: Optional callback receiving the final result

    Returns:
        The id of the created operation, for polling

    Raises:
        ValidationError: If the request is rejected before anything is queued
    """
    operation = await orchestrator.create_operation(request)
    queue = BackgroundMergeQueue(orchestrator, background_tasks)
    if on_complete is not None:
        queue.on_complete(operation.id, on_complete)
    queue.enqueue(operation.id)
    return operation.id
