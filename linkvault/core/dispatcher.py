"""Claims queued tasks and runs them through the content pipeline."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from linkvault.core.errors import TaskError

if TYPE_CHECKING:
    from linkvault.core.pipeline import ContentPipeline
    from linkvault.core.task_queue import Task, TaskStore

logger = logging.getLogger(__name__)


@dataclass
class WorkerReport:
    """Outcome of one worker run."""

    processed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.processed) + len(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": len(self.processed),
            "failed": len(self.failed),
            "taskIds": {"processed": self.processed, "failed": self.failed},
        }


async def process_task(task: Task, store: TaskStore, pipeline: ContentPipeline) -> bool:
    """Run one claimed task and record the outcome.

    Returns True when the task completed. A TaskError is retried only if
    its ``retriable`` flag is set; any other exception is retried.
    """
    logger.info(f"Processing task {task.id} ({task.task_type.value} {task.entity_type} {task.entity_id})")
    try:
        result = await pipeline.run(task)
    except TaskError as e:
        store.fail(task.id, str(e), should_retry=e.retriable)
        return False
    except Exception as e:
        logger.exception(f"Unexpected error in task {task.id}")
        store.fail(task.id, f"{type(e).__name__}: {e}", should_retry=True)
        return False

    store.complete(task.id, result)
    return True


async def run_worker(
    store: TaskStore,
    pipeline: ContentPipeline,
    max_tasks: int = 10,
    owner_id: str | None = None,
) -> WorkerReport:
    """Claim and process up to ``max_tasks`` tasks, one at a time."""
    report = WorkerReport()
    for _ in range(max(0, max_tasks)):
        task = store.claim_next(owner_id)
        if task is None:
            break
        if await process_task(task, store, pipeline):
            report.processed.append(task.id)
        else:
            report.failed.append(task.id)

    if report.total:
        logger.info(f"Worker run finished: {len(report.processed)} processed, {len(report.failed)} failed")
    return report


async def run_dispatcher_loop(
    store: TaskStore,
    pipeline: ContentPipeline,
    poll_interval: float = 5.0,
    batch_size: int = 10,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Poll the queue until ``stop_event`` is set.

    Each round sweeps expired leases, then drains up to ``batch_size``
    tasks. Sleeps ``poll_interval`` seconds when the queue is empty.
    """
    stop_event = stop_event or asyncio.Event()
    logger.info(f"Dispatcher loop started (poll interval {poll_interval}s)")

    while not stop_event.is_set():
        try:
            store.release_expired_leases()
            report = await run_worker(store, pipeline, max_tasks=batch_size)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Dispatcher round failed")
            report = WorkerReport()

        if report.total:
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Dispatcher loop stopped")
