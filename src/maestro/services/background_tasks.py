"""Background task manager for fire-and-forget enrichment work."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, Optional

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """Manager for background task execution, keyed by ``<kind>:<id>`` task ids."""

    def __init__(self):
        """Initialize background task manager."""
        self.tasks: Dict[str, asyncio.Task] = {}
        self.task_results: Dict[str, Any] = {}
        self.task_errors: Dict[str, Exception] = {}

    def create_task(
        self,
        task_id: str,
        coroutine: Coroutine,
        on_complete: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> asyncio.Task:
        """
        Create and track a background task.

        Failures are recorded and logged, never propagated to the event loop.

        Args:
            task_id: Unique identifier for the task
            coroutine: Coroutine to execute
            on_complete: Optional callback when task completes successfully
            on_error: Optional callback when task fails

        Returns:
            The created asyncio.Task
        """
        if task_id in self.tasks:
            logger.warning(f"Task {task_id} already exists, cancelling old task")
            self.tasks[task_id].cancel()

        async def wrapped_coroutine():
            """Wrapper to handle completion and errors."""
            try:
                logger.debug(f"Background task started: {task_id}")
                result = await coroutine
                self.task_results[task_id] = result
                logger.debug(f"Background task completed: {task_id}")

                if on_complete:
                    try:
                        on_complete(result)
                    except Exception as e:
                        logger.error(f"Error in on_complete callback for {task_id}: {e}")
                return result

            except asyncio.CancelledError:
                logger.info(f"Background task cancelled: {task_id}")
                raise

            except Exception as e:
                logger.error(f"Background task failed: {task_id}: {e}")
                self.task_errors[task_id] = e
                if on_error:
                    try:
                        on_error(e)
                    except Exception as callback_error:
                        logger.error(f"Error in on_error callback for {task_id}: {callback_error}")
                return None

            finally:
                if self.tasks.get(task_id) is asyncio.current_task():
                    del self.tasks[task_id]

        task = asyncio.create_task(wrapped_coroutine())
        self.tasks[task_id] = task
        return task

    def is_task_running(self, task_id: str) -> bool:
        return task_id in self.tasks and not self.tasks[task_id].done()

    def cancel_task(self, task_id: str) -> bool:
        """
        Cancel a running task.

        Returns:
            True if task was cancelled
        """
        if task_id in self.tasks:
            self.tasks[task_id].cancel()
            logger.info(f"Cancelled task: {task_id}")
            return True
        return False

    def cancel_all_tasks(self) -> int:
        """
        Cancel all running tasks.

        Returns:
            Number of tasks cancelled
        """
        count = 0
        for task_id in list(self.tasks.keys()):
            if self.cancel_task(task_id):
                count += 1
        return count

    async def wait_all(self, timeout: Optional[float] = None) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, is done."""
        while self.tasks:
            pending = list(self.tasks.values())
            done, _ = await asyncio.wait(pending, timeout=timeout)
            if timeout is not None and len(done) < len(pending):
                raise asyncio.TimeoutError("Background tasks did not finish in time")
            for task_id in [tid for tid, task in self.tasks.items() if task.done()]:
                del self.tasks[task_id]
