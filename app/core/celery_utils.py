"""
Celery utility functions for reliable task queueing.

Provides helper functions to ensure Celery tasks are queued successfully
even when called from FastAPI endpoints.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Tuple
from celery import Task
from kombu import Connection

from app.core.config import settings

logger = logging.getLogger(__name__)

# Thread pool for queueing tasks from async contexts
# This avoids conflicts with FastAPI's uvicorn async event loop
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="celery_queue")

QUEUE_TIMEOUT_SECONDS = 5


def _queue_task_sync(task: Task, args: tuple, kwargs: dict) -> Tuple[bool, str, str]:
    """
    Internal function to queue task synchronously in a thread.

    Returns:
        Tuple[bool, str, str]: (success, task_id, error_type)
    """
    try:
        # Use a fresh Kombu connection to avoid stale connection pool issues
        with Connection(settings.REDIS_URL) as conn:
            result = task.apply_async(
                args=args,
                kwargs=kwargs,
                connection=conn,
                retry=True,
                retry_policy={
                    'max_retries': 3,
                    'interval_start': 0,
                    'interval_step': 0.2,
                    'interval_max': 0.2,
                }
            )
            return (True, result.id, "")
    except Exception as e:
        # Broker failures surface as many different exception types; report, don't raise
        return (False, "", type(e).__name__)


def queue_task_safely(task: Task, *args, **kwargs) -> bool:
    """
    Safely queue a Celery task with connection retry logic.

    Queueing runs in a thread pool so it works from both sync and async
    FastAPI endpoints. A broker that is down or slower than
    QUEUE_TIMEOUT_SECONDS is a soft failure.

    Args:
        task: The Celery task to queue
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task

    Returns:
        bool: True if task was queued successfully, False otherwise

    Example:
        from app.tasks.messaging_tasks import send_whatsapp_message_task
        success = queue_task_safely(
            send_whatsapp_message_task,
            to='15551234567',
            text='Verification successful!'
        )
    """
    future = _executor.submit(_queue_task_sync, task, args, kwargs)
    try:
        success, task_id, error = future.result(timeout=QUEUE_TIMEOUT_SECONDS)
    except FutureTimeoutError:
        logger.error(f"Timed out queueing task {task.name}")
        return False

    if success:
        logger.info(f"Task {task.name} queued successfully: {task_id}")
        return True
    else:
        logger.error(f"Failed to queue task {task.name}: {error}")
        return False
