"""
Best-effort delivery of payment notifications.

The reconciliation engine never waits on a notification for its own outcome:
`dispatch_in_background` schedules the send as a task whose failure is
logged in a done-callback and goes no further.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Optional, Set

from structlog import get_logger
from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError

from paysync.notifications.messages import PaymentNotification

logger = get_logger()


class NotificationSink(ABC):
    @abstractmethod
    async def send(self, notification: PaymentNotification) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    """Used when no Temporal client is available; records what would have been sent."""

    async def send(self, notification: PaymentNotification) -> None:
        logger.warning(
            "notification_not_delivered",
            kind=notification.kind.value,
            order_id=notification.order_id,
            reason="no delivery backend configured",
        )


class TemporalNotificationSink(NotificationSink):
    """
    Hands the notification to PaymentNotificationWorkflow, which owns retries.
    The workflow id is derived from order, kind and tracking id so two
    concurrent starts for the same transition collapse into one execution.
    """

    def __init__(self, client: Client, task_queue: str = "notifications-tq"):
        self.client = client
        self.task_queue = task_queue

    async def send(self, notification: PaymentNotification) -> None:
        # Imported here: the workflow module is loaded by the worker's sandbox too
        from paysync.workflows.notifications import PaymentNotificationWorkflow

        try:
            handle = await self.client.start_workflow(
                PaymentNotificationWorkflow.run,
                notification.to_payload(),
                id=notification.workflow_id,
                task_queue=self.task_queue,
            )
        except WorkflowAlreadyStartedError:
            logger.info("notification_already_started", workflow_id=notification.workflow_id)
            return
        logger.info("notification_started", workflow_id=handle.id, kind=notification.kind.value)


_background_tasks: Set["asyncio.Task[None]"] = set()


def _log_outcome(task: "asyncio.Task[None]", notification: PaymentNotification) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning("notification_cancelled", order_id=notification.order_id, kind=notification.kind.value)
        return
    error = task.exception()
    if error is not None:
        logger.error(
            "notification_dispatch_failed",
            order_id=notification.order_id,
            kind=notification.kind.value,
            error=str(error),
            exc_info=error,
        )


def dispatch_in_background(
    sink: NotificationSink, notification: PaymentNotification
) -> Optional["asyncio.Task[None]"]:
    """Schedule `sink.send` without awaiting it. Never raises."""
    try:
        task = asyncio.get_running_loop().create_task(sink.send(notification))
    except Exception as e:
        logger.error("notification_schedule_failed", order_id=notification.order_id, error=str(e))
        return None
    _background_tasks.add(task)
    task.add_done_callback(lambda t: _log_outcome(t, notification))
    return task


async def drain_background_dispatches() -> None:
    """Wait for scheduled notifications (shutdown, tests)."""
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)
